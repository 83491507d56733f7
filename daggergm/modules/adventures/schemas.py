from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

from daggergm.modules.generation.schemas import SceneExpansion, SceneType
from daggergm.utils.time import as_utc

AdventureState = Literal["draft", "scaffolded", "ready", "archived"]
AdventureLength = Literal["oneshot", "short_campaign", "campaign"]
Difficulty = Literal["easier", "standard", "harder"]
Stakes = Literal["low", "personal", "high", "world"]

MIN_REFINE_INSTRUCTION_CHARS = 3


class AdventureConfig(BaseModel):
    """Every option the generator understands, with defaults filled in at construction."""

    model_config = ConfigDict(extra="forbid")

    length: AdventureLength = "oneshot"
    primary_motif: str = Field(min_length=1, max_length=64)
    focus: str | None = Field(default=None, max_length=128)
    frame: str = Field(default="witherwild", min_length=1, max_length=64)
    party_size: int = Field(default=4, ge=1, le=8)
    party_level: int = Field(default=1, ge=1, le=20)
    difficulty: Difficulty = "standard"
    stakes: Stakes = "personal"
    num_scenes: int = Field(default=3, ge=3, le=10)

    @model_validator(mode="after")
    def _default_focus(self) -> "AdventureConfig":
        if not (self.focus or "").strip():
            self.focus = self.primary_motif
        return self


class Scene(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    order_index: int = Field(ge=0)
    title: str = Field(min_length=1, max_length=200)
    type: SceneType = "exploration"
    description: str = ""
    content: str = ""
    estimated_time: str = ""
    mechanics: list[str] = Field(default_factory=list)
    gm_notes: str = ""
    expansion: SceneExpansion | None = None
    confirmed: bool = False
    confirmed_at: datetime | None = None
    locked: bool = False

    # Rows written before confirmation and locking existed carry null or no flag.
    @field_validator("confirmed", "locked", mode="before")
    @classmethod
    def _legacy_flag(cls, value: object) -> object:
        return False if value is None else value

    @field_serializer("confirmed_at")
    def _serialize_confirmed_at(self, value: datetime | None) -> datetime | None:
        return as_utc(value)


class AdventureRecord(BaseModel):
    """Detached snapshot of an adventures row, validated on the way out of storage."""

    id: str
    owner_id: str
    state: AdventureState
    title: str
    description: str = ""
    frame: str = ""
    focus: str = ""
    config: AdventureConfig
    movements: list[Scene] = Field(default_factory=list)
    scaffold_regenerations_used: int = Field(ge=0)
    expansion_regenerations_used: int = Field(ge=0)
    version: int = Field(ge=1)
    created_at: datetime
    updated_at: datetime

    def find_scene(self, scene_id: str) -> Scene | None:
        for scene in self.movements:
            if scene.id == scene_id:
                return scene
        return None

    def confirmation_counts(self) -> tuple[int, int]:
        return sum(1 for scene in self.movements if scene.confirmed), len(self.movements)


class AdventureOut(BaseModel):
    id: str
    state: AdventureState
    title: str
    description: str
    frame: str
    focus: str
    config: AdventureConfig
    movements: list[Scene]
    scaffold_regenerations_used: int
    expansion_regenerations_used: int
    created_at: datetime
    updated_at: datetime

    @field_serializer("created_at", "updated_at")
    def _serialize_utc(self, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_record(cls, record: AdventureRecord) -> "AdventureOut":
        return cls.model_validate(record.model_dump(exclude={"owner_id", "version"}))


class AdventureSummaryOut(BaseModel):
    id: str
    state: AdventureState
    title: str
    frame: str
    focus: str
    scene_count: int
    confirmed_count: int
    created_at: datetime
    updated_at: datetime

    @field_serializer("created_at", "updated_at")
    def _serialize_utc(self, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_record(cls, record: AdventureRecord) -> "AdventureSummaryOut":
        confirmed, total = record.confirmation_counts()
        return cls(
            id=record.id,
            state=record.state,
            title=record.title,
            frame=record.frame,
            focus=record.focus,
            scene_count=total,
            confirmed_count=confirmed,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class AdventureCreated(BaseModel):
    adventure_id: str
    credits_remaining: int


class ScaffoldRegenerationOut(BaseModel):
    updated_scene: Scene
    remaining_regenerations: int


class ExpansionOut(BaseModel):
    scene_id: str
    expansion: SceneExpansion
    remaining_regenerations: int


class ContentRegenerationOut(BaseModel):
    scene_id: str
    content: str
    mechanics: list[str]
    gm_notes: str
    remaining_regenerations: int


class RefineRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    instruction: str = Field(max_length=1000)
    context: dict[str, str] = Field(default_factory=dict)


class RefinementOut(BaseModel):
    scene_id: str
    refined_content: str
    changes: list[str]
    remaining_regenerations: int


class SceneUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=200)
    type: SceneType | None = None
    description: str | None = Field(default=None, max_length=10000)
    content: str | None = Field(default=None, max_length=10000)
    estimated_time: str | None = Field(default=None, max_length=64)
    gm_notes: str | None = Field(default=None, max_length=10000)
    locked: bool | None = None


class ConfirmationOut(BaseModel):
    scene_id: str
    confirmed: bool
    confirmed_at: datetime | None
    confirmed_count: int
    total_count: int
    all_confirmed: bool

    @field_serializer("confirmed_at")
    def _serialize_confirmed_at(self, value: datetime | None) -> datetime | None:
        return as_utc(value)


class StateChangeOut(BaseModel):
    adventure_id: str
    state: AdventureState
