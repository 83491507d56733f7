from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SceneType = Literal["combat", "exploration", "social", "puzzle"]
SCENE_TYPES: tuple[str, ...] = ("combat", "exploration", "social", "puzzle")


class MovementScaffold(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=200)
    type: SceneType
    description: str = Field(min_length=1)
    estimated_time: str = Field(min_length=1, max_length=64)


class ScaffoldResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=256)
    description: str
    movements: list[MovementScaffold] = Field(min_length=1)


class NPC(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    role: str = ""
    description: str = ""


class Adversary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    tier: int = Field(default=1, ge=1, le=4)
    description: str = ""
    tactics: str = ""


class Environment(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    description: str = ""
    features: list[str] = Field(default_factory=list)


class LootItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    description: str = ""


class SceneExpansion(BaseModel):
    """Detailed scene content produced by one expansion call."""

    model_config = ConfigDict(extra="forbid")

    content: str = ""
    descriptions: list[str] = Field(default_factory=list)
    narration: str = ""
    npcs: list[NPC] = Field(default_factory=list)
    adversaries: list[Adversary] = Field(default_factory=list)
    environment: Environment | None = None
    loot: list[LootItem] = Field(default_factory=list)
    mechanics: list[str] = Field(default_factory=list)
    gm_notes: str = ""


class RefinementResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    refined_content: str = Field(min_length=1)
    changes: list[str] = Field(default_factory=list)

    @field_validator("changes")
    @classmethod
    def _drop_blank_changes(cls, value: list[str]) -> list[str]:
        return [" ".join(item.split()) for item in value if item and item.strip()]


def _string_list() -> dict:
    return {"type": "array", "items": {"type": "string"}}


def _object(properties: dict, *, required: list[str] | None = None) -> dict:
    return {
        "type": "object",
        "additionalProperties": False,
        "required": list(properties) if required is None else required,
        "properties": properties,
    }


_MOVEMENT_PROPERTIES = {
    "title": {"type": "string", "minLength": 1, "maxLength": 200},
    "type": {"type": "string", "enum": list(SCENE_TYPES)},
    "description": {"type": "string", "minLength": 1},
    "estimated_time": {"type": "string", "minLength": 1},
}

MOVEMENT_SCAFFOLD_SCHEMA_NAME = "daggergm_movement_scaffold_v1"
MOVEMENT_SCAFFOLD_SCHEMA = _object(_MOVEMENT_PROPERTIES)

SCAFFOLD_SCHEMA_NAME = "daggergm_adventure_scaffold_v1"
SCAFFOLD_SCHEMA = _object(
    {
        "title": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "movements": {"type": "array", "minItems": 1, "items": _object(_MOVEMENT_PROPERTIES)},
    }
)

SCENE_EXPANSION_SCHEMA_NAME = "daggergm_scene_expansion_v1"
SCENE_EXPANSION_SCHEMA = _object(
    {
        "content": {"type": "string"},
        "descriptions": _string_list(),
        "narration": {"type": "string"},
        "npcs": {
            "type": "array",
            "items": _object(
                {
                    "name": {"type": "string", "minLength": 1},
                    "role": {"type": "string"},
                    "description": {"type": "string"},
                }
            ),
        },
        "adversaries": {
            "type": "array",
            "items": _object(
                {
                    "name": {"type": "string", "minLength": 1},
                    "tier": {"type": "integer", "minimum": 1, "maximum": 4},
                    "description": {"type": "string"},
                    "tactics": {"type": "string"},
                }
            ),
        },
        "environment": {
            "anyOf": [
                {"type": "null"},
                _object(
                    {
                        "name": {"type": "string", "minLength": 1},
                        "description": {"type": "string"},
                        "features": _string_list(),
                    }
                ),
            ]
        },
        "loot": {
            "type": "array",
            "items": _object({"name": {"type": "string", "minLength": 1}, "description": {"type": "string"}}),
        },
        "mechanics": _string_list(),
        "gm_notes": {"type": "string"},
    }
)

REFINEMENT_SCHEMA_NAME = "daggergm_content_refinement_v1"
REFINEMENT_SCHEMA = _object(
    {
        "refined_content": {"type": "string", "minLength": 1},
        "changes": _string_list(),
    }
)
