from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from daggergm.db.models import Adventure
from daggergm.logging import get_logger
from daggergm.modules.adventures.errors import AdventureNotFoundError

if TYPE_CHECKING:
    from daggergm.modules.adventures.repository import PersistenceGateway

RegenerationStage = Literal["scaffold", "expansion"]

SCAFFOLD_LIMIT = 10
EXPANSION_LIMIT = 20
REGENERATION_LIMITS: dict[str, int] = {
    "scaffold": SCAFFOLD_LIMIT,
    "expansion": EXPANSION_LIMIT,
}
LIMIT_MESSAGES: dict[str, str] = {
    "scaffold": (
        f"Scaffold regeneration limit reached ({SCAFFOLD_LIMIT} maximum). "
        "Consider starting a new adventure or manually editing the structure."
    ),
    "expansion": (
        f"Expansion regeneration limit reached ({EXPANSION_LIMIT} maximum). "
        "Consider locking components you're satisfied with."
    ),
}

logger = get_logger("daggergm.regeneration")


def counter_column(stage: str):
    if stage == "scaffold":
        return Adventure.scaffold_regenerations_used
    if stage == "expansion":
        return Adventure.expansion_regenerations_used
    raise ValueError(f"unknown regeneration stage: {stage}")


class RegenerationLimitError(ValueError):
    code = "LIMIT_EXCEEDED"

    def __init__(self, *, stage: str, used: int, limit: int):
        super().__init__(LIMIT_MESSAGES[stage])
        self.stage = stage
        self.used = used
        self.limit = limit
        self.details = {"stage": stage, "used": used, "limit": limit}


class RegenerationUsage(BaseModel):
    stage: RegenerationStage
    used: int
    limit: int
    remaining: int


class RegenerationCounts(BaseModel):
    scaffold_used: int
    scaffold_limit: int = SCAFFOLD_LIMIT
    scaffold_remaining: int
    expansion_used: int
    expansion_limit: int = EXPANSION_LIMIT
    expansion_remaining: int

    @classmethod
    def from_usage(cls, *, scaffold_used: int, expansion_used: int) -> "RegenerationCounts":
        return cls(
            scaffold_used=scaffold_used,
            scaffold_remaining=max(0, SCAFFOLD_LIMIT - scaffold_used),
            expansion_used=expansion_used,
            expansion_remaining=max(0, EXPANSION_LIMIT - expansion_used),
        )


def ensure_available(stage: str, used: int) -> RegenerationUsage:
    limit = REGENERATION_LIMITS[stage]
    if used >= limit:
        logger.info("regeneration_limit_reached", stage=stage, used=used, limit=limit)
        raise RegenerationLimitError(stage=stage, used=used, limit=limit)
    return RegenerationUsage(stage=stage, used=used, limit=limit, remaining=limit - used)


class RegenerationCounter:
    """Per-adventure regeneration allowance, one pool per stage.

    Checks never write. Increments go through a single guarded UPDATE so
    concurrent requests cannot push a counter past its cap or lose a count.
    """

    def __init__(self, repository: PersistenceGateway):
        self._repository = repository

    def check_and_reserve(self, db: Session, adventure_id: str, stage: str) -> RegenerationUsage:
        used = db.execute(select(counter_column(stage)).where(Adventure.id == adventure_id)).scalar_one_or_none()
        if used is None:
            raise AdventureNotFoundError(f"adventure not found: {adventure_id}", adventure_id=adventure_id)
        return ensure_available(stage, int(used))

    def increment(self, db: Session, adventure_id: str, stage: str) -> int:
        """Bump a counter on its own, without touching content.

        ``AdventureLifecycle`` does not call this. It bumps the counter in the
        same UPDATE that stores generated content, through
        ``PersistenceGateway.save_adventure(increment_stage=...)``. This entry
        point is for callers that meter usage with no content write.
        """
        new_count = self._repository.atomic_increment_counter(db, adventure_id, stage)
        if new_count is None:
            # Distinguish a missing row from a counter already at its cap.
            self.check_and_reserve(db, adventure_id, stage)
            raise RegenerationLimitError(stage=stage, used=REGENERATION_LIMITS[stage], limit=REGENERATION_LIMITS[stage])
        return new_count

    def get_counts(self, db: Session, adventure_id: str) -> RegenerationCounts:
        row = db.execute(
            select(Adventure.scaffold_regenerations_used, Adventure.expansion_regenerations_used).where(
                Adventure.id == adventure_id
            )
        ).one_or_none()
        if row is None:
            raise AdventureNotFoundError(f"adventure not found: {adventure_id}", adventure_id=adventure_id)
        return RegenerationCounts.from_usage(scaffold_used=int(row[0]), expansion_used=int(row[1]))
