from __future__ import annotations

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select, update as sql_update
from sqlalchemy.orm import Session

from daggergm.db.models import Adventure, CreditBalance
from daggergm.logging import get_logger
from daggergm.modules.adventures.errors import AdventureWriteConflictError
from daggergm.modules.adventures.schemas import AdventureConfig, AdventureRecord, Scene
from daggergm.modules.regeneration.counter import REGENERATION_LIMITS, counter_column
from daggergm.utils.time import utc_now_naive

_SCENES = TypeAdapter(list[Scene])

logger = get_logger("daggergm.adventures.repository")


class StoredAdventureInvalidError(RuntimeError):
    pass


def dump_scenes(scenes: list[Scene]) -> list[dict]:
    return _SCENES.dump_python(scenes, mode="json")


def load_scenes(raw: object) -> list[Scene]:
    return _SCENES.validate_python(raw or [])


def _to_record(row: Adventure) -> AdventureRecord:
    try:
        return AdventureRecord(
            id=row.id,
            owner_id=row.owner_id,
            state=row.state,
            title=row.title,
            description=row.description or "",
            frame=row.frame or "",
            focus=row.focus or "",
            config=AdventureConfig.model_validate(row.config or {}),
            movements=load_scenes(row.movements),
            scaffold_regenerations_used=row.scaffold_regenerations_used,
            expansion_regenerations_used=row.expansion_regenerations_used,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
    except ValidationError as exc:
        raise StoredAdventureInvalidError(f"stored adventure {row.id} failed validation: {exc}") from exc


class PersistenceGateway:
    """Adventure and credit-balance rows in and out of the database.

    Reads return detached ``AdventureRecord`` snapshots so no ORM state
    outlives the transaction that loaded it. Writes are single UPDATE
    statements guarded by the row version.
    """

    def load_adventure(self, db: Session, adventure_id: str) -> AdventureRecord | None:
        row = db.execute(
            select(Adventure).where(Adventure.id == adventure_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            return None
        return _to_record(row)

    def list_for_owner(self, db: Session, owner_id: str, *, include_archived: bool = False) -> list[AdventureRecord]:
        stmt = select(Adventure).where(Adventure.owner_id == owner_id)
        if not include_archived:
            stmt = stmt.where(Adventure.state != "archived")
        rows = db.execute(stmt.order_by(Adventure.created_at.desc())).scalars()
        return [_to_record(row) for row in rows]

    def insert_adventure(
        self,
        db: Session,
        *,
        adventure_id: str,
        owner_id: str,
        state: str,
        title: str,
        description: str,
        config: AdventureConfig,
        movements: list[Scene],
    ) -> AdventureRecord:
        now = utc_now_naive()
        row = Adventure(
            id=adventure_id,
            owner_id=owner_id,
            state=state,
            title=title,
            description=description,
            frame=config.frame,
            focus=config.focus or config.primary_motif,
            config=config.model_dump(mode="json"),
            movements=dump_scenes(movements),
            scaffold_regenerations_used=0,
            expansion_regenerations_used=0,
            version=1,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        db.flush()
        return _to_record(row)

    def save_adventure(
        self,
        db: Session,
        record: AdventureRecord,
        *,
        expected_version: int,
        increment_stage: str | None = None,
    ) -> int:
        """Write scenes and state, optionally bumping one regeneration counter.

        Content and counter change in the same statement. Returns the new
        version; raises ``AdventureWriteConflictError`` when the row moved on
        (or the counter hit its cap) since ``expected_version``.
        """
        new_version = expected_version + 1
        values: dict[str, object] = {
            "state": record.state,
            "title": record.title,
            "movements": dump_scenes(record.movements),
            "version": new_version,
            "updated_at": utc_now_naive(),
        }
        stmt = sql_update(Adventure).where(Adventure.id == record.id, Adventure.version == expected_version)
        if increment_stage is not None:
            column = counter_column(increment_stage)
            values[column.key] = column + 1
            stmt = stmt.where(column < REGENERATION_LIMITS[increment_stage])
        result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        if int(result.rowcount or 0) != 1:
            logger.info(
                "adventure_write_conflict",
                adventure_id=record.id,
                expected_version=expected_version,
                increment_stage=increment_stage,
            )
            raise AdventureWriteConflictError(adventure_id=record.id, expected_version=expected_version)
        return new_version

    def atomic_increment_counter(self, db: Session, adventure_id: str, stage: str) -> int | None:
        """Add one to a stage counter if it is below its cap; ``None`` when nothing was updated."""
        column = counter_column(stage)
        result = db.execute(
            sql_update(Adventure)
            .where(Adventure.id == adventure_id, column < REGENERATION_LIMITS[stage])
            .values({column.key: column + 1, "version": Adventure.version + 1, "updated_at": utc_now_naive()})
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            return None
        return int(db.execute(select(column).where(Adventure.id == adventure_id)).scalar_one())

    def atomic_adjust_credit_balance(self, db: Session, user_id: str, delta: int) -> int | None:
        """Apply ``delta`` to a balance, refusing any change that would take it below zero."""
        stmt = sql_update(CreditBalance).where(CreditBalance.user_id == user_id)
        if delta < 0:
            stmt = stmt.where(CreditBalance.credits >= -delta)
        result = db.execute(
            stmt.values(credits=CreditBalance.credits + delta, updated_at=utc_now_naive()).execution_options(
                synchronize_session=False
            )
        )
        if int(result.rowcount or 0) != 1:
            return None
        return int(db.execute(select(CreditBalance.credits).where(CreditBalance.user_id == user_id)).scalar_one())
