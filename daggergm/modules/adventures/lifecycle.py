from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import TypeVar

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from daggergm.config import settings
from daggergm.logging import get_logger
from daggergm.modules.adventures.errors import (
    AdventureNotFoundError,
    AdventureWriteConflictError,
    ConcurrentModificationError,
    GenerationFailedError,
    ForbiddenError,
    InvalidInputError,
    LifecycleError,
    NotAllScenesConfirmedError,
    SceneLockedError,
    UnauthorizedError,
)
from daggergm.modules.adventures.exporters import EXPORT_FORMATS, ExportFile, export_file
from daggergm.modules.adventures.repository import PersistenceGateway
from daggergm.modules.adventures.results import OperationResult
from daggergm.modules.adventures.schemas import (
    MIN_REFINE_INSTRUCTION_CHARS,
    AdventureConfig,
    AdventureCreated,
    AdventureRecord,
    ConfirmationOut,
    ContentRegenerationOut,
    ExpansionOut,
    RefinementOut,
    ScaffoldRegenerationOut,
    Scene,
    SceneUpdateRequest,
    StateChangeOut,
)
from daggergm.modules.credits.errors import CreditError
from daggergm.modules.credits.ledger import CreditLedger
from daggergm.modules.generation.errors import GenerationError
from daggergm.modules.generation.service import GenerationGateway
from daggergm.modules.regeneration.counter import (
    RegenerationCounter,
    RegenerationCounts,
    RegenerationLimitError,
    ensure_available,
)
from daggergm.utils.time import utc_now_naive

T = TypeVar("T")

_EXPECTED_FAILURES = (LifecycleError, CreditError, RegenerationLimitError)
_COUNTER_FIELDS = {
    "scaffold": "scaffold_regenerations_used",
    "expansion": "expansion_regenerations_used",
}

logger = get_logger("daggergm.adventures.lifecycle")


def _require_scene(record: AdventureRecord, scene_id: str) -> Scene:
    scene = record.find_scene(scene_id)
    if scene is None:
        raise AdventureNotFoundError(f"scene not found: {scene_id}", adventure_id=record.id, scene_id=scene_id)
    return scene


def _replace_scene(record: AdventureRecord, scene: Scene, **updates: object) -> AdventureRecord:
    movements = [scene if item.id == scene.id else item for item in record.movements]
    return record.model_copy(update={"movements": movements, **updates})


def _with_counter_bumped(record: AdventureRecord, stage: str) -> dict[str, int]:
    field_name = _COUNTER_FIELDS[stage]
    return {field_name: getattr(record, field_name) + 1}


def _ensure_unconfirmed(scene: Scene) -> None:
    if scene.confirmed:
        raise SceneLockedError(
            "Scene is confirmed. Unconfirm it before regenerating its content.",
            scene_id=scene.id,
        )


def _ensure_scaffold_regenerable(scene: Scene) -> None:
    _ensure_unconfirmed(scene)
    if scene.locked:
        raise SceneLockedError("Scene is locked. Unlock it before regenerating it.", scene_id=scene.id)


class AdventureLifecycle:
    """Adventure creation, regeneration, confirmation and readiness.

    Every public operation returns an ``OperationResult``. Expected refusals
    (ownership, credits, caps, locked scenes, generator failures) come back
    as failures; storage faults propagate.

    No transaction is open while the generator runs. Reads happen in one
    transaction, the generator is called, then a second transaction re-loads
    the adventure, re-checks confirmation and caps against the fresh row and
    writes content plus counter in a single versioned UPDATE.
    """

    def __init__(
        self,
        *,
        gateway: GenerationGateway,
        store: PersistenceGateway | None = None,
        ledger: CreditLedger | None = None,
        counter: RegenerationCounter | None = None,
        write_attempts: int | None = None,
    ):
        self._gateway = gateway
        self._store = store or PersistenceGateway()
        self._ledger = ledger or CreditLedger(self._store)
        self._counter = counter or RegenerationCounter(self._store)
        self._write_attempts = max(1, int(write_attempts or settings.lifecycle_write_attempts))

    # -- creation -----------------------------------------------------------

    def create_adventure(
        self,
        db: Session,
        config: AdventureConfig | dict,
        owner_id: str | None,
    ) -> OperationResult[AdventureCreated]:
        return self._run("create_adventure", lambda: self._create_adventure(db, config, owner_id))

    def _create_adventure(self, db: Session, config: AdventureConfig | dict, owner_id: str | None) -> AdventureCreated:
        owner_id = self._require_requester(owner_id)
        config = self._coerce_config(config)
        adventure_id = str(uuid.uuid4())

        with db.begin():
            charge = self._ledger.consume(db, owner_id, "adventure", {"adventure_id": adventure_id})

        try:
            scaffold = self._gateway.generate_scaffold(config)
        except GenerationError as exc:
            self._refund_creation(db, owner_id, adventure_id, reason="Generation failed", error=exc)
            raise GenerationFailedError(f"Adventure generation failed: {exc}", adventure_id=adventure_id) from exc
        except Exception as exc:
            self._refund_creation(db, owner_id, adventure_id, reason="Generation failed", error=exc)
            raise

        movements = [
            Scene(
                id=f"movement-{index + 1}",
                order_index=index,
                title=item.title,
                type=item.type,
                description=item.description,
                estimated_time=item.estimated_time,
            )
            for index, item in enumerate(scaffold.movements)
        ]
        try:
            with db.begin():
                self._store.insert_adventure(
                    db,
                    adventure_id=adventure_id,
                    owner_id=owner_id,
                    state="scaffolded",
                    title=scaffold.title,
                    description=scaffold.description,
                    config=config,
                    movements=movements,
                )
        except SQLAlchemyError as exc:
            self._refund_creation(db, owner_id, adventure_id, reason="Persistence failed", error=exc)
            raise

        logger.info(
            "adventure_created",
            adventure_id=adventure_id,
            owner_id=owner_id,
            scene_count=len(movements),
            credits_remaining=charge.new_balance,
            provider=self._gateway.provider_trace_label(),
        )
        return AdventureCreated(adventure_id=adventure_id, credits_remaining=charge.new_balance)

    def _refund_creation(
        self,
        db: Session,
        owner_id: str,
        adventure_id: str,
        *,
        reason: str,
        error: Exception,
    ) -> None:
        logger.warning("adventure_creation_failed", adventure_id=adventure_id, reason=reason, error=str(error))
        with db.begin():
            self._ledger.refund(
                db,
                owner_id,
                "adventure",
                {"adventure_id": adventure_id, "reason": reason, "error": str(error)[:500]},
            )

    # -- generation-backed scene operations ---------------------------------

    def regenerate_scaffold_scene(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        requester_id: str | None,
    ) -> OperationResult[ScaffoldRegenerationOut]:
        return self._run(
            "regenerate_scaffold_scene",
            lambda: self._regenerate_scaffold_scene(db, adventure_id, scene_id, requester_id),
        )

    def _regenerate_scaffold_scene(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        requester_id: str | None,
    ) -> ScaffoldRegenerationOut:
        requester_id = self._require_requester(requester_id)
        with db.begin():
            record = self._load_owned(db, adventure_id, requester_id)
            target = _require_scene(record, scene_id)
            _ensure_scaffold_regenerable(target)
            self._counter.check_and_reserve(db, adventure_id, "scaffold")
        locked_scenes = [scene for scene in record.movements if scene.locked and scene.id != scene_id]

        movement = self._generate(
            "regenerate_scaffold_movement",
            lambda: self._gateway.regenerate_scaffold_movement(target, record.config, locked_scenes),
        )

        def apply(current: AdventureRecord) -> tuple[AdventureRecord, ScaffoldRegenerationOut]:
            scene = _require_scene(current, scene_id)
            _ensure_scaffold_regenerable(scene)
            usage = ensure_available("scaffold", current.scaffold_regenerations_used)
            replacement = scene.model_copy(
                update={
                    "title": movement.title,
                    "description": movement.description,
                    "type": movement.type,
                    "estimated_time": movement.estimated_time,
                }
            )
            updated = _replace_scene(current, replacement, **_with_counter_bumped(current, "scaffold"))
            return updated, ScaffoldRegenerationOut(
                updated_scene=replacement,
                remaining_regenerations=usage.remaining - 1,
            )

        return self._commit(db, adventure_id, requester_id, apply, increment_stage="scaffold")

    def expand_scene(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        requester_id: str | None,
    ) -> OperationResult[ExpansionOut]:
        return self._run("expand_scene", lambda: self._expand_scene(db, adventure_id, scene_id, requester_id))

    def _expand_scene(self, db: Session, adventure_id: str, scene_id: str, requester_id: str | None) -> ExpansionOut:
        record, scene = self._prepare_expansion(db, adventure_id, scene_id, requester_id)
        expansion = self._generate("expand_scene", lambda: self._gateway.expand_scene(scene, record.config))

        def apply(current: AdventureRecord) -> tuple[AdventureRecord, ExpansionOut]:
            fresh = _require_scene(current, scene_id)
            _ensure_unconfirmed(fresh)
            usage = ensure_available("expansion", current.expansion_regenerations_used)
            updated = _replace_scene(
                current,
                fresh.model_copy(update={"expansion": expansion}),
                **_with_counter_bumped(current, "expansion"),
            )
            return updated, ExpansionOut(
                scene_id=scene_id,
                expansion=expansion,
                remaining_regenerations=usage.remaining - 1,
            )

        return self._commit(db, adventure_id, record.owner_id, apply, increment_stage="expansion")

    def regenerate_expansion(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        requester_id: str | None,
    ) -> OperationResult[ContentRegenerationOut]:
        return self._run(
            "regenerate_expansion",
            lambda: self._regenerate_expansion(db, adventure_id, scene_id, requester_id),
        )

    def _regenerate_expansion(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        requester_id: str | None,
    ) -> ContentRegenerationOut:
        record, scene = self._prepare_expansion(db, adventure_id, scene_id, requester_id)
        expansion = self._generate("regenerate_expansion", lambda: self._gateway.expand_scene(scene, record.config))

        def apply(current: AdventureRecord) -> tuple[AdventureRecord, ContentRegenerationOut]:
            fresh = _require_scene(current, scene_id)
            _ensure_unconfirmed(fresh)
            usage = ensure_available("expansion", current.expansion_regenerations_used)
            merged = fresh.model_copy(
                update={
                    "content": expansion.content or fresh.content,
                    "mechanics": list(expansion.mechanics),
                    "gm_notes": expansion.gm_notes,
                }
            )
            updated = _replace_scene(current, merged, **_with_counter_bumped(current, "expansion"))
            return updated, ContentRegenerationOut(
                scene_id=scene_id,
                content=merged.content,
                mechanics=merged.mechanics,
                gm_notes=merged.gm_notes,
                remaining_regenerations=usage.remaining - 1,
            )

        return self._commit(db, adventure_id, record.owner_id, apply, increment_stage="expansion")

    def refine_scene_content(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        instruction: str,
        requester_id: str | None,
        context: dict[str, str] | None = None,
    ) -> OperationResult[RefinementOut]:
        return self._run(
            "refine_scene_content",
            lambda: self._refine_scene_content(db, adventure_id, scene_id, instruction, requester_id, context),
        )

    def _refine_scene_content(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        instruction: str,
        requester_id: str | None,
        context: dict[str, str] | None,
    ) -> RefinementOut:
        cleaned = " ".join(str(instruction or "").split())
        if len(cleaned) < MIN_REFINE_INSTRUCTION_CHARS:
            self._require_requester(requester_id)
            raise InvalidInputError(
                f"Instruction must be at least {MIN_REFINE_INSTRUCTION_CHARS} characters long",
                field="instruction",
            )
        record, scene = self._prepare_expansion(db, adventure_id, scene_id, requester_id)
        refine_context = {
            "adventure_title": record.title,
            "scene_title": scene.title,
            "scene_type": scene.type,
            "frame": record.config.frame,
            **(context or {}),
        }
        source = scene.content or scene.description
        result = self._generate(
            "refine_content",
            lambda: self._gateway.refine_content(source, cleaned, refine_context),
        )

        def apply(current: AdventureRecord) -> tuple[AdventureRecord, RefinementOut]:
            fresh = _require_scene(current, scene_id)
            _ensure_unconfirmed(fresh)
            usage = ensure_available("expansion", current.expansion_regenerations_used)
            updated = _replace_scene(
                current,
                fresh.model_copy(update={"content": result.refined_content}),
                **_with_counter_bumped(current, "expansion"),
            )
            return updated, RefinementOut(
                scene_id=scene_id,
                refined_content=result.refined_content,
                changes=result.changes,
                remaining_regenerations=usage.remaining - 1,
            )

        return self._commit(db, adventure_id, record.owner_id, apply, increment_stage="expansion")

    def _prepare_expansion(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        requester_id: str | None,
    ) -> tuple[AdventureRecord, Scene]:
        requester_id = self._require_requester(requester_id)
        with db.begin():
            record = self._load_owned(db, adventure_id, requester_id)
            scene = _require_scene(record, scene_id)
            _ensure_unconfirmed(scene)
            self._counter.check_and_reserve(db, adventure_id, "expansion")
        return record, scene

    # -- free scene operations ----------------------------------------------

    def confirm_scene(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        requester_id: str | None,
    ) -> OperationResult[ConfirmationOut]:
        return self._run(
            "confirm_scene",
            lambda: self._set_confirmation(db, adventure_id, scene_id, requester_id, confirmed=True),
        )

    def unconfirm_scene(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        requester_id: str | None,
    ) -> OperationResult[ConfirmationOut]:
        return self._run(
            "unconfirm_scene",
            lambda: self._set_confirmation(db, adventure_id, scene_id, requester_id, confirmed=False),
        )

    def _set_confirmation(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        requester_id: str | None,
        *,
        confirmed: bool,
    ) -> ConfirmationOut:
        requester_id = self._require_requester(requester_id)

        def apply(current: AdventureRecord) -> tuple[AdventureRecord, ConfirmationOut]:
            scene = _require_scene(current, scene_id)
            if confirmed:
                stamp = scene.confirmed_at if scene.confirmed else utc_now_naive()
                toggled = scene.model_copy(update={"confirmed": True, "confirmed_at": stamp})
            else:
                toggled = scene.model_copy(update={"confirmed": False, "confirmed_at": None})
            state_update: dict[str, object] = {}
            if not confirmed and current.state == "ready":
                state_update["state"] = "scaffolded"
            updated = _replace_scene(current, toggled, **state_update)
            confirmed_count, total = updated.confirmation_counts()
            return updated, ConfirmationOut(
                scene_id=scene_id,
                confirmed=toggled.confirmed,
                confirmed_at=toggled.confirmed_at,
                confirmed_count=confirmed_count,
                total_count=total,
                all_confirmed=total > 0 and confirmed_count == total,
            )

        return self._commit(db, adventure_id, requester_id, apply)

    def update_scene(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        updates: SceneUpdateRequest | dict,
        requester_id: str | None,
    ) -> OperationResult[Scene]:
        return self._run(
            "update_scene",
            lambda: self._update_scene(db, adventure_id, scene_id, updates, requester_id),
        )

    def _update_scene(
        self,
        db: Session,
        adventure_id: str,
        scene_id: str,
        updates: SceneUpdateRequest | dict,
        requester_id: str | None,
    ) -> Scene:
        requester_id = self._require_requester(requester_id)
        try:
            request = updates if isinstance(updates, SceneUpdateRequest) else SceneUpdateRequest.model_validate(updates)
        except ValidationError as exc:
            raise InvalidInputError(f"Invalid scene update: {exc.errors()[0]['msg']}") from exc
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            raise InvalidInputError("No scene fields to update")

        def apply(current: AdventureRecord) -> tuple[AdventureRecord, Scene]:
            scene = _require_scene(current, scene_id)
            if scene.confirmed and set(changes) - {"locked"}:
                raise SceneLockedError("Scene is confirmed. Unconfirm it before editing.", scene_id=scene_id)
            edited = scene.model_copy(update=changes)
            return _replace_scene(current, edited), edited

        return self._commit(db, adventure_id, requester_id, apply)

    # -- adventure state ----------------------------------------------------

    def transition_to_ready(
        self,
        db: Session,
        adventure_id: str,
        requester_id: str | None,
    ) -> OperationResult[StateChangeOut]:
        return self._run("transition_to_ready", lambda: self._transition_to_ready(db, adventure_id, requester_id))

    def _transition_to_ready(self, db: Session, adventure_id: str, requester_id: str | None) -> StateChangeOut:
        requester_id = self._require_requester(requester_id)

        def apply(current: AdventureRecord) -> tuple[AdventureRecord, StateChangeOut]:
            confirmed_count, total = current.confirmation_counts()
            if total == 0:
                raise NotAllScenesConfirmedError(
                    "No scenes to confirm. Generate an adventure first.",
                    confirmed_count=0,
                    total_count=0,
                )
            if confirmed_count != total:
                raise NotAllScenesConfirmedError(
                    f"Cannot mark as ready: Only {confirmed_count}/{total} scenes confirmed",
                    confirmed_count=confirmed_count,
                    total_count=total,
                )
            return current.model_copy(update={"state": "ready"}), StateChangeOut(
                adventure_id=adventure_id,
                state="ready",
            )

        return self._commit(db, adventure_id, requester_id, apply)

    def archive_adventure(
        self,
        db: Session,
        adventure_id: str,
        requester_id: str | None,
    ) -> OperationResult[StateChangeOut]:
        return self._run("archive_adventure", lambda: self._archive_adventure(db, adventure_id, requester_id))

    def _archive_adventure(self, db: Session, adventure_id: str, requester_id: str | None) -> StateChangeOut:
        requester_id = self._require_requester(requester_id)

        def apply(current: AdventureRecord) -> tuple[AdventureRecord, StateChangeOut]:
            return current.model_copy(update={"state": "archived"}), StateChangeOut(
                adventure_id=adventure_id,
                state="archived",
            )

        return self._commit(db, adventure_id, requester_id, apply)

    # -- reads --------------------------------------------------------------

    def get_regeneration_counts(
        self,
        db: Session,
        adventure_id: str,
        requester_id: str | None,
    ) -> OperationResult[RegenerationCounts]:
        def read() -> RegenerationCounts:
            owner = self._require_requester(requester_id)
            with db.begin():
                self._load_owned(db, adventure_id, owner, allow_archived=True)
                return self._counter.get_counts(db, adventure_id)

        return self._run("get_regeneration_counts", read)

    def get_adventure(
        self,
        db: Session,
        adventure_id: str,
        requester_id: str | None,
    ) -> OperationResult[AdventureRecord]:
        def read() -> AdventureRecord:
            owner = self._require_requester(requester_id)
            with db.begin():
                return self._load_owned(db, adventure_id, owner, allow_archived=True)

        return self._run("get_adventure", read)

    def list_adventures(
        self,
        db: Session,
        requester_id: str | None,
        *,
        include_archived: bool = False,
    ) -> OperationResult[list[AdventureRecord]]:
        def read() -> list[AdventureRecord]:
            owner = self._require_requester(requester_id)
            with db.begin():
                return self._store.list_for_owner(db, owner, include_archived=include_archived)

        return self._run("list_adventures", read)

    # -- export -------------------------------------------------------------

    def export_adventure(
        self,
        db: Session,
        adventure_id: str,
        export_format: str,
        requester_id: str | None,
    ) -> OperationResult[ExportFile]:
        """Render an owned adventure as a Markdown document or a Roll20 handout.

        Exports are free. Each one still leaves a zero-amount ``export`` entry in
        the owner's credit history.
        """

        def export() -> ExportFile:
            owner = self._require_requester(requester_id)
            if export_format not in EXPORT_FORMATS:
                raise InvalidInputError(f"Unsupported export format: {export_format}", field="format")
            with db.begin():
                record = self._load_owned(db, adventure_id, owner, allow_archived=True)
                self._ledger.consume(db, owner, "export", {"adventure_id": adventure_id, "format": export_format})
            exported = export_file(record, export_format)
            logger.info("adventure_exported", adventure_id=adventure_id, export_format=export_format)
            return exported

        return self._run("export_adventure", export)

    # -- plumbing -----------------------------------------------------------

    def _run(self, operation: str, call: Callable[[], T]) -> OperationResult[T]:
        try:
            return OperationResult.success(call())
        except _EXPECTED_FAILURES as exc:
            logger.info("operation_rejected", operation=operation, code=exc.code, reason=str(exc))
            return OperationResult.failure(exc)

    def _generate(self, operation: str, call: Callable[[], T]) -> T:
        try:
            return call()
        except GenerationError as exc:
            raise GenerationFailedError(f"Generation failed: {exc}", operation=operation) from exc

    def _commit(
        self,
        db: Session,
        adventure_id: str,
        requester_id: str,
        apply: Callable[[AdventureRecord], tuple[AdventureRecord, T]],
        *,
        increment_stage: str | None = None,
    ) -> T:
        for attempt in range(1, self._write_attempts + 1):
            try:
                with db.begin():
                    current = self._load_owned(db, adventure_id, requester_id)
                    updated, value = apply(current)
                    self._store.save_adventure(
                        db,
                        updated,
                        expected_version=current.version,
                        increment_stage=increment_stage,
                    )
                return value
            except AdventureWriteConflictError:
                logger.info("write_conflict_retry", adventure_id=adventure_id, attempt=attempt)
            except SceneLockedError:
                if increment_stage is not None:
                    logger.info("generated_content_discarded", adventure_id=adventure_id, stage=increment_stage)
                raise
        raise ConcurrentModificationError(
            "Adventure was modified concurrently. Please retry.",
            adventure_id=adventure_id,
            attempts=self._write_attempts,
        )

    def _load_owned(
        self,
        db: Session,
        adventure_id: str,
        requester_id: str,
        *,
        allow_archived: bool = False,
    ) -> AdventureRecord:
        record = self._store.load_adventure(db, adventure_id)
        if record is None or (record.state == "archived" and not allow_archived):
            raise AdventureNotFoundError(f"adventure not found: {adventure_id}", adventure_id=adventure_id)
        if record.owner_id != requester_id:
            raise ForbiddenError("You do not own this adventure", adventure_id=adventure_id)
        return record

    @staticmethod
    def _require_requester(requester_id: str | None) -> str:
        cleaned = str(requester_id or "").strip()
        if not cleaned:
            raise UnauthorizedError("Authentication required")
        return cleaned

    @staticmethod
    def _coerce_config(config: AdventureConfig | dict) -> AdventureConfig:
        if isinstance(config, AdventureConfig):
            return config
        try:
            return AdventureConfig.model_validate(config)
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ())) or "config"
            raise InvalidInputError(f"Invalid adventure config: {location}: {first['msg']}", field=location) from exc
