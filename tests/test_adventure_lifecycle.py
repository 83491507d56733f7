from __future__ import annotations

import threading
import uuid

import pytest
from sqlalchemy import func, select, update as sql_update
from sqlalchemy.exc import SQLAlchemyError

from daggergm.db import session as db_session
from daggergm.db.models import Adventure, CreditTransaction
from daggergm.modules.adventures.errors import AdventureWriteConflictError
from daggergm.modules.adventures.lifecycle import AdventureLifecycle
from daggergm.modules.adventures.repository import PersistenceGateway
from daggergm.modules.adventures.schemas import AdventureConfig
from daggergm.modules.credits.ledger import CreditLedger
from daggergm.modules.generation.errors import GenerationError
from tests.support.scripted_gateway import ScriptedGateway


def _lifecycle(gateway: ScriptedGateway | None = None, **kwargs) -> AdventureLifecycle:
    return AdventureLifecycle(gateway=gateway or ScriptedGateway(), **kwargs)


def _create(db, owner_id: str, **config) -> str:
    result = _lifecycle().create_adventure(db, {"primary_motif": "corruption", **config}, owner_id)
    assert result.ok, result.error
    return result.value.adventure_id


def _load(db, adventure_id: str):
    with db.begin():
        return PersistenceGateway().load_adventure(db, adventure_id)


def _balance(db, user_id: str) -> int:
    with db.begin():
        return CreditLedger().get_balance(db, user_id)


def _adventure_count(db) -> int:
    with db.begin():
        return int(db.execute(select(func.count()).select_from(Adventure)).scalar_one())


def _set_counters(db, adventure_id: str, **counters: int) -> None:
    with db.begin():
        db.execute(sql_update(Adventure).where(Adventure.id == adventure_id).values(**counters))


def _confirm(db, owner_id: str, adventure_id: str, *scene_ids: str) -> None:
    for scene_id in scene_ids:
        assert _lifecycle().confirm_scene(db, adventure_id, scene_id, owner_id).ok


def test_create_with_one_credit_persists_scaffolded_adventure(db, make_user) -> None:
    owner_id = make_user(credits=1)
    gateway = ScriptedGateway()

    result = _lifecycle(gateway).create_adventure(db, {"primary_motif": "corruption"}, owner_id)

    assert result.ok
    assert result.value.credits_remaining == 0
    assert _balance(db, owner_id) == 0
    record = _load(db, result.value.adventure_id)
    assert record.state == "scaffolded"
    assert record.owner_id == owner_id
    assert [scene.id for scene in record.movements] == ["movement-1", "movement-2", "movement-3"]
    assert [scene.order_index for scene in record.movements] == [0, 1, 2]
    assert record.config.focus == "corruption"
    assert gateway.calls == ["generate_scaffold"]


def test_create_without_credit_fails_before_generation(db, make_user) -> None:
    owner_id = make_user(credits=1)
    _create(db, owner_id)
    gateway = ScriptedGateway()

    result = _lifecycle(gateway).create_adventure(db, {"primary_motif": "corruption"}, owner_id)

    assert not result.ok
    assert result.error.code == "INSUFFICIENT_CREDITS"
    assert _balance(db, owner_id) == 0
    assert _adventure_count(db) == 1
    assert gateway.calls == []


def test_create_generation_failure_refunds_exactly_once(db, make_user) -> None:
    owner_id = make_user(credits=1)
    gateway = ScriptedGateway(fail_with=GenerationError("timeout", operation="generate_scaffold"))

    result = _lifecycle(gateway).create_adventure(db, {"primary_motif": "corruption"}, owner_id)

    assert not result.ok
    assert result.error.code == "GENERATION_FAILED"
    assert _balance(db, owner_id) == 1
    assert _adventure_count(db) == 0
    with db.begin():
        rows = db.execute(select(CreditTransaction).where(CreditTransaction.user_id == owner_id)).scalars().all()
        entries = sorted((row.type, row.amount, row.metadata_json.get("adventure_id")) for row in rows)
    assert [entry[:2] for entry in entries] == [("consume", -1), ("refund", 1)]
    assert entries[0][2] == entries[1][2] == result.error.details["adventure_id"]


def test_create_unexpected_generator_fault_refunds_and_propagates(db, make_user) -> None:
    owner_id = make_user(credits=2)
    gateway = ScriptedGateway(fail_with=RuntimeError("socket closed"))

    with pytest.raises(RuntimeError, match="socket closed"):
        _lifecycle(gateway).create_adventure(db, {"primary_motif": "corruption"}, owner_id)

    assert _balance(db, owner_id) == 2
    assert _adventure_count(db) == 0


def test_create_persistence_failure_refunds_and_propagates(db, make_user) -> None:
    class _BrokenStore(PersistenceGateway):
        def insert_adventure(self, db, **kwargs):
            raise SQLAlchemyError("disk full")

    owner_id = make_user(credits=1)

    with pytest.raises(SQLAlchemyError):
        _lifecycle(store=_BrokenStore()).create_adventure(db, {"primary_motif": "corruption"}, owner_id)

    assert _balance(db, owner_id) == 1
    assert _adventure_count(db) == 0


def test_create_requires_owner_and_valid_config(db, make_user) -> None:
    owner_id = make_user(credits=1)

    unauthenticated = _lifecycle().create_adventure(db, {"primary_motif": "corruption"}, None)
    invalid = _lifecycle().create_adventure(db, {"primary_motif": "corruption", "party_size": 12}, owner_id)
    unknown = _lifecycle().create_adventure(db, {"primary_motif": "corruption", "vibes": "cozy"}, owner_id)

    assert unauthenticated.error.code == "UNAUTHORIZED"
    assert invalid.error.code == "INVALID_INPUT"
    assert invalid.error.details["field"] == "party_size"
    assert unknown.error.code == "INVALID_INPUT"
    assert _balance(db, owner_id) == 1


def test_scaffold_regeneration_at_cap_leaves_counter_unchanged(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id)
    _set_counters(db, adventure_id, scaffold_regenerations_used=10)
    gateway = ScriptedGateway()

    result = _lifecycle(gateway).regenerate_scaffold_scene(db, adventure_id, "movement-2", owner_id)

    assert not result.ok
    assert result.error.code == "LIMIT_EXCEEDED"
    assert "Scaffold regeneration limit reached (10 maximum)" in result.error.message
    assert _load(db, adventure_id).scaffold_regenerations_used == 10
    assert gateway.calls == []


def test_scaffold_regeneration_replaces_only_target_fields(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id, num_scenes=4)
    before = _load(db, adventure_id)
    assert _lifecycle().update_scene(db, adventure_id, "movement-4", {"locked": True}, owner_id).ok
    gateway = ScriptedGateway()

    result = _lifecycle(gateway).regenerate_scaffold_scene(db, adventure_id, "movement-2", owner_id)

    assert result.ok
    assert result.value.remaining_regenerations == 9
    assert gateway.locked_context == [["movement-4"]]
    after = _load(db, adventure_id)
    assert [(s.id, s.order_index) for s in after.movements] == [(s.id, s.order_index) for s in before.movements]
    assert after.movements[1].title != before.movements[1].title
    assert after.movements[1].title == result.value.updated_scene.title
    assert after.movements[0] == before.movements[0]
    assert after.scaffold_regenerations_used == 1


def test_scaffold_regeneration_refuses_locked_or_confirmed_targets(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id)
    assert _lifecycle().update_scene(db, adventure_id, "movement-1", {"locked": True}, owner_id).ok
    _confirm(db, owner_id, adventure_id, "movement-2")
    gateway = ScriptedGateway()

    locked = _lifecycle(gateway).regenerate_scaffold_scene(db, adventure_id, "movement-1", owner_id)
    confirmed = _lifecycle(gateway).regenerate_scaffold_scene(db, adventure_id, "movement-2", owner_id)

    assert locked.error.code == "SCENE_LOCKED"
    assert confirmed.error.code == "SCENE_LOCKED"
    assert gateway.calls == []


def test_failed_regeneration_is_not_counted(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id)
    gateway = ScriptedGateway(fail_with=GenerationError("rate limited"))

    scaffold = _lifecycle(gateway).regenerate_scaffold_scene(db, adventure_id, "movement-1", owner_id)
    expansion = _lifecycle(gateway).expand_scene(db, adventure_id, "movement-1", owner_id)

    assert scaffold.error.code == "GENERATION_FAILED"
    assert expansion.error.code == "GENERATION_FAILED"
    record = _load(db, adventure_id)
    assert record.scaffold_regenerations_used == 0
    assert record.expansion_regenerations_used == 0
    assert record.movements[0].expansion is None
    assert _balance(db, owner_id) == 0


def test_confirmed_scene_blocks_expansion_until_unconfirmed(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id)
    _confirm(db, owner_id, adventure_id, "movement-3")
    lifecycle = _lifecycle()

    for blocked in (
        lifecycle.expand_scene(db, adventure_id, "movement-3", owner_id),
        lifecycle.regenerate_expansion(db, adventure_id, "movement-3", owner_id),
        lifecycle.refine_scene_content(db, adventure_id, "movement-3", "more dread", owner_id),
    ):
        assert blocked.error.code == "SCENE_LOCKED"

    assert lifecycle.unconfirm_scene(db, adventure_id, "movement-3", owner_id).ok
    expanded = lifecycle.expand_scene(db, adventure_id, "movement-3", owner_id)

    assert expanded.ok
    assert expanded.value.remaining_regenerations == 19
    record = _load(db, adventure_id)
    assert record.expansion_regenerations_used == 1
    assert record.movements[2].expansion == expanded.value.expansion


def test_expansion_pool_is_shared_across_scene_operations(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id)
    lifecycle = _lifecycle()

    regenerated = lifecycle.regenerate_expansion(db, adventure_id, "movement-1", owner_id)
    refined = lifecycle.refine_scene_content(db, adventure_id, "movement-1", "tighten the pacing", owner_id)
    _set_counters(db, adventure_id, expansion_regenerations_used=20)
    capped = lifecycle.expand_scene(db, adventure_id, "movement-2", owner_id)

    assert regenerated.ok
    assert regenerated.value.mechanics
    assert regenerated.value.remaining_regenerations == 19
    assert refined.ok
    assert refined.value.remaining_regenerations == 18
    assert refined.value.refined_content.endswith("[Revised: tighten the pacing]")
    assert capped.error.code == "LIMIT_EXCEEDED"
    record = _load(db, adventure_id)
    assert record.movements[0].content == refined.value.refined_content
    assert record.movements[0].gm_notes
    assert record.expansion_regenerations_used == 20


def test_refine_rejects_short_instruction(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id)
    gateway = ScriptedGateway()

    result = _lifecycle(gateway).refine_scene_content(db, adventure_id, "movement-1", "  x ", owner_id)

    assert result.error.code == "INVALID_INPUT"
    assert gateway.calls == []


def test_confirmation_racing_generation_discards_generated_content(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id)

    def _confirm_elsewhere() -> None:
        other = db_session.SessionLocal()
        try:
            assert _lifecycle().confirm_scene(other, adventure_id, "movement-1", owner_id).ok
        finally:
            other.close()

    result = _lifecycle(ScriptedGateway(during_call=_confirm_elsewhere)).expand_scene(
        db, adventure_id, "movement-1", owner_id
    )

    assert result.error.code == "SCENE_LOCKED"
    record = _load(db, adventure_id)
    assert record.movements[0].confirmed is True
    assert record.movements[0].expansion is None
    assert record.expansion_regenerations_used == 0


def test_ready_requires_every_scene_confirmed(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id)
    lifecycle = _lifecycle()
    _confirm(db, owner_id, adventure_id, "movement-1", "movement-2")

    early = lifecycle.transition_to_ready(db, adventure_id, owner_id)
    _confirm(db, owner_id, adventure_id, "movement-3")
    ready = lifecycle.transition_to_ready(db, adventure_id, owner_id)

    assert early.error.code == "NOT_ALL_SCENES_CONFIRMED"
    assert early.error.message == "Cannot mark as ready: Only 2/3 scenes confirmed"
    assert ready.ok
    assert _load(db, adventure_id).state == "ready"


def test_ready_with_zero_scenes_fails(db, make_user) -> None:
    owner_id = make_user()
    adventure_id = str(uuid.uuid4())
    with db.begin():
        PersistenceGateway().insert_adventure(
            db,
            adventure_id=adventure_id,
            owner_id=owner_id,
            state="draft",
            title="Empty",
            description="",
            config=AdventureConfig(primary_motif="corruption"),
            movements=[],
        )

    result = _lifecycle().transition_to_ready(db, adventure_id, owner_id)

    assert result.error.code == "NOT_ALL_SCENES_CONFIRMED"
    assert result.error.message == "No scenes to confirm. Generate an adventure first."


def test_confirm_is_idempotent_and_unconfirm_reopens_ready_adventure(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id)
    lifecycle = _lifecycle()

    first = lifecycle.confirm_scene(db, adventure_id, "movement-1", owner_id)
    again = lifecycle.confirm_scene(db, adventure_id, "movement-1", owner_id)
    assert first.value.model_dump(mode="json")["confirmed_at"] == again.value.model_dump(mode="json")["confirmed_at"]
    assert again.value.confirmed_count == 1
    assert again.value.total_count == 3

    _confirm(db, owner_id, adventure_id, "movement-2", "movement-3")
    assert lifecycle.transition_to_ready(db, adventure_id, owner_id).ok
    reopened = lifecycle.unconfirm_scene(db, adventure_id, "movement-2", owner_id)

    assert reopened.value.confirmed is False
    assert reopened.value.confirmed_at is None
    assert reopened.value.all_confirmed is False
    assert _load(db, adventure_id).state == "scaffolded"


def test_confirmed_scene_only_accepts_lock_edits(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id)
    _confirm(db, owner_id, adventure_id, "movement-1")
    lifecycle = _lifecycle()

    edit = lifecycle.update_scene(db, adventure_id, "movement-1", {"title": "New title"}, owner_id)
    lock = lifecycle.update_scene(db, adventure_id, "movement-1", {"locked": True}, owner_id)
    empty = lifecycle.update_scene(db, adventure_id, "movement-2", {}, owner_id)
    bad = lifecycle.update_scene(db, adventure_id, "movement-2", {"type": "dance"}, owner_id)

    assert edit.error.code == "SCENE_LOCKED"
    assert lock.ok
    assert lock.value.locked is True
    assert empty.error.code == "INVALID_INPUT"
    assert bad.error.code == "INVALID_INPUT"


def test_ownership_and_visibility_failures(db, make_user) -> None:
    owner_id = make_user(credits=1)
    stranger_id = make_user()
    adventure_id = _create(db, owner_id)
    lifecycle = _lifecycle()

    assert lifecycle.expand_scene(db, adventure_id, "movement-1", stranger_id).error.code == "FORBIDDEN"
    assert lifecycle.confirm_scene(db, adventure_id, "movement-1", None).error.code == "UNAUTHORIZED"
    assert lifecycle.get_regeneration_counts(db, adventure_id, stranger_id).error.code == "FORBIDDEN"
    assert lifecycle.get_adventure(db, "missing", owner_id).error.code == "NOT_FOUND"
    assert lifecycle.confirm_scene(db, adventure_id, "movement-99", owner_id).error.code == "NOT_FOUND"
    assert lifecycle.list_adventures(db, stranger_id).value == []


def test_archived_adventure_is_read_only(db, make_user) -> None:
    owner_id = make_user(credits=2)
    archived_id = _create(db, owner_id)
    active_id = _create(db, owner_id)
    lifecycle = _lifecycle()

    assert lifecycle.archive_adventure(db, archived_id, owner_id).value.state == "archived"

    assert lifecycle.confirm_scene(db, archived_id, "movement-1", owner_id).error.code == "NOT_FOUND"
    assert lifecycle.get_adventure(db, archived_id, owner_id).value.state == "archived"
    assert [item.id for item in lifecycle.list_adventures(db, owner_id).value] == [active_id]
    assert len(lifecycle.list_adventures(db, owner_id, include_archived=True).value) == 2


def test_regeneration_counts_report_usage(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id)
    lifecycle = _lifecycle()
    lifecycle.regenerate_scaffold_scene(db, adventure_id, "movement-1", owner_id)
    lifecycle.expand_scene(db, adventure_id, "movement-2", owner_id)

    counts = lifecycle.get_regeneration_counts(db, adventure_id, owner_id).value

    assert counts.scaffold_used == 1
    assert counts.scaffold_limit == 10
    assert counts.scaffold_remaining == 9
    assert counts.expansion_used == 1
    assert counts.expansion_limit == 20
    assert counts.expansion_remaining == 19


def test_write_conflicts_exhaust_into_conflict_failure(db, make_user) -> None:
    class _ContendedStore(PersistenceGateway):
        attempts = 0

        def save_adventure(self, db, record, *, expected_version, increment_stage=None):
            _ContendedStore.attempts += 1
            raise AdventureWriteConflictError(adventure_id=record.id, expected_version=expected_version)

    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id)

    result = _lifecycle(store=_ContendedStore(), write_attempts=4).confirm_scene(
        db, adventure_id, "movement-1", owner_id
    )

    assert result.error.code == "CONFLICT"
    assert result.error.details["attempts"] == 4
    assert _ContendedStore.attempts == 4
    assert _load(db, adventure_id).movements[0].confirmed is False


def test_concurrent_scaffold_regenerations_all_land(db, make_user) -> None:
    owner_id = make_user(credits=1)
    adventure_id = _create(db, owner_id, num_scenes=5)
    before = _load(db, adventure_id)
    scene_ids = [scene.id for scene in before.movements]
    outcomes: dict[str, object] = {}
    lock = threading.Lock()
    barrier = threading.Barrier(len(scene_ids))

    def _worker(scene_id: str) -> None:
        session = db_session.SessionLocal()
        try:
            barrier.wait()
            result = _lifecycle(write_attempts=10).regenerate_scaffold_scene(session, adventure_id, scene_id, owner_id)
        finally:
            session.close()
        with lock:
            outcomes[scene_id] = result

    threads = [threading.Thread(target=_worker, args=(scene_id,)) for scene_id in scene_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(result.ok for result in outcomes.values())
    after = _load(db, adventure_id)
    assert after.scaffold_regenerations_used == len(scene_ids)
    assert [(s.id, s.order_index) for s in after.movements] == [(s.id, s.order_index) for s in before.movements]
    for old, new in zip(before.movements, after.movements):
        assert new.title == outcomes[old.id].value.updated_scene.title
        assert new.title != old.title
