from __future__ import annotations

from sqlalchemy import select

from daggergm.db.models import CreditBalance, User
from daggergm.modules.auth.identity import ensure_token_user, resolve_user_id, token_external_ref


def test_token_external_ref_is_stable_and_opaque() -> None:
    ref = token_external_ref("secret-token")
    assert ref == token_external_ref("secret-token")
    assert ref.startswith("token:user:")
    assert "secret-token" not in ref
    assert ref != token_external_ref("other-token")


def test_resolve_user_id_creates_user_once(db) -> None:
    first = resolve_user_id("  dana-token ")
    second = resolve_user_id("dana-token")

    assert first == second
    with db.begin():
        users = db.execute(select(User)).scalars().all()
        balance = db.get(CreditBalance, first)
        assert len(users) == 1
        assert users[0].display_name == "Adventurer"
        assert balance.credits == 0


def test_resolve_user_id_without_token_is_none() -> None:
    assert resolve_user_id(None) is None
    assert resolve_user_id("   ") is None


def test_ensure_token_user_reuses_existing_row(db) -> None:
    with db.begin():
        created = ensure_token_user(db, token="erin-token")
        again = ensure_token_user(db, token="erin-token")
        assert created.id == again.id
