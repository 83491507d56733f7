from __future__ import annotations

import hashlib

from sqlalchemy import select
from sqlalchemy.orm import Session

from daggergm.config import settings
from daggergm.db import session as db_session
from daggergm.db.models import CreditBalance, User
from daggergm.utils.time import utc_now_naive


def token_external_ref(token: str) -> str:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:24]
    return f"token:user:{digest}"


def ensure_token_user(db: Session, *, token: str) -> User:
    """Find or create the user behind a bearer token; new users start with zero credits."""
    external_ref = token_external_ref(token)
    row = db.execute(select(User).where(User.external_ref == external_ref)).scalar_one_or_none()
    if row:
        return row

    row = User(external_ref=external_ref, display_name=settings.default_user_display_name)
    db.add(row)
    db.flush()
    db.add(CreditBalance(user_id=row.id, credits=0, total_purchased=0, updated_at=utc_now_naive()))
    db.flush()
    return row


def resolve_user_id(token: str | None) -> str | None:
    cleaned = str(token or "").strip()
    if not cleaned:
        return None
    with db_session.SessionLocal() as identity_db:
        with identity_db.begin():
            return ensure_token_user(identity_db, token=cleaned).id
