from __future__ import annotations

import os
import tempfile
import uuid
from pathlib import Path

_TEST_DB_PATH = Path(tempfile.gettempdir()) / f"daggergm-tests-{os.getpid()}.db"
os.environ["ENV"] = "dev"
os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{_TEST_DB_PATH}"

import pytest  # noqa: E402

from daggergm.config import settings  # noqa: E402
from daggergm.db import session as db_session  # noqa: E402
from daggergm.db.base import Base  # noqa: E402
from daggergm.db.models import Adventure, CreditBalance, CreditTransaction, User  # noqa: E402,F401


@pytest.fixture(autouse=True)
def _reset_db_and_defaults() -> None:
    settings.llm_api_key = ""
    settings.llm_base_url = "https://api.openai.com/v1"
    settings.llm_model = "gpt-4o-mini"
    settings.llm_max_attempts = 3
    settings.admin_api_token = ""
    settings.lifecycle_write_attempts = 3
    Base.metadata.drop_all(bind=db_session.engine)
    Base.metadata.create_all(bind=db_session.engine)
    yield
    Base.metadata.drop_all(bind=db_session.engine)


@pytest.fixture
def db():
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def _make(credits: int = 0) -> str:
        with db.begin():
            user = User(external_ref=f"test:{uuid.uuid4().hex}", display_name="Tester")
            db.add(user)
            db.flush()
            db.add(CreditBalance(user_id=user.id, credits=credits, total_purchased=credits))
            db.flush()
            return user.id

    return _make
