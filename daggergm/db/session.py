from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from daggergm.config import settings

SQLITE_BUSY_TIMEOUT_S = 30.0


def engine_options(database_url: str) -> dict:
    options: dict = {"future": True}
    if database_url.startswith("sqlite"):
        # Concurrent credit and counter writers wait on the file lock instead of failing fast.
        options["connect_args"] = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_S}
    return options


engine = create_engine(settings.database_url, **engine_options(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
