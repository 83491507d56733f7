from contextlib import asynccontextmanager

from fastapi import FastAPI

from daggergm.config import ensure_dev_database_schema, settings
from daggergm.db import session as db_session
from daggergm.logging import get_logger
from daggergm.modules.adventures.router import router as adventures_router
from daggergm.modules.credits.router import router as credits_router

logger = get_logger("daggergm.main")


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    if settings.env == "dev":
        ensure_dev_database_schema(str(db_session.engine.url))
    logger.info("app_started", env=settings.env, generation_mode="real" if settings.llm_api_key else "offline")
    yield


app = FastAPI(title="DaggerGM Adventure Service", lifespan=_lifespan)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(adventures_router)
app.include_router(credits_router)
