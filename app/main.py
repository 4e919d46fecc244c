from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi_pagination import add_pagination

from app.config import get_settings
from app.core.app_state import AppState
from app.db import db_manager
from app.infra.logging_config import LoggingConfig, get_logger
from app.routers import chat_router, conversations_router

logger = get_logger()


def create_app(testing: bool = False, state: Optional[AppState] = None) -> FastAPI:
    """Build the API. ``testing`` skips schema creation; tests own the database."""
    LoggingConfig()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not testing:
            db_manager.create_all()
        logger.info("%s started (%s)", settings.app_name, settings.environment)
        yield
        app.state.chat.release_all()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.chat = state or AppState(settings=settings)

    app.include_router(conversations_router.router)
    app.include_router(chat_router.router)
    add_pagination(app)
    return app
