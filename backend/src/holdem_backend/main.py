from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from holdem_backend.api.deps import bot_scheduler, settings
from holdem_backend.api.routes import engine_error_handler, router
from holdem_backend.config import configure_logging
from holdem_backend.engine.errors import EngineError
from holdem_backend.engine.models import ENGINE_VERSION, RULESET_VERSION


configure_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    await bot_scheduler.stop_all()


app = FastAPI(title="Hold'em Engine", version=ENGINE_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(EngineError, engine_error_handler)
app.include_router(router)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok", "engine_version": ENGINE_VERSION, "ruleset_version": RULESET_VERSION}


def serve() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
