"""Application bootstrap for the survey preparation API.

This module wires the FastAPI application, attaches middleware, and owns the lifecycle of the
database engine and embedding provider.

Functions:
    lifespan(app: FastAPI): Build the engine, session factory, and provider; dispose them on shutdown.
    health_check(): Lightweight readiness probe used by monitoring and local smoke tests.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from survey_prep.api import api_router
from survey_prep.core.config import get_settings
from survey_prep.db.session import create_engine_for, init_db, make_sessionmaker
from survey_prep.services.embeddings import OpenAIEmbeddingProvider

_LOGGER = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = create_engine_for(settings.database_url)
    await init_db(engine)
    app.state.engine = engine
    app.state.sessionmaker = make_sessionmaker(engine)
    app.state.embedding_provider = OpenAIEmbeddingProvider(settings=settings)
    if not app.state.embedding_provider.is_configured:
        _LOGGER.warning("OPENAI_API_KEY is not set; embedding and text retrieval are unavailable")
    try:
        yield
    finally:
        await engine.dispose()


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
