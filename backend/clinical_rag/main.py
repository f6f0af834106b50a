"""FastAPI application entry point."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from rich.logging import RichHandler

from clinical_rag.config import settings
from clinical_rag.database import engine
from clinical_rag.routers import chat, documents, vector_sync
from clinical_rag.services.rag_service import close_async_qdrant_client

logging.basicConfig(
    level=logging.INFO,
    format="%(name)s - %(message)s",
    datefmt="%H:%M:%S",
    handlers=[RichHandler(rich_tracebacks=True, markup=False)],
    force=True,
)
for noisy in ("httpx", "httpcore", "qdrant_client"):
    logging.getLogger(noisy).setLevel(logging.WARNING)
if settings.debug:
    logging.getLogger("clinical_rag").setLevel(logging.DEBUG)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "Starting with chat provider %r, Qdrant collection %r",
        settings.chat_provider,
        settings.qdrant_collection,
    )
    yield
    await vector_sync.cancel_background_sync()
    await close_async_qdrant_client()
    await engine.dispose()


app = FastAPI(
    title="Clinical Records RAG",
    description="Answers patient questions from their own clinical records",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_credentials=True,
    allow_headers=["*"],
)

for module in (documents, vector_sync, chat):
    app.include_router(module.router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}
