"""Vector sync API endpoints."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException

from clinical_rag.dependencies import get_sync_engine, get_vector_index
from clinical_rag.models.schemas import ErrorDetail, SyncStatusResponse
from clinical_rag.services.rag_service import QdrantVectorIndex
from clinical_rag.services.vector_sync import SyncAlreadyRunningError, VectorSyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/vector-sync", tags=["vector-sync"])

_sync_task: asyncio.Task | None = None


def _status(engine: VectorSyncEngine) -> SyncStatusResponse:
    progress = engine.progress()
    return SyncStatusResponse(**progress.model_dump(), running=_in_flight(engine))


def _in_flight(engine: VectorSyncEngine) -> bool:
    return engine.running or (_sync_task is not None and not _sync_task.done())


def _report_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Vector sync failed: %s", task.exception())


async def _run_sync(engine: VectorSyncEngine, index: QdrantVectorIndex) -> None:
    await index.ensure_collection()
    await engine.run()


async def cancel_background_sync() -> None:
    """Stop an in-flight background sync; the next run resumes from its current page."""
    if _sync_task is None or _sync_task.done():
        return
    logger.info("Cancelling in-flight vector sync")
    _sync_task.cancel()
    try:
        await _sync_task
    except asyncio.CancelledError:
        pass


@router.post("", response_model=SyncStatusResponse, status_code=202)
async def start_sync(
    reindex: bool = False,
    engine: VectorSyncEngine = Depends(get_sync_engine),
    index: QdrantVectorIndex = Depends(get_vector_index),
) -> SyncStatusResponse:
    """Start syncing in the background. A finished sync is a no-op unless ``reindex``."""
    global _sync_task
    if _in_flight(engine):
        raise HTTPException(
            status_code=409,
            detail=ErrorDetail(
                code=SyncAlreadyRunningError().code,
                message="A vector sync is already running",
            ).model_dump(),
        )
    if reindex:
        engine.reset()
    _sync_task = asyncio.create_task(_run_sync(engine, index))
    _sync_task.add_done_callback(_report_failure)
    logger.info("Vector sync requested (reindex=%s)", reindex)
    return _status(engine)


@router.get("", response_model=SyncStatusResponse)
async def get_sync_status(
    engine: VectorSyncEngine = Depends(get_sync_engine),
) -> SyncStatusResponse:
    return _status(engine)
