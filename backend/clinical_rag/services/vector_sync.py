"""Vector sync engine: page through stored documents and index their chunks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

from clinical_rag.config import settings
from clinical_rag.models.rag import (
    ChunkMetadata,
    ChunkText,
    ClinicalDocument,
    SyncProgress,
    SyncState,
)
from clinical_rag.services.document_processor import chunk_documents

logger = logging.getLogger(__name__)


class PagedDocumentSource(Protocol):
    async def find(self, offset: int = 0, limit: int = 100) -> list[ClinicalDocument]: ...

    async def count(self) -> int: ...


class VectorSink(Protocol):
    async def add_texts(
        self, items: list[ChunkText], metas: list[ChunkMetadata]
    ) -> list[str]: ...


class SyncAlreadyRunningError(Exception):
    def __init__(self) -> None:
        self.code = "SYNC_IN_PROGRESS"
        self.message = "A vector sync is already running"
        super().__init__(self.message)


class VectorSyncEngine:
    """Single-flight sync from the document store into the vector index.

    ``run()`` drives the engine from its current page to Done. A failing page
    propagates its error and leaves the engine where it was, so calling
    ``run()`` again resumes from that page. Once Done, further runs are
    no-ops. Every write is an upsert keyed by chunk id, which makes it safe
    for searches to run against the index while a sync is in progress.
    """

    def __init__(
        self,
        store: PagedDocumentSource,
        index: VectorSink,
        page_size: int | None = None,
    ) -> None:
        self.store = store
        self.index = index
        self.page_size = page_size or settings.sync_page_size
        self.state: SyncState = "not_started"
        self.page = 0
        self.processed = 0
        self.total = 0
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def progress(self) -> SyncProgress:
        return SyncProgress(
            state=self.state,
            processed=self.processed,
            total=self.total,
            page=self.page,
        )

    async def step(self) -> SyncProgress:
        """Fetch, chunk and index one page."""
        if self.state == "done":
            return self.progress()
        if self.state == "not_started":
            # Total is captured once; documents added later wait for the next sync
            self.total = await self.store.count()
            self.state = "paging"
            logger.info("Vector sync started: %d documents", self.total)

        documents = await self.store.find(
            offset=self.page * self.page_size, limit=self.page_size
        )
        vectorized = chunk_documents(documents)
        if vectorized.chunks:
            await self.index.add_texts(vectorized.chunks, vectorized.metadata)

        self.page += 1
        self.processed += len(documents)
        if not documents or self.processed >= self.total:
            self.state = "done"
        logger.info(
            "Vector sync page %d: %d documents, %d chunks (%d/%d)",
            self.page,
            len(documents),
            len(vectorized.chunks),
            self.processed,
            self.total,
        )
        return self.progress()

    async def run(
        self, on_progress: Callable[[SyncProgress], None] | None = None
    ) -> SyncProgress:
        """Sync until Done. Raises SyncAlreadyRunningError if a sync is in flight."""
        if self._lock.locked():
            raise SyncAlreadyRunningError()
        async with self._lock:
            while self.state != "done":
                progress = await self.step()
                if on_progress:
                    on_progress(progress)
            return self.progress()

    def reset(self) -> None:
        """Start over from page 0 on the next run (e.g. after a reindex request)."""
        if self._lock.locked():
            raise SyncAlreadyRunningError()
        self.state = "not_started"
        self.page = 0
        self.processed = 0
        self.total = 0
