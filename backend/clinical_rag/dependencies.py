"""Shared service instances for FastAPI routes (overridable in tests)."""

from __future__ import annotations

from clinical_rag.database import async_session
from clinical_rag.models.providers import EmbeddingConfig, ProviderConfig
from clinical_rag.services.document_store import DocumentStore
from clinical_rag.services.rag_service import (
    GoogleEmbedder,
    QdrantVectorIndex,
    get_async_qdrant_client,
)
from clinical_rag.services.vector_sync import VectorSyncEngine

_document_store: DocumentStore | None = None
_vector_index: QdrantVectorIndex | None = None
_sync_engine: VectorSyncEngine | None = None


def get_document_store() -> DocumentStore:
    global _document_store
    if _document_store is None:
        _document_store = DocumentStore(async_session)
    return _document_store


def get_vector_index() -> QdrantVectorIndex:
    global _vector_index
    if _vector_index is None:
        _vector_index = QdrantVectorIndex(
            get_async_qdrant_client(),
            GoogleEmbedder(EmbeddingConfig.from_settings()),
        )
    return _vector_index


def get_sync_engine() -> VectorSyncEngine:
    """One engine per process so concurrent sync requests share the single-flight lock."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = VectorSyncEngine(get_document_store(), get_vector_index())
    return _sync_engine


def get_provider_config() -> ProviderConfig:
    return ProviderConfig.from_settings()
