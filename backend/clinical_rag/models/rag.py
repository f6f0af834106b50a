"""Pydantic models for RAG: clinical documents, chunks, search and rerank results."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


# --- Source documents ---


class DataRecord(BaseModel):
    raw: Any
    format: str = "FHIR.DSTU2"
    content_type: str
    resource_type: str
    version_history: list[Any] = Field(default_factory=list)


class DocumentMetadata(BaseModel):
    id: str | None = None
    date: str | None = None
    display_name: str | None = None
    codes: list[str] = Field(default_factory=list)


class ClinicalDocument(BaseModel):
    """A stored clinical document. Read-only to the RAG pipeline."""

    id: str
    user_id: str
    connection_record_id: str
    data_record: DataRecord
    metadata: DocumentMetadata | None = None


# --- Chunks ---


class ChunkSpan(BaseModel):
    """Where a tiled chunk sits inside the text it was cut from."""

    offset: int
    size: int


class ChunkText(BaseModel):
    id: str
    text: str
    chunk: ChunkSpan | None = None


class ChunkMetadata(BaseModel):
    """Payload stored next to every vector in the index."""

    category: str
    document_type: str = "clinical_document"
    source_id: str | None = None
    document_id: str
    section_name: str | None = None
    chunk_number: int
    is_full_document: bool = False
    user_id: str
    url: str | None = None


class VectorizedDocument(BaseModel):
    """Parallel chunk and metadata lists for one document (same length and order)."""

    chunks: list[ChunkText] = Field(default_factory=list)
    metadata: list[ChunkMetadata] = Field(default_factory=list)


# --- Search ---


class SearchHit(BaseModel):
    """A similarity search result from the vector index."""

    id: str
    metadata: dict[str, Any]
    score: float


class SearchResult(BaseModel):
    documents: list[ClinicalDocument] = Field(default_factory=list)
    relevant_chunk_ids: list[str] = Field(default_factory=list)
    search_terms: list[str] = Field(default_factory=list)
    confidence: float = 0.0


# --- Reranking ---


class RerankingDocument(BaseModel):
    text: str
    relevance_score: float
    relevance_reason: str
    # position of the text in the reranker input
    index: int


class RerankResult(BaseModel):
    reranking_applied: bool
    documents: list[RerankingDocument] = Field(default_factory=list)
    threshold: float | None = None


# --- Context preparation ---


class DocumentText(BaseModel):
    """One chunk of context text tied back to its source document."""

    id: str
    text: str
    source_document_id: str
    resource_type: str | None = None
    date: str | None = None
    section_name: str | None = None
    offset: int | None = None
    size: int | None = None
    is_related: bool = False
    relevance_score: float | None = None


class PreparedDocuments(BaseModel):
    texts: list[DocumentText] = Field(default_factory=list)
    source_documents: list[ClinicalDocument] = Field(default_factory=list)
    total_count: int = 0


# --- Vector sync ---


SyncState = Literal["not_started", "paging", "done"]


class SyncProgress(BaseModel):
    state: SyncState
    processed: int
    total: int
    page: int
