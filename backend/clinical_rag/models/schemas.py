"""Pydantic request/response/error schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from clinical_rag.models.rag import ChunkMetadata, ChunkSpan, ClinicalDocument, SyncState


# --- Document API schemas ---


class DocumentListResponse(BaseModel):
    user_id: str
    count: int
    documents: list[ClinicalDocument]


class DocumentUpsertRequest(BaseModel):
    documents: list[ClinicalDocument]


class DocumentUpsertResponse(BaseModel):
    upserted: int


class ChunkView(BaseModel):
    id: str
    text: str
    chunk: ChunkSpan | None = None
    metadata: ChunkMetadata


class ChunkListResponse(BaseModel):
    document_id: str
    chunks: list[ChunkView]


# --- Vector sync ---


class SyncStatusResponse(BaseModel):
    state: SyncState
    processed: int
    total: int
    page: int
    running: bool


# --- Chat ---


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatQuery(BaseModel):
    query: str = Field(min_length=1)
    history: list[ChatTurn] = Field(default_factory=list)
    demographics: dict[str, str] = Field(default_factory=dict)


class ChatResponse(BaseModel):
    answer: str
    sources: list[str]
    iterations: int
    searches: list[str]


# --- Error schema ---


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict = {}
