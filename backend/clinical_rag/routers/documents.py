"""Clinical document API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from clinical_rag.dependencies import get_document_store
from clinical_rag.models.schemas import (
    ChunkListResponse,
    ChunkView,
    DocumentListResponse,
    DocumentUpsertRequest,
    DocumentUpsertResponse,
    ErrorDetail,
)
from clinical_rag.services.document_processor import chunk_document
from clinical_rag.services.document_store import DocumentStore

router = APIRouter(prefix="/api/v1", tags=["documents"])


@router.get("/users/{user_id}/documents", response_model=DocumentListResponse)
async def list_user_documents(
    user_id: str,
    store: DocumentStore = Depends(get_document_store),
) -> DocumentListResponse:
    documents = await store.find_for_user(user_id)
    return DocumentListResponse(user_id=user_id, count=len(documents), documents=documents)


@router.post("/documents", response_model=DocumentUpsertResponse)
async def upsert_documents(
    body: DocumentUpsertRequest,
    store: DocumentStore = Depends(get_document_store),
) -> DocumentUpsertResponse:
    upserted = await store.bulk_upsert(body.documents)
    return DocumentUpsertResponse(upserted=upserted)


@router.get("/documents/{document_id}/chunks", response_model=ChunkListResponse)
async def get_document_chunks(
    document_id: str,
    store: DocumentStore = Depends(get_document_store),
) -> ChunkListResponse:
    document = await store.find_one(document_id)
    if document is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(
                code="DOCUMENT_NOT_FOUND",
                message=f"Document with ID {document_id} not found",
            ).model_dump(),
        )
    vectorized = chunk_document(document)
    return ChunkListResponse(
        document_id=document_id,
        chunks=[
            ChunkView(id=c.id, text=c.text, chunk=c.chunk, metadata=m)
            for c, m in zip(vectorized.chunks, vectorized.metadata, strict=True)
        ],
    )
