"""Chat API endpoints: answer questions from a user's clinical records."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from clinical_rag.agents.rag_agent import (
    RAGGenerationError,
    RAGOrchestrator,
    answer_question,
)
from clinical_rag.dependencies import (
    get_document_store,
    get_provider_config,
    get_vector_index,
)
from clinical_rag.models.providers import ConfigurationError, ProviderConfig
from clinical_rag.models.schemas import ChatQuery, ChatResponse, ErrorDetail
from clinical_rag.services.document_store import DocumentStore
from clinical_rag.services.llm_service import ChatMessage, get_chat_provider
from clinical_rag.services.rag_service import QdrantVectorIndex

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/users", tags=["chat"])


def _build_orchestrator(
    user_id: str,
    body: ChatQuery,
    config: ProviderConfig,
    index: QdrantVectorIndex,
    store: DocumentStore,
) -> RAGOrchestrator:
    try:
        provider = get_chat_provider(config)
        rerank_provider = get_chat_provider(config.for_reranking())
    except ConfigurationError as e:
        raise HTTPException(
            status_code=500,
            detail=ErrorDetail(code="CONFIGURATION_ERROR", message=e.message).model_dump(),
        )
    return RAGOrchestrator(
        provider,
        index,
        store,
        user_id=user_id,
        rerank_provider=rerank_provider,
        related_lookup=store,
        demographics=body.demographics,
    )


def _history(body: ChatQuery) -> list[ChatMessage]:
    return [ChatMessage(role=t.role, content=t.content) for t in body.history]


@router.post("/{user_id}/chat", response_model=ChatResponse)
async def chat(
    user_id: str,
    body: ChatQuery,
    config: ProviderConfig = Depends(get_provider_config),
    index: QdrantVectorIndex = Depends(get_vector_index),
    store: DocumentStore = Depends(get_document_store),
) -> ChatResponse:
    orchestrator = _build_orchestrator(user_id, body, config, index, store)
    logger.info("Answering question for user %s", user_id)
    try:
        result = await answer_question(orchestrator, body.query, _history(body))
    except RAGGenerationError as e:
        logger.exception("Answer generation failed for user %s", user_id)
        raise HTTPException(
            status_code=500,
            detail=ErrorDetail(code=e.code, message=e.message).model_dump(),
        )
    return ChatResponse(
        answer=result.answer,
        sources=result.sources,
        iterations=result.iterations,
        searches=result.searches,
    )


@router.post("/{user_id}/chat/stream")
async def chat_stream(
    user_id: str,
    body: ChatQuery,
    config: ProviderConfig = Depends(get_provider_config),
    index: QdrantVectorIndex = Depends(get_vector_index),
    store: DocumentStore = Depends(get_document_store),
) -> StreamingResponse:
    """Newline-delimited JSON events; a failure ends the stream with an ``error`` line."""
    orchestrator = _build_orchestrator(user_id, body, config, index, store)

    async def events() -> AsyncIterator[str]:
        try:
            async for event in orchestrator.run(body.query, _history(body)):
                yield event.model_dump_json() + "\n"
        except RAGGenerationError as e:
            logger.exception("Streaming answer failed for user %s", user_id)
            yield json.dumps({"kind": "error", "code": e.code, "message": e.message}) + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")
