"""Medical records assistant: an explicit state machine driving search and answer."""

from __future__ import annotations

import enum
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, Field

from clinical_rag.config import settings
from clinical_rag.models.providers import ConfigurationError
from clinical_rag.models.rag import ClinicalDocument, PreparedDocuments, SearchResult
from clinical_rag.services.document_preparer import (
    RelatedDocumentLookup,
    prepare_documents_for_context,
)
from clinical_rag.services.llm_service import (
    ChatMessage,
    ChatProvider,
    ChatProviderError,
    ChatRequest,
    ModelTurn,
    SearchRequestParser,
)
from clinical_rag.services.prompts import (
    build_rag_user_prompt,
    build_search_note,
    build_system_prompt,
)
from clinical_rag.services.search_service import (
    DocumentLookup,
    SimilarityIndex,
    expand_keywords,
    iterative_search,
    search_documents,
)

logger = logging.getLogger(__name__)


class RAGGenerationError(Exception):
    """Raised when the assistant cannot produce an answer."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


class RAGState(str, enum.Enum):
    START = "start"
    AWAIT_MODEL = "await_model"
    REQUEST_SEARCH = "request_search"
    EXECUTE_SEARCH = "execute_search"
    FINAL_ANSWER = "final_answer"
    FORCED_FINAL = "forced_final"


class RAGAnswer(BaseModel):
    answer: str
    sources: list[str] = Field(default_factory=list)
    iterations: int
    searches: list[str] = Field(default_factory=list)
    forced: bool = False


class RAGEvent(BaseModel):
    """One message on the orchestrator's event channel."""

    kind: Literal["status", "token", "search", "answer"]
    state: RAGState | None = None
    text: str = ""
    queries: list[str] = Field(default_factory=list)
    found: int = 0
    answer: RAGAnswer | None = None


@dataclass
class RAGSession:
    """Mutable state of one question.

    ``history`` is the user-visible conversation. ``scratchpad`` holds notes
    meant only for the model and is never mixed into ``history``.
    """

    query: str
    history: list[ChatMessage] = field(default_factory=list)
    scratchpad: list[str] = field(default_factory=list)
    documents: list[ClinicalDocument] = field(default_factory=list)
    chunk_ids: list[str] = field(default_factory=list)
    searches: list[str] = field(default_factory=list)
    iteration: int = 0
    state: RAGState = RAGState.START

    def merge(self, documents: list[ClinicalDocument], chunk_ids: list[str]) -> int:
        """Add search results to the running batch. Returns how many documents were new."""
        known = {d.id for d in self.documents}
        added = 0
        for document in documents:
            if document.id not in known:
                known.add(document.id)
                self.documents.append(document)
                added += 1
        for chunk_id in chunk_ids:
            if chunk_id not in self.chunk_ids:
                self.chunk_ids.append(chunk_id)
        return added


class RAGOrchestrator:
    """Answers one question at a time against a user's indexed records.

    Model calls are strictly sequential. Cancelling means closing the
    ``run()`` generator; no further model calls are made after that.
    """

    def __init__(
        self,
        provider: ChatProvider,
        index: SimilarityIndex,
        store: DocumentLookup,
        *,
        user_id: str | None = None,
        rerank_provider: ChatProvider | None = None,
        related_lookup: RelatedDocumentLookup | None = None,
        demographics: dict[str, str] | None = None,
        max_iterations: int | None = None,
    ) -> None:
        self.provider = provider
        self.rerank_provider = rerank_provider
        self.index = index
        self.store = store
        self.user_id = user_id
        self.related_lookup = related_lookup
        self.demographics = demographics or {}
        self.max_iterations = (
            max_iterations if max_iterations is not None else settings.max_agent_iterations
        )

    async def run(
        self, query: str, history: list[ChatMessage] | None = None
    ) -> AsyncIterator[RAGEvent]:
        """Drive the loop for one question, yielding events until the answer."""
        session = RAGSession(query=query, history=list(history or []))
        try:
            async for event in self._run(session):
                yield event
        except RAGGenerationError:
            raise
        except ConfigurationError as e:
            raise RAGGenerationError(code="CONFIGURATION_ERROR", message=e.message) from e
        except ChatProviderError as e:
            logger.exception("Model call failed (state=%s)", session.state.value)
            raise RAGGenerationError(code="PROVIDER_ERROR", message=e.message) from e
        except Exception as e:
            logger.exception("Unexpected failure (state=%s)", session.state.value)
            raise RAGGenerationError(
                code="INTERNAL_ERROR", message=f"Answer generation failed: {e}"
            ) from e

    def _transition(
        self, session: RAGSession, state: RAGState, text: str = ""
    ) -> RAGEvent:
        logger.info(
            "[iteration %d] %s -> %s",
            session.iteration,
            session.state.value,
            state.value,
        )
        session.state = state
        return RAGEvent(kind="status", state=state, text=text)

    async def _run(self, session: RAGSession) -> AsyncIterator[RAGEvent]:
        yield self._transition(session, RAGState.START)
        result = await self._search(
            iterative_search(
                [session.query],
                self.index,
                self.store,
                limit=settings.max_context_chunks,
                expand=lambda terms, _round: expand_keywords(terms),
                k=settings.search_k,
                user_id=self.user_id,
            )
        )
        session.merge(result.documents, result.relevant_chunk_ids)
        logger.info("Initial search: %d documents", len(session.documents))

        while True:
            search_enabled = session.iteration < self.max_iterations
            yield self._transition(session, RAGState.AWAIT_MODEL)
            session.iteration += 1

            prepared = await prepare_documents_for_context(
                session.documents,
                session.chunk_ids,
                include_related=self.related_lookup is not None,
                related_lookup=self.related_lookup,
                query=session.query,
                provider=self.rerank_provider,
                skip_reranking=self.provider.config.skip_reranking,
            )
            request = self._build_request(session, prepared, search_enabled)

            parser = SearchRequestParser()
            async for chunk in self.provider.stream_complete(request):
                visible = parser.feed(chunk)
                if visible:
                    yield RAGEvent(kind="token", text=visible)
            if parser.tail:
                yield RAGEvent(kind="token", text=parser.tail)
            turn = parser.finish()

            if search_enabled and turn.incomplete:
                raise RAGGenerationError(
                    code="INCOMPLETE_SEARCH_REQUEST",
                    message="Model response ended inside a search request",
                )
            if search_enabled and turn.search_queries:
                async for event in self._execute_search(session, turn):
                    yield event
                continue

            if not turn.text:
                raise RAGGenerationError(
                    code="NO_ANSWER", message="Model returned an empty answer"
                )
            final = RAGState.FINAL_ANSWER if search_enabled else RAGState.FORCED_FINAL
            yield self._transition(session, final)
            answer = RAGAnswer(
                answer=turn.text,
                sources=[d.id for d in prepared.source_documents],
                iterations=session.iteration,
                searches=session.searches,
                forced=final is RAGState.FORCED_FINAL,
            )
            yield RAGEvent(kind="answer", state=final, text=turn.text, answer=answer)
            return

    async def _execute_search(
        self, session: RAGSession, turn: ModelTurn
    ) -> AsyncIterator[RAGEvent]:
        # Carries the text streamed for this turn, which is not part of the answer.
        yield self._transition(session, RAGState.REQUEST_SEARCH, text=turn.text)
        logger.info("Model requested searches: %s", turn.search_queries)
        yield self._transition(session, RAGState.EXECUTE_SEARCH)
        for search_query in turn.search_queries:
            result = await self._search(
                search_documents(
                    [search_query],
                    self.index,
                    self.store,
                    k=settings.agent_search_k,
                    user_id=self.user_id,
                )
            )
            added = session.merge(result.documents, result.relevant_chunk_ids)
            session.searches.append(search_query)
            session.scratchpad.append(
                build_search_note(session.iteration, search_query, len(session.documents))
            )
            logger.info(
                "Search %r: %d documents (%d new)",
                search_query,
                len(result.documents),
                added,
            )
            yield RAGEvent(
                kind="search",
                state=RAGState.EXECUTE_SEARCH,
                queries=[search_query],
                found=len(result.documents),
            )

    async def _search(self, pending: Awaitable[SearchResult]) -> SearchResult:
        try:
            return await pending
        except Exception as e:
            logger.exception("Record search failed")
            raise RAGGenerationError(
                code="SEARCH_ERROR", message=f"Record search failed: {e}"
            ) from e

    def _build_request(
        self, session: RAGSession, prepared: PreparedDocuments, search_enabled: bool
    ) -> ChatRequest:
        window = session.history[-settings.history_window :] if settings.history_window else []
        prompt = build_rag_user_prompt(session.query, prepared, session.scratchpad)
        logger.debug(
            "Model request: %d history messages, %d notes, %d context chunks, search=%s",
            len(window),
            len(session.scratchpad),
            len(prepared.texts),
            search_enabled,
        )
        return ChatRequest(
            system=build_system_prompt(search_enabled, self.demographics),
            messages=[*window, ChatMessage(role="user", content=prompt)],
            temperature=self.provider.config.temperature,
        )


async def answer_question(
    orchestrator: RAGOrchestrator,
    query: str,
    history: list[ChatMessage] | None = None,
    on_token: Callable[[str], None] | None = None,
    on_discard: Callable[[str], None] | None = None,
) -> RAGAnswer:
    """Run the orchestrator to completion, forwarding partial answer text.

    Tokens from a turn that ends in a search request are not part of the
    answer. ``on_discard`` is then called with that turn's text, and a
    consumer rendering ``on_token`` output should drop what it has shown
    since the previous discard.
    """
    async for event in orchestrator.run(query, history):
        if event.kind == "token" and on_token is not None:
            on_token(event.text)
        elif event.state is RAGState.REQUEST_SEARCH and on_discard is not None:
            on_discard(event.text)
        elif event.kind == "answer" and event.answer is not None:
            return event.answer
    raise RAGGenerationError(code="NO_ANSWER", message="Assistant produced no answer")
