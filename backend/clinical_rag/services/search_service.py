"""Document search: similarity hits resolved to source documents."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Protocol

from clinical_rag.config import settings
from clinical_rag.models.rag import ClinicalDocument, SearchHit, SearchResult

logger = logging.getLogger(__name__)

_STOP_WORDS = frozenset(
    "a an and are at be did do does for from had has have how i in is it its me my "
    "of on or show tell than that the their there this to was were what when where "
    "which who why with you your".split()
)


class SimilarityIndex(Protocol):
    async def similarity_search(
        self, query: str, k: int, user_id: str | None = None
    ) -> list[SearchHit]: ...


class DocumentLookup(Protocol):
    async def find_one(self, document_id: str) -> ClinicalDocument | None: ...


async def search_documents(
    terms: list[str],
    index: SimilarityIndex,
    store: DocumentLookup,
    k: int | None = None,
    user_id: str | None = None,
) -> SearchResult:
    """Run one similarity query and resolve its hits to documents.

    Documents are de-duplicated by id; every hit's chunk id is kept so the
    caller can later narrow each document down to the chunks that matched.
    """
    if k is None:
        k = settings.search_k
    query = " ".join(t.strip() for t in terms if t.strip())
    if not query:
        return SearchResult(search_terms=terms)

    hits = await index.similarity_search(query, k, user_id=user_id)

    documents: list[ClinicalDocument] = []
    seen: set[str] = set()
    chunk_ids: list[str] = []
    for hit in hits:
        chunk_ids.append(hit.id)
        document_id = hit.metadata.get("document_id")
        if not document_id or document_id in seen:
            continue
        seen.add(document_id)
        document = await store.find_one(document_id)
        if document is None:
            logger.warning("Hit %s points at missing document %s", hit.id, document_id)
            continue
        documents.append(document)

    logger.info(
        "Search %r: %d hits -> %d documents", query[:200], len(hits), len(documents)
    )
    return SearchResult(
        documents=documents,
        relevant_chunk_ids=chunk_ids,
        search_terms=terms,
        confidence=1.0 if documents else 0.0,
    )


def expand_keywords(terms: list[str]) -> list[str]:
    """Significant words of the original terms, for a broader follow-up round."""
    words = []
    for term in terms:
        for word in re.findall(r"[A-Za-z0-9][A-Za-z0-9\-]+", term.lower()):
            if word not in _STOP_WORDS and word not in words:
                words.append(word)
    return words or terms


async def iterative_search(
    terms: list[str],
    index: SimilarityIndex,
    store: DocumentLookup,
    limit: int,
    max_iterations: int | None = None,
    expand: Callable[[list[str], int], list[str]] | None = None,
    k: int | None = None,
    user_id: str | None = None,
) -> SearchResult:
    """Search in rounds until ``limit`` documents are found or rounds run out.

    ``expand(terms, round)`` may rewrite the terms before each round after
    the first.
    """
    if max_iterations is None:
        max_iterations = settings.max_search_iterations

    documents: list[ClinicalDocument] = []
    seen: set[str] = set()
    chunk_ids: list[str] = []
    used_terms: list[str] = []
    current = list(terms)

    for round_number in range(max_iterations):
        if round_number > 0 and expand is not None:
            current = expand(current, round_number)
        result = await search_documents(current, index, store, k=k, user_id=user_id)
        used_terms.extend(t for t in current if t not in used_terms)
        for chunk_id in result.relevant_chunk_ids:
            if chunk_id not in chunk_ids:
                chunk_ids.append(chunk_id)
        for document in result.documents:
            if document.id not in seen:
                seen.add(document.id)
                documents.append(document)
        logger.debug(
            "Search round %d: %d documents accumulated", round_number + 1, len(documents)
        )
        if len(documents) >= limit:
            break

    return SearchResult(
        documents=documents,
        relevant_chunk_ids=chunk_ids,
        search_terms=used_terms,
        confidence=1.0 if documents else 0.0,
    )
