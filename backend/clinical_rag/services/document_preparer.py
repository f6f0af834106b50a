"""Context preparation: turn retrieved documents into a bounded, ranked context set."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from clinical_rag.config import settings
from clinical_rag.models.rag import ClinicalDocument, DocumentText, PreparedDocuments
from clinical_rag.services.document_processor import chunk_document
from clinical_rag.services.llm_service import ChatProvider
from clinical_rag.services.reranker import rerank_documents

logger = logging.getLogger(__name__)


class RelatedDocumentLookup(Protocol):
    async def find_related_observations(
        self,
        codes: list[str],
        user_id: str,
        exclude_ids: list[str],
        limit: int,
    ) -> list[ClinicalDocument]: ...

    async def find_report_components(
        self, report: ClinicalDocument
    ) -> list[ClinicalDocument]: ...


def document_texts(
    document: ClinicalDocument, is_related: bool = False
) -> list[DocumentText]:
    """Every chunk of a document as context text."""
    vectorized = chunk_document(document)
    date = document.metadata.date if document.metadata else None
    return [
        DocumentText(
            id=chunk.id,
            text=chunk.text,
            source_document_id=document.id,
            resource_type=document.data_record.resource_type,
            date=date,
            section_name=meta.section_name,
            offset=chunk.chunk.offset if chunk.chunk else None,
            size=chunk.chunk.size if chunk.chunk else None,
            is_related=is_related,
        )
        for chunk, meta in zip(vectorized.chunks, vectorized.metadata, strict=True)
    ]


def filter_to_chunks(
    texts: list[DocumentText], relevant_chunk_ids: Iterable[str]
) -> list[DocumentText]:
    """Keep only the chunks that search matched, unless that would keep nothing."""
    wanted = set(relevant_chunk_ids)
    if not wanted:
        return texts
    kept = [t for t in texts if t.id in wanted]
    if not kept and texts:
        logger.info(
            "No chunk matched %d relevant ids, keeping all %d chunks",
            len(wanted),
            len(texts),
        )
        return texts
    return kept


async def fetch_related_documents(
    documents: list[ClinicalDocument],
    lookup: RelatedDocumentLookup,
    limit: int | None = None,
) -> list[ClinicalDocument]:
    """Lab results related to the candidates: same codes, or a report's components."""
    if limit is None:
        limit = settings.related_lab_limit
    seen = {d.id for d in documents}
    related: list[ClinicalDocument] = []
    for document in documents:
        resource_type = document.data_record.resource_type
        if resource_type == "Observation":
            codes = document.metadata.codes if document.metadata else []
            found = await lookup.find_related_observations(
                codes, document.user_id, exclude_ids=list(seen), limit=limit
            )
        elif resource_type == "DiagnosticReport":
            found = await lookup.find_report_components(document)
        else:
            continue
        for other in found:
            if other.id not in seen:
                seen.add(other.id)
                related.append(other)
    if related:
        logger.info("Found %d related documents", len(related))
    return related


def deduplicate(texts: list[DocumentText]) -> list[DocumentText]:
    unique: dict[str, DocumentText] = {}
    for text in texts:
        unique.setdefault(text.id, text)
    return list(unique.values())


def sort_by_date(texts: list[DocumentText]) -> list[DocumentText]:
    """Newest first; texts without a date go last."""
    return sorted(texts, key=lambda t: t.date or "", reverse=True)


async def _rerank(
    texts: list[DocumentText], query: str, provider: ChatProvider
) -> list[DocumentText]:
    try:
        result = await rerank_documents([t.text for t in texts], query, provider)
    except Exception:
        logger.exception("Reranking failed, keeping date order")
        return texts
    if not result.reranking_applied:
        return texts

    survivors = [
        texts[doc.index].model_copy(update={"relevance_score": doc.relevance_score})
        for doc in sorted(result.documents, key=lambda d: d.relevance_score, reverse=True)
    ]
    if not survivors:
        logger.warning(
            "Reranking kept nothing, falling back to the first %d chunks",
            settings.rerank_fallback_count,
        )
        return texts[: settings.rerank_fallback_count]
    return survivors


async def prepare_documents_for_context(
    documents: list[ClinicalDocument],
    relevant_chunk_ids: list[str] | None = None,
    *,
    max_chunks: int | None = None,
    include_related: bool = False,
    related_lookup: RelatedDocumentLookup | None = None,
    query: str | None = None,
    provider: ChatProvider | None = None,
    skip_reranking: bool = False,
) -> PreparedDocuments:
    """Build the context set for one model call.

    Reranking runs only with a query and a provider, and when the provider
    configuration does not opt out. A rerank failure leaves the date-sorted,
    truncated order in place.
    """
    if max_chunks is None:
        max_chunks = settings.max_context_chunks

    texts: list[DocumentText] = []
    for document in documents:
        texts.extend(document_texts(document))
    texts = filter_to_chunks(texts, relevant_chunk_ids or [])

    pool = {d.id: d for d in documents}
    if include_related and related_lookup is not None:
        for other in await fetch_related_documents(documents, related_lookup):
            pool.setdefault(other.id, other)
            texts.extend(document_texts(other, is_related=True))

    texts = sort_by_date(deduplicate(texts))
    total_count = len(texts)
    texts = texts[:max_chunks]

    if query and provider is not None and not skip_reranking and texts:
        texts = await _rerank(texts, query, provider)

    source_documents = [
        pool[i]
        for i in dict.fromkeys(t.source_document_id for t in texts)
        if i in pool
    ]

    logger.info(
        "Prepared context: %d chunks from %d documents (%d before truncation)",
        len(texts),
        len(source_documents),
        total_count,
    )
    return PreparedDocuments(
        texts=texts, source_documents=source_documents, total_count=total_count
    )
