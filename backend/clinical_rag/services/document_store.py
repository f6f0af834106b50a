"""Clinical document store and related-document lookup."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinical_rag.models.orm import ClinicalDocumentRecord
from clinical_rag.models.rag import ClinicalDocument, DataRecord, DocumentMetadata

logger = logging.getLogger(__name__)


def to_document(record: ClinicalDocumentRecord) -> ClinicalDocument:
    metadata = None
    if record.source_id or record.date or record.display_name or record.codes:
        metadata = DocumentMetadata(
            id=record.source_id,
            date=record.date,
            display_name=record.display_name,
            codes=list(record.codes or []),
        )
    return ClinicalDocument(
        id=record.id,
        user_id=record.user_id,
        connection_record_id=record.connection_record_id,
        data_record=DataRecord(
            raw=record.raw,
            format=record.format,
            content_type=record.content_type,
            resource_type=record.resource_type,
            version_history=list(record.version_history or []),
        ),
        metadata=metadata,
    )


def to_record(document: ClinicalDocument) -> ClinicalDocumentRecord:
    meta = document.metadata or DocumentMetadata()
    data = document.data_record
    return ClinicalDocumentRecord(
        id=document.id,
        user_id=document.user_id,
        connection_record_id=document.connection_record_id,
        raw=data.raw,
        format=data.format,
        content_type=data.content_type,
        resource_type=data.resource_type,
        version_history=data.version_history,
        source_id=meta.id,
        date=meta.date,
        display_name=meta.display_name,
        codes=meta.codes,
    )


def _reference_tail(reference: str) -> str:
    return reference.rstrip("/").rsplit("/", 1)[-1]


class DocumentStore:
    """Async access to stored clinical documents.

    Each call opens its own session so the store can be shared between the
    sync engine and concurrent request handlers.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def find(self, offset: int = 0, limit: int = 100) -> list[ClinicalDocument]:
        """One page of documents in stable id order."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ClinicalDocumentRecord)
                .order_by(ClinicalDocumentRecord.id)
                .offset(offset)
                .limit(limit)
            )
            return [to_document(r) for r in result.scalars().all()]

    async def find_one(self, document_id: str) -> ClinicalDocument | None:
        async with self.session_factory() as session:
            record = await session.get(ClinicalDocumentRecord, document_id)
            return to_document(record) if record else None

    async def count(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(ClinicalDocumentRecord)
            )
            return result.scalar_one()

    async def find_for_user(self, user_id: str) -> list[ClinicalDocument]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ClinicalDocumentRecord)
                .where(ClinicalDocumentRecord.user_id == user_id)
                .order_by(ClinicalDocumentRecord.id)
            )
            return [to_document(r) for r in result.scalars().all()]

    async def bulk_upsert(self, documents: Sequence[ClinicalDocument]) -> int:
        """Insert or replace documents by id. Returns the number written."""
        async with self.session_factory() as session:
            for document in documents:
                await session.merge(to_record(document))
            await session.commit()
        logger.info("Upserted %d clinical documents", len(documents))
        return len(documents)

    # --- Related-document lookup ---

    async def find_related_observations(
        self,
        codes: Sequence[str],
        user_id: str,
        exclude_ids: Sequence[str] = (),
        limit: int = 3,
    ) -> list[ClinicalDocument]:
        """Other observations for the same user sharing any of ``codes``, newest first."""
        if not codes:
            return []
        wanted = set(codes)
        async with self.session_factory() as session:
            result = await session.execute(
                select(ClinicalDocumentRecord).where(
                    ClinicalDocumentRecord.user_id == user_id,
                    ClinicalDocumentRecord.resource_type == "Observation",
                    ClinicalDocumentRecord.id.not_in(list(exclude_ids)),
                )
            )
            # JSON code lists are matched here rather than in SQL
            matches = [
                r for r in result.scalars().all() if wanted.intersection(r.codes or [])
            ]
        matches.sort(key=lambda r: r.date or "", reverse=True)
        return [to_document(r) for r in matches[:limit]]

    async def find_report_components(
        self, report: ClinicalDocument
    ) -> list[ClinicalDocument]:
        """Observations referenced by a diagnostic report's ``result`` list."""
        raw = report.data_record.raw
        resource = raw.get("resource", raw) if isinstance(raw, dict) else {}
        references = [
            _reference_tail(item["reference"])
            for item in resource.get("result", [])
            if isinstance(item, dict) and item.get("reference")
        ]
        if not references:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(ClinicalDocumentRecord).where(
                    ClinicalDocumentRecord.user_id == report.user_id,
                    ClinicalDocumentRecord.source_id.in_(references),
                    ClinicalDocumentRecord.id != report.id,
                )
            )
            return [to_document(r) for r in result.scalars().all()]
