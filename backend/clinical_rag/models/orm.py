"""SQLAlchemy ORM models."""

from __future__ import annotations

import datetime
from typing import Any

from sqlalchemy import JSON, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ClinicalDocumentRecord(Base):
    """One stored clinical document, written by the portal sync collaborators."""

    __tablename__ = "clinical_documents"

    id: Mapped[str] = mapped_column(String(300), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(100), index=True)
    connection_record_id: Mapped[str] = mapped_column(String(100))

    # data_record
    raw: Mapped[Any] = mapped_column(JSON)
    format: Mapped[str] = mapped_column(String(50), default="FHIR.DSTU2")
    content_type: Mapped[str] = mapped_column(String(100))
    resource_type: Mapped[str] = mapped_column(String(50), index=True)
    version_history: Mapped[list] = mapped_column(JSON, default=list)

    # metadata
    source_id: Mapped[str | None] = mapped_column(String(300), default=None)
    date: Mapped[str | None] = mapped_column(String(50), default=None)
    display_name: Mapped[str | None] = mapped_column(String(500), default=None)
    codes: Mapped[list] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime.datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime.datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )
