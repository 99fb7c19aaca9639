"""SQLAlchemy models for verification records, submissions and results."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    TIMESTAMP,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from trustflow.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationRecordRow(Base):
    """Per-company verification record.

    ``documents`` and ``status`` are the projection read by the rest of the
    platform; ``requirements`` holds the full per-requirement state. Writes
    are conditional on ``version`` so concurrent updates cannot be lost.
    """

    __tablename__ = "verification_records"

    company_id: Mapped[str] = mapped_column(String, primary_key=True)
    business_id_number: Mapped[str | None] = mapped_column(String, nullable=True)
    country_of_registration: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="unverified"
    )  # unverified | pending | verified | rejected
    documents: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    requirements: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    # Bumped on every write; updates only apply to the revision they were read at.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class DocumentSubmissionRow(Base):
    """One uploaded document. Rows are only ever inserted."""

    __tablename__ = "document_submissions"
    __table_args__ = (
        Index("ix_document_submissions_requirement", "company_id", "requirement_id", "uploaded_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    company_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    requirement_id: Mapped[str] = mapped_column(String, nullable=False)
    file_url: Mapped[str | None] = mapped_column(String, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )


class VerificationResultRow(Base):
    """AI verification result, written once per submission."""

    __tablename__ = "verification_results"

    submission_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("document_submissions.id", ondelete="CASCADE"),
        primary_key=True,
    )
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
