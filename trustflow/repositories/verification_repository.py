"""Storage of verification records, submissions and results."""

from typing import Optional, Protocol
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from trustflow.core.exceptions import ConcurrentUpdateError, PersistenceError
from trustflow.database.models import (
    DocumentSubmissionRow,
    VerificationRecordRow,
    VerificationResultRow,
)
from trustflow.repositories.base_repository import BaseRepository
from trustflow.schemas.verification import (
    DocumentSubmission,
    RequirementState,
    VerificationRecord,
    VerificationResult,
)
from trustflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class VerificationStore(Protocol):
    """Everything the verification workflow needs from persistence.

    Writes raise ``PersistenceError`` on failure; reads return ``None`` for
    unknown ids. ``save_record`` is a compare-and-set on ``version``: it
    raises ``ConcurrentUpdateError`` if the stored record moved on since it
    was read, and returns the record with its new revision otherwise.
    """

    async def get_record(self, company_id: str) -> Optional[VerificationRecord]: ...

    async def save_record(self, record: VerificationRecord) -> VerificationRecord: ...

    async def add_submission(self, submission: DocumentSubmission) -> None: ...

    async def get_submission(self, submission_id: UUID) -> Optional[DocumentSubmission]: ...

    async def get_previous_submission(
        self, submission: DocumentSubmission
    ) -> Optional[DocumentSubmission]: ...

    async def save_result(self, result: VerificationResult) -> None: ...

    async def get_result(self, submission_id: UUID) -> Optional[VerificationResult]: ...


def record_to_row(record: VerificationRecord) -> VerificationRecordRow:
    persisted = record.to_persisted()
    return VerificationRecordRow(
        company_id=record.company_id,
        business_id_number=record.business_id_number,
        country_of_registration=record.country_of_registration,
        status=persisted["status"],
        documents=persisted["documents"],
        requirements={
            requirement_id: state.model_dump(mode="json")
            for requirement_id, state in record.per_requirement.items()
        },
        version=record.version,
    )


def row_to_record(row: VerificationRecordRow) -> VerificationRecord:
    return VerificationRecord(
        company_id=row.company_id,
        per_requirement={
            requirement_id: RequirementState.model_validate(state)
            for requirement_id, state in (row.requirements or {}).items()
        },
        business_id_number=row.business_id_number,
        country_of_registration=row.country_of_registration,
        version=row.version,
    )


def row_to_submission(row: DocumentSubmissionRow) -> DocumentSubmission:
    return DocumentSubmission(
        id=row.id,
        company_id=row.company_id,
        requirement_id=row.requirement_id,
        file_url=row.file_url,
        uploaded_at=row.uploaded_at,
    )


class VerificationRepository:
    """PostgreSQL-backed ``VerificationStore``.

    Records are written against the revision they were read at; submissions
    and results are insert-only.
    """

    def __init__(self, session: AsyncSession):
        """Initialize verification repository.

        Args:
            session: SQLAlchemy async session
        """
        self.session = session
        self.records = BaseRepository(session, VerificationRecordRow)
        self.submissions = BaseRepository(session, DocumentSubmissionRow)
        self.results = BaseRepository(session, VerificationResultRow)

    async def get_record(self, company_id: str) -> Optional[VerificationRecord]:
        # Other sessions may have written since this one last read the row.
        row = await self.records.get(company_id, populate_existing=True)
        return row_to_record(row) if row else None

    async def save_record(self, record: VerificationRecord) -> VerificationRecord:
        """Write ``record`` if storage still holds the revision it was read at.

        A record with ``version`` 0 is inserted; any other is updated only
        where the stored revision matches, so concurrent writers cannot
        overwrite each other's changes.

        Returns:
            The record carrying its new revision

        Raises:
            ConcurrentUpdateError: If another writer saved the record first
            PersistenceError: If the write fails
        """
        row = record_to_row(record)
        row.version = record.version + 1
        try:
            if record.version == 0:
                self.session.add(row)
                await self.session.flush()
            else:
                result = await self.session.execute(
                    update(VerificationRecordRow)
                    .where(
                        VerificationRecordRow.company_id == record.company_id,
                        VerificationRecordRow.version == record.version,
                    )
                    .values(
                        business_id_number=row.business_id_number,
                        country_of_registration=row.country_of_registration,
                        status=row.status,
                        documents=row.documents,
                        requirements=row.requirements,
                        version=row.version,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise ConcurrentUpdateError(
                        f"Verification record for {record.company_id} changed since "
                        f"revision {record.version}"
                    )
            await self.session.commit()
        except ConcurrentUpdateError:
            await self.session.rollback()
            raise
        except IntegrityError as e:
            # Another writer created the record first.
            await self.session.rollback()
            raise ConcurrentUpdateError(
                f"Verification record for {record.company_id} was created concurrently", e
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            LOGGER.error(
                f"Error saving verification record: {str(e)}",
                exc_info=True,
                extra={"company_id": record.company_id},
            )
            raise PersistenceError("Failed to save verification record", e) from e
        LOGGER.info(
            "Saved verification record",
            extra={"company_id": record.company_id, "status": row.status, "version": row.version},
        )
        return record.model_copy(update={"version": row.version})

    async def add_submission(self, submission: DocumentSubmission) -> None:
        await self.submissions.add(
            DocumentSubmissionRow(
                id=submission.id,
                company_id=submission.company_id,
                requirement_id=submission.requirement_id,
                file_url=submission.file_url,
                uploaded_at=submission.uploaded_at,
            )
        )

    async def get_submission(self, submission_id: UUID) -> Optional[DocumentSubmission]:
        row = await self.submissions.get(submission_id)
        return row_to_submission(row) if row else None

    async def get_previous_submission(
        self, submission: DocumentSubmission
    ) -> Optional[DocumentSubmission]:
        """Latest submission for the same requirement uploaded before ``submission``."""
        query = (
            select(DocumentSubmissionRow)
            .where(
                DocumentSubmissionRow.company_id == submission.company_id,
                DocumentSubmissionRow.requirement_id == submission.requirement_id,
                DocumentSubmissionRow.id != submission.id,
                DocumentSubmissionRow.uploaded_at <= submission.uploaded_at,
            )
            .order_by(DocumentSubmissionRow.uploaded_at.desc())
            .limit(1)
        )
        try:
            result = await self.session.execute(query)
            row = result.scalars().first()
        except SQLAlchemyError as e:
            LOGGER.error(f"Error loading previous submission: {str(e)}", exc_info=True)
            raise PersistenceError("Failed to load previous submission", e) from e
        return row_to_submission(row) if row else None

    async def save_result(self, result: VerificationResult) -> None:
        await self.results.add(
            VerificationResultRow(
                submission_id=result.submission_id,
                verified=result.verified,
                confidence=result.confidence,
                is_fallback=result.is_fallback,
                payload=result.model_dump(mode="json"),
                created_at=result.created_at,
            )
        )

    async def get_result(self, submission_id: UUID) -> Optional[VerificationResult]:
        row = await self.results.get(submission_id)
        return VerificationResult.model_validate(row.payload) if row else None
