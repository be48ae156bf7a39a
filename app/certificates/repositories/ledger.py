"""Certificate ledger: durable record of issuance attempts and outcomes.

Every public method is a single-row write committed on its own, keyed by
(student_id, course_id). A failure for one candidate can never roll back
the ledger state of another.
"""

import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any, cast

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.certificates.models import CertificateRecord, CertificateStatus
from app.core.config import Settings
from app.core.exceptions import ConflictError, NotFoundError
from app.core.repository import BaseRepository

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Processing interrupted before completion"


def not_retryable_clause(now: datetime, max_attempts: int) -> Any:
    """SQL condition matching ledger rows that block a (student, course) pair.

    A pair is blocked by any non-error row, and by an error row that is either
    out of attempts or still inside its backoff window.
    """
    return or_(
        CertificateRecord.status != CertificateStatus.ERROR.value,
        CertificateRecord.attempt_count >= max_attempts,
        and_(
            CertificateRecord.next_attempt_at.isnot(None),
            CertificateRecord.next_attempt_at > now,
        ),
    )


class CertificateLedger(BaseRepository[CertificateRecord]):
    def __init__(self, db: Session, settings: Settings):
        super().__init__(db, CertificateRecord)
        self.settings = settings

    def _latest(self, student_id: int, course_id: int, *, for_update: bool = False):
        stmt = (
            select(CertificateRecord)
            .where(
                CertificateRecord.student_id == student_id,
                CertificateRecord.course_id == course_id,
            )
            .order_by(CertificateRecord.id.desc())
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalars().first()

    def record_exists(self, student_id: int, course_id: int) -> bool:
        """True if a non-error record exists for the pair."""
        stmt = select(CertificateRecord.id).where(
            CertificateRecord.student_id == student_id,
            CertificateRecord.course_id == course_id,
            CertificateRecord.status != CertificateStatus.ERROR.value,
        )
        return self.db.execute(stmt.limit(1)).first() is not None

    def find_by_code(self, unique_code: str) -> CertificateRecord | None:
        stmt = select(CertificateRecord).where(CertificateRecord.unique_code == unique_code)
        return cast(CertificateRecord | None, self.db.execute(stmt).scalars().first())

    def mark_processing(self, student_id: int, course_id: int, **details: Any) -> CertificateRecord:
        """Claim the pair for processing.

        A previous error row is reused in place; otherwise a new row is
        inserted. Raises ConflictError when the pair already has a non-error
        row, which the selector should have filtered out.
        """
        resource = f"certificate:{student_id}:{course_id}"
        record = self._latest(student_id, course_id, for_update=True)

        if record is not None and record.status != CertificateStatus.ERROR.value:
            message = (
                f"Certificate for student {student_id} and course {course_id} "
                f"is already {record.status}"
            )
            self.db.rollback()
            raise ConflictError(message, resource=resource)

        try:
            if record is None:
                return self.create(
                    student_id=student_id,
                    course_id=course_id,
                    status=CertificateStatus.PROCESSING.value,
                    attempt_count=1,
                    **details,
                )
            return self.update(
                record,
                status=CertificateStatus.PROCESSING.value,
                error_message=None,
                drive_link=None,
                unique_code=None,
                next_attempt_at=None,
                attempt_count=record.attempt_count + 1,
                **details,
            )
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(
                f"Concurrent claim for student {student_id} and course {course_id}",
                resource=resource,
            ) from e

    def _require_processing(self, student_id: int, course_id: int) -> CertificateRecord:
        record = self._latest(student_id, course_id, for_update=True)
        if record is None:
            raise NotFoundError(
                f"No ledger row for student {student_id} and course {course_id}",
                resource="certificate",
            )
        if record.status != CertificateStatus.PROCESSING.value:
            message = (
                f"Certificate for student {student_id} and course {course_id} "
                f"is {record.status}, expected processing"
            )
            self.db.rollback()
            raise ConflictError(message, resource=f"certificate:{student_id}:{course_id}")
        return record

    def mark_completed(
        self,
        student_id: int,
        course_id: int,
        drive_link: str,
        *,
        unique_code: str | None = None,
        issued_date: date | None = None,
    ) -> CertificateRecord:
        record = self._require_processing(student_id, course_id)
        try:
            return self.update(
                record,
                status=CertificateStatus.COMPLETED.value,
                drive_link=drive_link,
                unique_code=unique_code,
                issued_date=issued_date or datetime.now(UTC).date(),
                error_message=None,
                next_attempt_at=None,
            )
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(
                f"Certificate code {unique_code} is already taken", resource="certificate"
            ) from e

    def mark_error(self, student_id: int, course_id: int, message: str) -> CertificateRecord:
        """Move the pair to error and schedule its next attempt.

        Once the attempt budget is spent the row is parked: it keeps its
        message but is never selected again until reset_exhausted() runs.
        """
        record = self._require_processing(student_id, course_id)
        return self.update(
            record,
            status=CertificateStatus.ERROR.value,
            error_message=message,
            next_attempt_at=self._next_attempt_at(record.attempt_count),
        )

    def _next_attempt_at(self, attempt_count: int) -> datetime | None:
        if attempt_count >= self.settings.CERTIFICATE_MAX_ATTEMPTS:
            return None
        minutes = min(
            self.settings.CERTIFICATE_RETRY_BACKOFF_MINUTES * 2 ** max(attempt_count - 1, 0),
            self.settings.CERTIFICATE_RETRY_BACKOFF_MAX_MINUTES,
        )
        return datetime.now(UTC) + timedelta(minutes=minutes)

    def release_stale_processing(self, older_than: timedelta | None = None) -> int:
        """Turn processing rows left behind by an interrupted run into errors.

        Returns the number of released rows.
        """
        if older_than is None:
            older_than = timedelta(minutes=self.settings.CERTIFICATE_STALE_PROCESSING_MINUTES)
        cutoff = datetime.now(UTC) - older_than
        stale = (
            self.db.execute(
                select(CertificateRecord).where(
                    CertificateRecord.status == CertificateStatus.PROCESSING.value,
                    CertificateRecord.updated_at < cutoff,
                )
            )
            .scalars()
            .all()
        )
        for record in stale:
            record.status = CertificateStatus.ERROR.value
            record.error_message = INTERRUPTED_MESSAGE
            record.next_attempt_at = None
            logger.warning(
                "Released stale processing certificate student=%s course=%s",
                record.student_id,
                record.course_id,
            )
        if stale:
            self.db.commit()
        return len(stale)

    def reset_exhausted(self) -> int:
        """Give parked error rows a fresh attempt budget. Returns the number reset."""
        parked = (
            self.db.execute(
                select(CertificateRecord).where(
                    CertificateRecord.status == CertificateStatus.ERROR.value,
                    CertificateRecord.attempt_count >= self.settings.CERTIFICATE_MAX_ATTEMPTS,
                )
            )
            .scalars()
            .all()
        )
        for record in parked:
            record.attempt_count = 0
            record.next_attempt_at = None
        if parked:
            self.db.commit()
        return len(parked)
