"""Selection of students who qualify for a certificate."""

import logging
from datetime import UTC, datetime

from pydantic import ValidationError
from sqlalchemy import and_, exists, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from app.certificates.models import (
    CertificateRecord,
    HostCourse,
    HostUser,
    HostUserMeta,
    QuizAttempt,
)
from app.certificates.repositories.ledger import not_retryable_clause
from app.certificates.schemas import Candidate
from app.core.config import Settings
from app.core.exceptions import SelectionError

logger = logging.getLogger(__name__)

DNI_META_KEY = "dni"


class CandidateSelector:
    """Builds the work queue for one batch run.

    A (student, course) pair qualifies when any of its quiz attempts reached
    the minimum grade and the ledger holds nothing that blocks it. Several
    qualifying attempts collapse into one candidate carrying the best grade
    and the latest attempt date.
    """

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    def select_pending(self, minimum_grade: float | None = None) -> list[Candidate]:
        if minimum_grade is None:
            minimum_grade = self.settings.CERTIFICATE_MINIMUM_GRADE

        try:
            rows = self.db.execute(self._query(minimum_grade)).mappings().all()
        except SQLAlchemyError as e:
            raise SelectionError(f"Could not query pending certificates: {e}") from e

        candidates: list[Candidate] = []
        for row in rows:
            try:
                candidates.append(Candidate.model_validate(dict(row)))
            except ValidationError as e:
                logger.warning(
                    "Skipping malformed candidate row student=%s course=%s: %s",
                    row.get("student_id"),
                    row.get("course_id"),
                    e.errors(include_url=False),
                )

        logger.info(
            "Selected %d certificate candidates (minimum_grade=%s)",
            len(candidates),
            minimum_grade,
        )
        return candidates

    def _query(self, minimum_grade: float):
        dni_meta = aliased(HostUserMeta)
        blocking_row = exists().where(
            CertificateRecord.student_id == QuizAttempt.user_id,
            CertificateRecord.course_id == QuizAttempt.course_id,
            not_retryable_clause(datetime.now(UTC), self.settings.CERTIFICATE_MAX_ATTEMPTS),
        )

        return (
            select(
                HostUser.id.label("student_id"),
                HostUser.display_name.label("full_name"),
                func.max(dni_meta.meta_value).label("dni"),
                QuizAttempt.course_id.label("course_id"),
                HostCourse.title.label("course_name"),
                func.max(QuizAttempt.earned_marks).label("grade"),
                func.max(QuizAttempt.attempt_started_at).label("attempt_date"),
            )
            .select_from(QuizAttempt)
            .join(HostUser, QuizAttempt.user_id == HostUser.id)
            .outerjoin(
                dni_meta,
                and_(dni_meta.user_id == HostUser.id, dni_meta.meta_key == DNI_META_KEY),
            )
            .join(HostCourse, QuizAttempt.course_id == HostCourse.id)
            .where(QuizAttempt.earned_marks >= minimum_grade)
            .where(~blocking_row)
            .group_by(
                HostUser.id,
                HostUser.display_name,
                QuizAttempt.course_id,
                HostCourse.title,
            )
            .order_by(HostUser.id, QuizAttempt.course_id)
        )
