"""Batch orchestration of certificate issuance.

One run selects the pending candidates and drives each of them through
processing -> (render, publish) -> completed | error. A failure is recorded
against its own candidate and the batch moves on; only a failure to select
candidates aborts the run.
"""

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.certificates.models import CertificateStatus
from app.certificates.repositories import CertificateLedger
from app.certificates.schemas import Candidate
from app.certificates.services.candidate_selector import CandidateSelector
from app.certificates.services.certificate_renderer import CertificateRenderer
from app.certificates.services.storage_publisher import StoragePublisher
from app.core.config import Settings
from app.core.exceptions import ConflictError, SelectionError
from app.core.log_config import ErrorReporter, StructlogErrorReporter
from app.db.session import build_engine

logger = logging.getLogger(__name__)

CONFLICT = "conflict"


@dataclass
class CandidateOutcome:
    student_id: int
    course_id: int
    status: str  # completed, error or conflict
    certificate_id: str | None = None
    drive_link: str | None = None
    error: str | None = None
    stage: str | None = None
    duration_ms: float = 0.0


@dataclass
class BatchReport:
    started_at: datetime
    finished_at: datetime | None = None
    selected: int = 0
    released_stale: int = 0
    aborted: bool = False
    abort_reason: str | None = None
    outcomes: list[CandidateOutcome] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def completed(self) -> int:
        return self._count(CertificateStatus.COMPLETED.value)

    @property
    def failed(self) -> int:
        return self._count(CertificateStatus.ERROR.value)

    @property
    def conflicts(self) -> int:
        return self._count(CONFLICT)

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return round((self.finished_at - self.started_at).total_seconds(), 3)

    def as_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "selected": self.selected,
            "completed": self.completed,
            "failed": self.failed,
            "conflicts": self.conflicts,
            "released_stale": self.released_stale,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "outcomes": [asdict(outcome) for outcome in self.outcomes],
        }


class CertificatePipeline:
    def __init__(
        self,
        settings: Settings,
        session_factory: Callable[[], Session],
        renderer: CertificateRenderer,
        publisher: StoragePublisher,
        reporter: ErrorReporter | None = None,
        today: Callable[[], date] | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.renderer = renderer
        self.publisher = publisher
        self.reporter = reporter or StructlogErrorReporter()
        self._today = today or self._local_today

    def _local_today(self) -> date:
        return datetime.now(ZoneInfo(self.settings.TIMEZONE)).date()

    def run(self) -> BatchReport:
        """Process every pending candidate once.

        Never raises for per-candidate or selection failures; the returned
        report carries the outcome of the run.
        """
        report = BatchReport(started_at=datetime.now(UTC))

        try:
            with self.session_factory() as db:
                report.released_stale = CertificateLedger(
                    db, self.settings
                ).release_stale_processing()
                candidates = CandidateSelector(db, self.settings).select_pending()
        except (SelectionError, SQLAlchemyError) as e:
            self.reporter.log_error({"stage": "select"}, e)
            report.aborted = True
            report.abort_reason = str(e)
            report.finished_at = datetime.now(UTC)
            return report

        report.selected = len(candidates)
        report.outcomes = self._process_all(candidates)
        report.finished_at = datetime.now(UTC)

        logger.info(
            "Certificate batch finished: selected=%d completed=%d failed=%d conflicts=%d in %ss",
            report.selected,
            report.completed,
            report.failed,
            report.conflicts,
            report.duration_seconds,
        )
        return report

    def _process_all(self, candidates: list[Candidate]) -> list[CandidateOutcome]:
        workers = max(self.settings.CERTIFICATE_BATCH_WORKERS, 1)
        if workers == 1 or len(candidates) <= 1:
            with self.session_factory() as db:
                return [self.process_candidate(db, candidate) for candidate in candidates]

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="certificates") as pool:
            return list(pool.map(self._process_in_own_session, candidates))

    def _process_in_own_session(self, candidate: Candidate) -> CandidateOutcome:
        with self.session_factory() as db:
            return self.process_candidate(db, candidate)

    def process_candidate(self, db: Session, candidate: Candidate) -> CandidateOutcome:
        """Drive one candidate through the ledger state machine."""
        started = time.perf_counter()
        ledger = CertificateLedger(db, self.settings)
        context: dict[str, Any] = {
            "student_id": candidate.student_id,
            "course_id": candidate.course_id,
            "course_name": candidate.course_name,
        }
        outcome = CandidateOutcome(
            student_id=candidate.student_id,
            course_id=candidate.course_id,
            status=CertificateStatus.ERROR.value,
        )

        try:
            ledger.mark_processing(
                candidate.student_id,
                candidate.course_id,
                issuer_name=self.settings.CERTIFICATE_ISSUER_NAME or None,
                **candidate.ledger_details(),
            )
        except ConflictError as e:
            # Another run or worker owns the pair
            self.reporter.log_error({**context, "stage": "claim", "likely_race": True}, e)
            outcome.status = CONFLICT
            outcome.error = str(e)
            outcome.stage = "claim"
            return self._finish(outcome, started)
        except Exception as e:
            db.rollback()
            self.reporter.log_error({**context, "stage": "claim"}, e)
            outcome.error = str(e)
            outcome.stage = "claim"
            return self._finish(outcome, started)

        stage = "render"
        try:
            rendered = self.renderer.render(candidate)
            outcome.certificate_id = rendered.certificate_id
            context["certificate_id"] = rendered.certificate_id

            stage = "publish"
            issued_on = self._today()
            drive_link = self.publisher.publish(rendered, candidate, issued_on)
            outcome.drive_link = drive_link
            context["drive_link"] = drive_link

            stage = "complete"
            ledger.mark_completed(
                candidate.student_id,
                candidate.course_id,
                drive_link,
                unique_code=rendered.certificate_id,
                issued_date=issued_on,
            )
        except Exception as e:
            db.rollback()
            self.reporter.log_error({**context, "stage": stage}, e)
            self._record_error(ledger, candidate, str(e), context)
            outcome.error = str(e)
            outcome.stage = stage
            return self._finish(outcome, started)

        outcome.status = CertificateStatus.COMPLETED.value
        logger.info(
            "Issued certificate %s for student=%s course=%s",
            outcome.certificate_id,
            candidate.student_id,
            candidate.course_id,
        )
        return self._finish(outcome, started)

    def _record_error(
        self, ledger: CertificateLedger, candidate: Candidate, message: str, context: dict[str, Any]
    ) -> None:
        try:
            ledger.mark_error(candidate.student_id, candidate.course_id, message)
        except Exception as e:
            # Left in processing; release_stale_processing picks it up later
            ledger.db.rollback()
            self.reporter.log_error({**context, "stage": "mark_error"}, e)

    @staticmethod
    def _finish(outcome: CandidateOutcome, started: float) -> CandidateOutcome:
        outcome.duration_ms = round((time.perf_counter() - started) * 1000, 2)
        return outcome


def run_batch(
    settings: Settings,
    *,
    session_factory: Callable[[], Session] | None = None,
    renderer: CertificateRenderer | None = None,
    publisher: StoragePublisher | None = None,
    reporter: ErrorReporter | None = None,
    today: Callable[[], date] | None = None,
) -> BatchReport:
    """Run one certificate batch with the given settings.

    Collaborators default to the production implementations; the database
    engine built here is disposed when the batch ends.
    """
    engine = None
    if session_factory is None:
        try:
            engine = build_engine(settings)
        except SQLAlchemyError as e:
            (reporter or StructlogErrorReporter()).log_error({"stage": "connect"}, e)
            now = datetime.now(UTC)
            return BatchReport(
                started_at=now, finished_at=now, aborted=True, abort_reason=str(e)
            )
        session_factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    try:
        pipeline = CertificatePipeline(
            settings,
            session_factory,
            renderer or CertificateRenderer(settings),
            publisher or StoragePublisher(settings),
            reporter=reporter,
            today=today,
        )
        return pipeline.run()
    finally:
        if engine is not None:
            engine.dispose()
