"""Tests for the batch orchestrator: state machine, isolation and idempotence."""

import re
from datetime import UTC, date, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from app.certificates.models import CertificateRecord, CertificateStatus
from app.certificates.repositories import CertificateLedger
from app.certificates.services.pipeline import CONFLICT, CertificatePipeline, run_batch
from app.certificates.services.storage_publisher import StoragePublisher
from app.db.session import Base
from tests.utils.factories import (
    create_certificate_record_factory,
    create_host_course_factory,
    create_host_user_factory,
    create_quiz_attempt_factory,
    make_candidate,
)
from tests.utils.fakes import FakeDriveStorage, FakeRenderer

DRIVE_URL_PATTERN = re.compile(r"^https://drive\.google\.com/uc\?export=download&id=[\w-]+$")
ISSUE_DATE = date(2024, 6, 1)


@pytest.fixture
def course(db_session):
    return create_host_course_factory(db_session, title="Seguridad Industrial", course_id=9)


def enrol(db_session, course, name, grade=18, dni=None):
    student = create_host_user_factory(db_session, display_name=name, dni=dni)
    create_quiz_attempt_factory(db_session, student, course, earned_marks=grade)
    return student


def make_pipeline(settings, session_factory, renderer, publisher, reporter):
    return CertificatePipeline(
        settings,
        session_factory,
        renderer,
        publisher,
        reporter=reporter,
        today=lambda: ISSUE_DATE,
    )


def ledger_rows(db_session):
    db_session.expire_all()
    stmt = select(CertificateRecord).order_by(CertificateRecord.student_id)
    return db_session.execute(stmt).scalars().all()


def active_rows_per_pair(db_session):
    stmt = (
        select(CertificateRecord.student_id, CertificateRecord.course_id, func.count())
        .where(CertificateRecord.status != CertificateStatus.ERROR.value)
        .group_by(CertificateRecord.student_id, CertificateRecord.course_id)
    )
    return [row[2] for row in db_session.execute(stmt).all()]


def test_example_candidate_is_issued(
    settings, session_factory, db_session, course, publisher, fake_storage, reporter
):
    maria = enrol(db_session, course, "María Pérez", grade=18, dni="12345678")
    renderer = FakeRenderer()

    report = make_pipeline(settings, session_factory, renderer, publisher, reporter).run()

    assert report.selected == 1
    assert report.completed == 1
    assert report.failed == 0
    assert report.aborted is False

    (record,) = ledger_rows(db_session)
    assert record.student_id == maria.id
    assert record.status == CertificateStatus.COMPLETED.value
    assert DRIVE_URL_PATTERN.match(record.drive_link)
    assert record.unique_code == renderer.rendered[0]
    assert record.issued_date == ISSUE_DATE
    assert record.dni == "12345678"
    assert record.grade == 18
    assert record.issuer_name == "Instituto de Pruebas"
    assert record.error_message is None

    (file_id,) = fake_storage.files
    parent_id, filename, _ = fake_storage.files[file_id]
    assert filename == "certificado_maria-perez_2024-06-01.pdf"
    assert fake_storage.folder_path_of(parent_id) == "2024/seguridad-industrial/maria-perez"
    assert record.drive_link.endswith(f"id={file_id}")


def test_grade_below_minimum_is_not_issued(
    settings, session_factory, db_session, course, publisher, reporter
):
    enrol(db_session, course, "Pedro Rojas", grade=10)

    report = make_pipeline(settings, session_factory, FakeRenderer(), publisher, reporter).run()

    assert report.selected == 0
    assert ledger_rows(db_session) == []


def test_render_failure_does_not_stop_the_batch(
    settings, session_factory, db_session, course, publisher, reporter
):
    failing = enrol(db_session, course, "Ana Quispe")
    passing = enrol(db_session, course, "Luis Torres")
    renderer = FakeRenderer(fail_for={failing.id})

    report = make_pipeline(settings, session_factory, renderer, publisher, reporter).run()

    assert (report.selected, report.completed, report.failed) == (2, 1, 1)
    first, second = ledger_rows(db_session)
    assert first.student_id == failing.id
    assert first.status == CertificateStatus.ERROR.value
    assert first.error_message == "Font file not found"
    assert first.drive_link is None
    assert second.student_id == passing.id
    assert second.status == CertificateStatus.COMPLETED.value
    assert reporter.stages() == ["render"]


def test_publish_failure_marks_error(
    settings, session_factory, db_session, course, publisher, fake_storage, reporter
):
    enrol(db_session, course, "Rosa Huamán")
    fake_storage.fail_uploads = True

    report = make_pipeline(settings, session_factory, FakeRenderer(), publisher, reporter).run()

    assert report.failed == 1
    (outcome,) = report.outcomes
    assert outcome.stage == "publish"
    (record,) = ledger_rows(db_session)
    assert record.status == CertificateStatus.ERROR.value
    assert "timed out" in record.error_message
    assert record.unique_code is None


def test_unexpected_error_is_recorded_and_batch_continues(
    settings, session_factory, db_session, course, publisher, reporter
):
    failing = enrol(db_session, course, "Ana Quispe")
    enrol(db_session, course, "Luis Torres")
    renderer = FakeRenderer(fail_for={failing.id}, error=ValueError("unsupported image mode"))

    report = make_pipeline(settings, session_factory, renderer, publisher, reporter).run()

    assert (report.completed, report.failed) == (1, 1)
    first, _ = ledger_rows(db_session)
    assert first.error_message == "unsupported image mode"


def test_second_run_is_idempotent(
    settings, session_factory, db_session, course, publisher, fake_storage, reporter
):
    enrol(db_session, course, "María Pérez")
    enrol(db_session, course, "Luis Torres")
    pipeline = make_pipeline(settings, session_factory, FakeRenderer(), publisher, reporter)

    pipeline.run()
    uploads_after_first = len(fake_storage.files)
    rows_after_first = len(ledger_rows(db_session))

    report = pipeline.run()

    assert report.selected == 0
    assert len(fake_storage.files) == uploads_after_first == 2
    assert len(ledger_rows(db_session)) == rows_after_first == 2


def test_failed_candidate_is_retried_in_place_after_backoff(
    settings, session_factory, db_session, course, publisher, reporter
):
    student = enrol(db_session, course, "Ana Quispe")
    broken = FakeRenderer(fail_for={student.id})
    working = FakeRenderer()

    make_pipeline(settings, session_factory, broken, publisher, reporter).run()
    (failed,) = ledger_rows(db_session)
    assert failed.status == CertificateStatus.ERROR.value

    # Still backing off: nothing to do
    report = make_pipeline(settings, session_factory, working, publisher, reporter).run()
    assert report.selected == 0

    db_session.execute(
        update(CertificateRecord)
        .where(CertificateRecord.id == failed.id)
        .values(next_attempt_at=datetime.now(UTC) - timedelta(minutes=1))
    )
    db_session.commit()

    report = make_pipeline(settings, session_factory, working, publisher, reporter).run()

    assert report.completed == 1
    (record,) = ledger_rows(db_session)
    assert record.id == failed.id
    assert record.status == CertificateStatus.COMPLETED.value
    assert record.attempt_count == 2
    assert record.unique_code == working.rendered[0]
    assert active_rows_per_pair(db_session) == [1]


def test_retries_stop_after_max_attempts(
    settings, session_factory, db_session, course, publisher, reporter
):
    student = enrol(db_session, course, "Ana Quispe")
    broken = FakeRenderer(fail_for={student.id})
    pipeline = make_pipeline(settings, session_factory, broken, publisher, reporter)

    for _ in range(settings.CERTIFICATE_MAX_ATTEMPTS + 2):
        pipeline.run()
        db_session.execute(
            update(CertificateRecord)
            .where(CertificateRecord.next_attempt_at.isnot(None))
            .values(next_attempt_at=datetime.now(UTC) - timedelta(minutes=1))
        )
        db_session.commit()

    (record,) = ledger_rows(db_session)
    assert record.attempt_count == settings.CERTIFICATE_MAX_ATTEMPTS
    assert record.next_attempt_at is None
    assert len(reporter.errors) == settings.CERTIFICATE_MAX_ATTEMPTS


def test_conflicting_claim_leaves_existing_row_untouched(
    settings, db_session, session_factory, publisher, reporter
):
    candidate = make_candidate(full_name="María Pérez")
    existing = create_certificate_record_factory(
        db_session, candidate.student_id, candidate.course_id
    )
    renderer = FakeRenderer()
    pipeline = make_pipeline(settings, session_factory, renderer, publisher, reporter)

    outcome = pipeline.process_candidate(db_session, candidate)

    assert outcome.status == CONFLICT
    assert outcome.stage == "claim"
    assert renderer.rendered == []
    (record,) = ledger_rows(db_session)
    assert record.status == CertificateStatus.COMPLETED.value
    assert record.drive_link == existing.drive_link
    ((context, _),) = reporter.errors
    assert context["likely_race"] is True


def test_selection_failure_aborts_without_raising(settings, publisher, reporter):
    broken_session = MagicMock()
    broken_session.__enter__.return_value = broken_session
    broken_session.execute.side_effect = OperationalError(
        "SELECT", {}, Exception("database is down")
    )
    renderer = FakeRenderer()

    report = make_pipeline(
        settings, lambda: broken_session, renderer, publisher, reporter
    ).run()

    assert report.aborted is True
    assert "database is down" in report.abort_reason
    assert report.outcomes == []
    assert renderer.rendered == []
    assert reporter.stages() == ["select"]
    assert report.as_dict()["aborted"] is True


def test_invalid_database_url_aborts_without_raising(settings, publisher, reporter):
    settings = settings.model_copy(update={"DATABASE_URL": "not a database url"})
    renderer = FakeRenderer()

    report = run_batch(settings, renderer=renderer, publisher=publisher, reporter=reporter)

    assert report.aborted is True
    assert "not a database url" in report.abort_reason
    assert report.finished_at is not None
    assert renderer.rendered == []
    assert reporter.stages() == ["connect"]


def test_interrupted_candidate_stays_processing_until_released(
    settings, session_factory, db_session, course, publisher, reporter
):
    student = enrol(db_session, course, "Ana Quispe")
    renderer = FakeRenderer(fail_for={student.id}, error=KeyboardInterrupt())

    with pytest.raises(KeyboardInterrupt):
        make_pipeline(settings, session_factory, renderer, publisher, reporter).run()

    (record,) = ledger_rows(db_session)
    assert record.status == CertificateStatus.PROCESSING.value

    released = CertificateLedger(db_session, settings).release_stale_processing(
        older_than=timedelta(0)
    )
    assert released == 1


def test_stale_processing_rows_are_released_and_reissued(
    settings, session_factory, db_session, course, publisher, reporter
):
    student = enrol(db_session, course, "Ana Quispe")
    create_certificate_record_factory(
        db_session,
        student.id,
        course.id,
        status=CertificateStatus.PROCESSING.value,
        updated_at=datetime.now(UTC) - timedelta(days=1),
    )

    report = make_pipeline(settings, session_factory, FakeRenderer(), publisher, reporter).run()

    assert report.released_stale == 1
    assert report.completed == 1
    (record,) = ledger_rows(db_session)
    assert record.status == CertificateStatus.COMPLETED.value
    assert record.attempt_count == 2


def test_report_as_dict(settings, session_factory, db_session, course, publisher, reporter):
    enrol(db_session, course, "María Pérez")

    report = make_pipeline(settings, session_factory, FakeRenderer(), publisher, reporter).run()
    data = report.as_dict()

    assert data["selected"] == 1
    assert data["completed"] == 1
    assert data["failed"] == 0
    assert data["conflicts"] == 0
    assert data["duration_seconds"] is not None
    (outcome,) = data["outcomes"]
    assert outcome["status"] == "completed"
    assert DRIVE_URL_PATTERN.match(outcome["drive_link"])


@pytest.fixture
def file_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'certificates.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


def test_parallel_workers_issue_every_candidate_once(settings, file_session_factory, reporter):
    settings.CERTIFICATE_BATCH_WORKERS = 4
    seed = file_session_factory()
    course = create_host_course_factory(seed, title="Seguridad Industrial")
    for i in range(8):
        enrol(seed, course, f"Alumno {i}")
    seed.close()

    storage = FakeDriveStorage()
    report = run_batch(
        settings,
        session_factory=file_session_factory,
        renderer=FakeRenderer(),
        publisher=StoragePublisher(settings, storage=storage),
        reporter=reporter,
        today=lambda: ISSUE_DATE,
    )

    assert (report.selected, report.completed, report.failed) == (8, 8, 0)
    assert reporter.errors == []
    created = [name for _, name in storage.create_folder_calls]
    assert created.count("2024") == 1
    assert created.count("seguridad-industrial") == 1

    check = file_session_factory()
    try:
        rows = check.execute(select(CertificateRecord)).scalars().all()
        assert len(rows) == 8
        assert {row.status for row in rows} == {CertificateStatus.COMPLETED.value}
        assert len({row.unique_code for row in rows}) == 8
    finally:
        check.close()
