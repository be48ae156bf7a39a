"""Tests for the scheduled certificate task and its run lock."""

from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

from redis.exceptions import LockError

from app.certificates import tasks
from app.certificates.services.pipeline import BatchReport
from app.core.celery_app import celery_app
from app.core.redis import BATCH_LOCK_NAME, run_lock


def mock_redis(acquired: bool) -> MagicMock:
    client = MagicMock()
    client.lock.return_value.acquire.return_value = acquired
    return client


def finished_report(**kwargs) -> BatchReport:
    now = datetime.now(UTC)
    return BatchReport(started_at=now, finished_at=now, **kwargs)


class TestRunLock:
    def test_acquired_lock_is_released(self):
        client = mock_redis(acquired=True)

        with run_lock(client, BATCH_LOCK_NAME, 60) as acquired:
            assert acquired is True

        client.lock.assert_called_once_with(BATCH_LOCK_NAME, timeout=60, blocking=False)
        client.lock.return_value.release.assert_called_once()

    def test_busy_lock_is_not_released(self):
        client = mock_redis(acquired=False)

        with run_lock(client, BATCH_LOCK_NAME, 60) as acquired:
            assert acquired is False

        client.lock.return_value.release.assert_not_called()

    def test_expired_lock_release_is_ignored(self):
        client = mock_redis(acquired=True)
        client.lock.return_value.release.side_effect = LockError("Cannot release an unlocked lock")

        with run_lock(client, BATCH_LOCK_NAME, 60):
            pass

    def test_lock_is_released_when_block_raises(self):
        client = mock_redis(acquired=True)

        try:
            with run_lock(client, BATCH_LOCK_NAME, 60):
                raise RuntimeError("batch crashed")
        except RuntimeError:
            pass

        client.lock.return_value.release.assert_called_once()


class TestProcessPendingCertificates:
    def test_runs_batch_when_lock_is_free(self):
        client = mock_redis(acquired=True)
        report = finished_report(selected=2)

        with (
            patch.object(tasks, "get_redis", return_value=client),
            patch.object(tasks, "run_batch", return_value=report) as run_batch,
        ):
            result = tasks.process_pending_certificates()

        run_batch.assert_called_once()
        assert result["skipped"] is False
        assert result["selected"] == 2
        assert result["aborted"] is False
        client.close.assert_called_once()

    def test_skips_when_previous_run_holds_the_lock(self):
        client = mock_redis(acquired=False)

        with (
            patch.object(tasks, "get_redis", return_value=client),
            patch.object(tasks, "run_batch") as run_batch,
        ):
            result = tasks.process_pending_certificates()

        run_batch.assert_not_called()
        assert result == {"skipped": True, "reason": "batch already running"}

    def test_aborted_batch_is_returned_not_raised(self):
        client = mock_redis(acquired=True)
        report = finished_report(aborted=True, abort_reason="connection refused")

        with (
            patch.object(tasks, "get_redis", return_value=client),
            patch.object(tasks, "run_batch", return_value=report),
        ):
            result = tasks.process_pending_certificates()

        assert result["aborted"] is True
        assert result["abort_reason"] == "connection refused"


def test_batch_is_scheduled_hourly():
    schedule = celery_app.conf.beat_schedule["process-pending-certificates-hourly"]

    assert schedule["task"] == "app.certificates.tasks.process_pending_certificates"
    assert schedule["schedule"].minute == {0}
    assert len(schedule["schedule"].hour) == 24
