"""Celery tasks for certificate issuance."""

import logging
from typing import Any

from app.certificates.services.pipeline import run_batch
from app.core.celery_app import celery_app
from app.core.config import get_settings
from app.core.redis import BATCH_LOCK_NAME, get_redis, run_lock

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=0)
def process_pending_certificates(self: Any) -> dict[str, Any]:
    """Run one certificate batch unless another run still holds the lock.

    Scheduled hourly by beat; can also be sent on demand.
    """
    settings = get_settings()
    client = get_redis(settings)
    try:
        with run_lock(
            client, BATCH_LOCK_NAME, settings.CERTIFICATE_BATCH_LOCK_TTL_SECONDS
        ) as acquired:
            if not acquired:
                logger.warning("Previous certificate batch still running, skipping this run")
                return {"skipped": True, "reason": "batch already running"}
            report = run_batch(settings)
    finally:
        client.close()

    if report.aborted:
        logger.error("Certificate batch aborted: %s", report.abort_reason)
    return {"skipped": False, **report.as_dict()}
