import ssl
from typing import Any

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

import app.db.base  # noqa: F401
from app.core.config import get_settings
from app.core.log_config import setup_logging

settings = get_settings()
_uses_tls = settings.REDIS_URL.startswith("rediss://")

celery_app = Celery(
    "certificados",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=settings.TIMEZONE,
    task_track_started=True,
    result_expires=3600,
    beat_schedule={
        "process-pending-certificates-hourly": {
            "task": "app.certificates.tasks.process_pending_certificates",
            "schedule": crontab(minute=0),  # Every hour on the hour
        },
    },
)

if _uses_tls:
    celery_app.conf.update(
        broker_use_ssl={"ssl_cert_reqs": ssl.CERT_NONE},
        redis_backend_use_ssl={"ssl_cert_reqs": ssl.CERT_NONE},
    )


@celery_setup_logging.connect
def configure_worker_logging(**kwargs: Any) -> None:
    """Use the structlog configuration in workers instead of Celery's own."""
    setup_logging(settings)


celery_app.autodiscover_tasks(["app.certificates"])
