import logging
import sys
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import Settings


def setup_logging(settings: Settings) -> None:
    """Configure structlog for JSON output in production, pretty output in dev."""
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
    logging.getLogger("pyhanko").setLevel(logging.WARNING)


class ErrorReporter(Protocol):
    def log_error(self, context: dict[str, Any], err: BaseException) -> None:
        """Record a failure together with the context it happened in."""
        ...


class StructlogErrorReporter:
    """Reports pipeline failures through structlog.

    Reporting is best effort: a broken handler or renderer must never turn a
    per-candidate failure into a batch failure.
    """

    def __init__(self, logger_name: str = "certificates") -> None:
        self._logger = structlog.get_logger(logger_name)

    def log_error(self, context: dict[str, Any], err: BaseException) -> None:
        try:
            self._logger.error(
                "certificate_pipeline_error",
                error=str(err),
                error_type=type(err).__name__,
                origin=_error_origin(err),
                exc_info=err,
                **context,
            )
        except Exception:  # noqa: BLE001
            logging.getLogger(__name__).debug("error reporter failed", exc_info=True)


def _error_origin(err: BaseException) -> str | None:
    """Return "file:line" of the frame that raised, following the cause chain."""
    root: BaseException = err
    while root.__cause__ is not None:
        root = root.__cause__
    tb = root.__traceback__
    if tb is None:
        return None
    while tb.tb_next is not None:
        tb = tb.tb_next
    return f"{tb.tb_frame.f_code.co_filename}:{tb.tb_lineno}"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every HTTP request with method, path, status, and duration."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        logger = structlog.get_logger("http")
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = round((time.perf_counter() - start) * 1000, 2)

        await logger.ainfo(
            "request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=duration_ms,
            client=request.client.host if request.client else "unknown",
        )

        return response
