"""
Logging setup for sitegate.

JSON lines in production/staging, a readable single-line format in
development. The middleware fills the context vars for every request so
each line carries the request id, hostname and resolved site.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

from sitegate.config import Settings
from sitegate.models import ResolutionStatus

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
hostname_ctx: ContextVar[str] = ContextVar("hostname", default="-")
site_id_ctx: ContextVar[str] = ContextVar("site_id", default="-")

resolution_logger = logging.getLogger("sitegate.resolution")

_ERROR_STATUSES = {ResolutionStatus.DATABASE_ERROR, ResolutionStatus.MIDDLEWARE_ERROR}


def generate_request_id() -> str:
    return uuid.uuid4().hex[:8]


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_ctx.get(),
            "hostname": hostname_ctx.get(),
            "site_id": site_id_ctx.get(),
        }
        extra = getattr(record, "resolution", None)
        if isinstance(extra, dict):
            entry.update(extra)

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)

        entry = {k: v for k, v in entry.items() if v is not None and v != "-"}
        return json.dumps(entry, ensure_ascii=False, default=str)


class HumanFormatter(logging.Formatter):
    """Readable formatter for development."""

    FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-22s | [%(request_id)s] %(message)s"

    def format(self, record: logging.LogRecord) -> str:
        record.request_id = request_id_ctx.get()
        return super().format(record)


def setup_logging(settings: Settings) -> None:
    """Configure application-wide logging."""
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if settings.is_production or settings.is_staging:
        handler.setFormatter(JSONFormatter())
        root.setLevel(logging.INFO)
    else:
        handler.setFormatter(HumanFormatter(HumanFormatter.FORMAT, datefmt="%H:%M:%S"))
        root.setLevel(logging.DEBUG)

    root.addHandler(handler)

    for name in ("uvicorn.access", "httpcore", "httpx", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)


def log_domain_resolution(
    hostname: str,
    site_id: str | None,
    status: ResolutionStatus,
    duration_ms: float,
) -> None:
    """One line per pipeline decision."""
    if status in _ERROR_STATUSES:
        level = logging.ERROR
    elif status == ResolutionStatus.SECURITY_VIOLATION:
        level = logging.WARNING
    elif status == ResolutionStatus.DEVELOPMENT:
        level = logging.DEBUG
    else:
        level = logging.INFO

    resolution_logger.log(
        level,
        "%s -> %s (%.1fms)",
        hostname,
        status.value,
        duration_ms,
        extra={
            "resolution": {
                "status": status.value,
                "resolved_site_id": site_id,
                "duration_ms": round(duration_ms, 2),
            }
        },
    )
