"""
Observability - Logging, Metrics, and Health

Logging:
    logger = get_logger(__name__)
    logger.info("Event anchored", event_id=event.id, network="mock")

    Keyword arguments become structured fields. Fields whose name marks
    them as secret (private_key, password, ...) are redacted before any
    formatter sees them.

Configuration:
- TRACELEDGER_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- TRACELEDGER_LOG_FORMAT: json | text (default: json in production, text otherwise)
- TRACELEDGER_PRODUCTION: 1/true/yes enables production mode

Metrics are process-local counters and latency samples exposed at /metrics.
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Per-request context, read by both formatters
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
actor_id_var: ContextVar[str] = ContextVar("actor_id", default="")

REDACTED = "***"
SECRET_FIELD_MARKERS = ("private_key", "password", "secret", "token")


def is_production() -> bool:
    return os.environ.get("TRACELEDGER_PRODUCTION", "").lower() in ("1", "true", "yes")


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class LogSettings:
    """Logging configuration, read once by setup_logging()."""
    level: int = logging.INFO
    json_output: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        level_name = os.environ.get("TRACELEDGER_LOG_LEVEL", "INFO").upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            level = logging.INFO

        output = os.environ.get("TRACELEDGER_LOG_FORMAT", "").lower()
        if output in ("json", "text"):
            json_output = output == "json"
        else:
            json_output = is_production()

        return cls(level=level, json_output=json_output)


# ============================================================
# STRUCTURED LOGGING
# ============================================================

# Attributes every LogRecord carries; anything else came from ContextLogger
_STANDARD_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _STANDARD_RECORD_ATTRS and not key.startswith("_")
    }


def _is_secret_field(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SECRET_FIELD_MARKERS)


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line:

    {"timestamp": "...", "level": "INFO", "logger": "traceledger.core.integrity",
     "message": "Event anchored", "request_id": "1f2e3d4c", "event_id": "..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if request_id_var.get():
            entry["request_id"] = request_id_var.get()
        if actor_id_var.get():
            entry["actor_id"] = actor_id_var.get()

        for key, value in _extra_fields(record).items():
            entry[key] = value if isinstance(value, (str, int, float, bool, type(None))) else str(value)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class TextFormatter(logging.Formatter):
    """Human-readable single line per record, for development."""

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        request_id = request_id_var.get()
        context = f" [{request_id}]" if request_id else ""
        line = f"{when} {record.levelname:<7}{context} {record.name}: {record.getMessage()}"

        extras = _extra_fields(record)
        if extras:
            line += " | " + " ".join(f"{key}={value}" for key, value in extras.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Adapter turning keyword arguments into LogRecord extras.

    Reserved LogRecord attribute names (name, module, args, ...) are
    prefixed with "field_" instead of crashing the logging call.
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            value = kwargs.pop(key)
            if key in _STANDARD_RECORD_ATTRS:
                key = f"field_{key}"
            extra[key] = REDACTED if _is_secret_field(key) else value
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """Structured logger for a module (pass __name__)."""
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(settings: Optional[LogSettings] = None) -> None:
    """
    Install the stdout handler on the root logger.

    Call once at process start; calling again replaces the handler.
    """
    settings = settings or LogSettings.from_env()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(settings.level)
    handler.setFormatter(StructuredFormatter() if settings.json_output else TextFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.level)

    # Per-request lines come from RequestContextMiddleware
    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds X-Request-ID (generated when absent) and X-Actor-ID to the log
    context, logs one line per request and feeds request metrics.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_token = request_id_var.set(request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8])
        actor_token = actor_id_var.set(request.headers.get("X-Actor-ID", ""))
        logger = get_logger("traceledger.request")
        route = f"{request.method} {request.url.path}"
        start = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception as e:
                elapsed_ms = (time.perf_counter() - start) * 1000
                logger.exception(f"{route} -> 500", duration_ms=round(elapsed_ms, 2), error=str(e))
                get_metrics().record_request(elapsed_ms, success=False)
                raise

            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                f"{route} -> {response.status_code}",
                status_code=response.status_code,
                duration_ms=round(elapsed_ms, 2),
            )
            get_metrics().record_request(elapsed_ms, success=response.status_code < 500)
            response.headers["X-Request-ID"] = request_id_var.get()
            return response
        finally:
            request_id_var.reset(request_token)
            actor_id_var.reset(actor_token)


# ============================================================
# METRICS
# ============================================================

MAX_LATENCY_SAMPLES = 1000


def _percentile(samples, fraction: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    return round(ordered[min(int(len(ordered) * fraction), len(ordered) - 1)], 2)


@dataclass
class MetricsCollector:
    """
    In-process counters for the integrity pipeline.

    anchors_failed is the number to alert on: each failure is an event
    left unverified until someone re-anchors it.
    """
    events_recorded: int = 0
    anchors_succeeded: int = 0
    anchors_failed: int = 0
    integrity_checks: int = 0
    integrity_mismatches: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    anchor_latencies_ms: deque = field(default_factory=lambda: deque(maxlen=MAX_LATENCY_SAMPLES))
    request_latencies_ms: deque = field(default_factory=lambda: deque(maxlen=MAX_LATENCY_SAMPLES))
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_event(self) -> None:
        with self._lock:
            self.events_recorded += 1

    def record_anchor(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            if success:
                self.anchors_succeeded += 1
            else:
                self.anchors_failed += 1
            self.anchor_latencies_ms.append(latency_ms)

    def record_integrity_check(self, valid: bool) -> None:
        with self._lock:
            self.integrity_checks += 1
            if not valid:
                self.integrity_mismatches += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self.request_latencies_ms.append(latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            anchor_samples = list(self.anchor_latencies_ms)
            request_samples = list(self.request_latencies_ms)
            summary = {
                "events_recorded": self.events_recorded,
                "anchors_succeeded": self.anchors_succeeded,
                "anchors_failed": self.anchors_failed,
                "integrity_checks": self.integrity_checks,
                "integrity_mismatches": self.integrity_mismatches,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
            }
        for name, samples in (("anchor", anchor_samples), ("request", request_samples)):
            for label, fraction in (("p50", 0.5), ("p95", 0.95), ("p99", 0.99)):
                summary[f"{name}_latency_{label}_ms"] = _percentile(samples, fraction)
        return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """The process-wide collector used when none is injected."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

# Unanchored backlog above which the store check reports degraded
UNANCHORED_WARNING_THRESHOLD = 100


@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def _check_store(store) -> Dict[str, Any]:
    try:
        backlog = len(store.list_unanchored(limit=UNANCHORED_WARNING_THRESHOLD + 1))
        return {
            "status": "degraded" if backlog > UNANCHORED_WARNING_THRESHOLD else "healthy",
            "backend": type(store).__name__,
            "event_count": store.get_event_count(),
            "unanchored": backlog,
        }
    except Exception as e:
        return {"status": "unhealthy", "backend": type(store).__name__, "error": str(e)}


def _check_anchor(anchor_client) -> Dict[str, Any]:
    check = {
        "status": "healthy",
        "mode": anchor_client.mode,
        "network": anchor_client.network,
        "timeout_seconds": anchor_client.timeout_seconds,
    }
    if anchor_client.mode == "simulated" and is_production():
        check["status"] = "degraded"
        check["warning"] = "simulated anchoring in production"
    return check


def check_health(store=None, anchor_client=None) -> HealthStatus:
    """
    Liveness plus store and anchor checks.

    Only an unhealthy check fails the whole status; degraded is reported
    but still healthy.
    """
    start = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    if store is not None:
        checks["trace_store"] = _check_store(store)
    if anchor_client is not None:
        checks["anchor"] = _check_anchor(anchor_client)

    return HealthStatus(
        healthy=all(c["status"] != "unhealthy" for c in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
    )
