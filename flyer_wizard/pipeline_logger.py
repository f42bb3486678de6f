"""
Pipeline Logger

One `"pipeline"` logger for the engine. Every wizard operation opens a trace
(`trace_request`) whose id is stamped on each line it produces:

    10:02:11.408 │ 5f1c2a9e │ 🏪 STORES   │ Stores selected | {"selected": [1]}

Outside debug mode (DEBUG_LOG / DEBUG_MODE) only WIZARD_REQUEST lines,
LATENCY_SUMMARY lines and errors are emitted. With USE_LOGFIRE=true and a
LOGFIRE_TOKEN the same records are forwarded to Logfire.
"""

import json
import logging
import os
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


DEBUG_LOG = _env_bool("DEBUG_LOG", _env_bool("DEBUG_MODE", False))
USE_LOGFIRE = _env_bool("USE_LOGFIRE", False) and bool(os.environ.get("LOGFIRE_TOKEN"))

if USE_LOGFIRE:
    import logfire

    logfire.configure(
        token=os.environ["LOGFIRE_TOKEN"],
        service_name=os.environ.get("LOGFIRE_SERVICE_NAME", "flyer-wizard"),
        environment=os.environ.get("LOGFIRE_ENVIRONMENT", "production"),
        console=False,
    )

STAGE_ICONS = {
    "WIZARD": "🧭",
    "SEARCH": "🔍",
    "RANK": "📊",
    "STORES": "🏪",
    "SESSION": "💾",
    "SNAPSHOT": "📸",
    "COMMIT": "✅",
}

REDACTED_KEYS = {"token", "password", "secret", "authorization", "idempotency_key"}


class StageFormatter(logging.Formatter):
    def format(self, record):
        stage = getattr(record, "stage", "WIZARD")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        trace_id = getattr(record, "trace_id", "no-trace")[:8]
        icon = "❌" if record.levelno >= logging.ERROR else STAGE_ICONS.get(stage, "📋")
        return f"{clock} │ {trace_id:8} │ {icon} {stage:8} │ {record.getMessage()}"


def _build_logger() -> logging.Logger:
    logger = logging.getLogger("pipeline")
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG if DEBUG_LOG else logging.INFO)
    logger.propagate = False

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(StageFormatter())
    logger.addHandler(console)
    if USE_LOGFIRE:
        logger.addHandler(logfire.LogfireLoggingHandler())
    return logger


pipeline_logger = _build_logger()


# ============================================================================
# Trace context
# ============================================================================

class TraceContext:
    """Timing and stage results of one wizard operation."""

    def __init__(self, operation: str, session_id: str = ""):
        self.trace_id = uuid.uuid4().hex
        self.operation = operation
        self.session_id = session_id
        self.started = time.perf_counter()
        self.stages: list[dict] = []

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


_current_trace: ContextVar[Optional[TraceContext]] = ContextVar("wizard_trace", default=None)


def get_current_trace() -> Optional[TraceContext]:
    return _current_trace.get()


# ============================================================================
# Logging
# ============================================================================

def log_pipeline(
    stage: str,
    message: str,
    data: Optional[dict] = None,
    level: int = logging.INFO,
    exc_info: Any = None,
):
    if not DEBUG_LOG and level < logging.ERROR:
        if not message.startswith(("WIZARD_REQUEST", "LATENCY_SUMMARY")):
            return

    trace = get_current_trace()
    if data:
        message = f"{message} | {json.dumps(_truncate_data(data), ensure_ascii=False, default=str)}"
    pipeline_logger.log(
        level,
        message,
        extra={"stage": stage, "trace_id": trace.trace_id if trace else "no-trace"},
        exc_info=exc_info,
    )


def _truncate_data(data: dict, max_len: int = 100) -> dict:
    """Redact secrets, shorten long strings and collapse long lists."""
    out = {}
    for key, value in data.items():
        if str(key).lower() in REDACTED_KEYS:
            out[key] = "***REDACTED***"
        elif isinstance(value, dict):
            out[key] = _truncate_data(value, max_len)
        elif isinstance(value, str) and len(value) > max_len:
            out[key] = value[:max_len] + "..."
        elif isinstance(value, list) and len(value) > 5:
            out[key] = f"[{len(value)} items]"
        else:
            out[key] = value
    return out


@contextmanager
def trace_request(operation: str, session_id: str = "", data: Optional[dict] = None):
    """Open a trace for one wizard operation; logs the request and its latency."""
    trace = TraceContext(operation, session_id)
    token = _current_trace.set(trace)
    log_pipeline("WIZARD", f"WIZARD_REQUEST {operation}", {"session": session_id, **(data or {})})
    try:
        yield trace
    finally:
        log_latency_summary(operation, trace.elapsed_ms(), {"session": session_id})
        _current_trace.reset(token)


@contextmanager
def trace_stage(stage: str, description: str = ""):
    """Time one stage of the current trace and record whether it succeeded."""
    trace = get_current_trace()
    started = time.perf_counter()
    result = {"stage": stage, "description": description}
    log_pipeline(stage, f"▶ {description}")
    try:
        yield
        result["success"] = True
    except Exception as e:
        result["success"] = False
        result["error"] = str(e)
        log_pipeline(stage, f"{description} failed: {e}", level=logging.ERROR)
        raise
    finally:
        result["elapsed_ms"] = int((time.perf_counter() - started) * 1000)
        if trace:
            trace.stages.append(result)


def log_latency_summary(operation: str, total_ms: int, meta: Optional[dict] = None):
    payload: dict[str, Any] = {"operation": operation, "total_ms": int(total_ms)}
    if meta:
        payload["meta"] = meta
    log_pipeline("WIZARD", "LATENCY_SUMMARY", payload)


def log_wizard(message: str, data: Optional[dict] = None):
    log_pipeline("WIZARD", message, data)


def log_search(message: str, data: Optional[dict] = None):
    log_pipeline("SEARCH", message, data)


def log_rank(message: str, data: Optional[dict] = None):
    log_pipeline("RANK", message, data)


def log_stores(message: str, data: Optional[dict] = None):
    log_pipeline("STORES", message, data)


def log_session(message: str, data: Optional[dict] = None):
    log_pipeline("SESSION", message, data)


def log_snapshot(message: str, data: Optional[dict] = None):
    log_pipeline("SNAPSHOT", message, data)


def log_commit(message: str, data: Optional[dict] = None):
    log_pipeline("COMMIT", message, data)


def log_error(stage: str, message: str, error: Optional[Exception] = None):
    data = {"error": str(error), "error_type": type(error).__name__} if error else None
    log_pipeline(stage, f"❌ {message}", data, level=logging.ERROR, exc_info=error)
