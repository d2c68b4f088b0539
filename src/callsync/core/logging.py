"""Process-wide log setup for callsync.

Every module logs through ``logging.getLogger(__name__)``; this module routes
those records through structlog's ``ProcessorFormatter`` so the console gets
either a readable line (``text``) or one JSON object per line (``json``).

Each record is stamped with the active ``sync_run_id`` and the current OTel
trace/span ids, and passes through :class:`CredentialRedactionFilter` before
any handler writes it.  With ``log_root`` set, JSON copies also land in
``callsync.log`` (application) and ``http.log`` (httpx/httpcore).
"""

from __future__ import annotations

import logging
import re
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_sync_run_context: ContextVar[str | None] = ContextVar("sync_run_id", default=None)

_NOISE_LOGGERS = ("httpx", "httpcore")
_APP_LOG_FILE = "callsync.log"
_HTTP_LOG_FILE = "http.log"

_REDACTED = "[REDACTED]"
_CREDENTIAL_PATTERNS = (
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+"),
    re.compile(r"\bpat[A-Za-z0-9]{10,}\.[A-Za-z0-9]+\b"),
    re.compile(r"(?i)((?:api_key|apikey|token)=)[^&\s]+"),
)


def set_sync_run_context(run_id: str | None) -> None:
    _sync_run_context.set(run_id)


def get_sync_run_context() -> str | None:
    return _sync_run_context.get()


def add_sync_run_context(logger, method_name, event_dict: dict) -> dict:  # noqa: ARG001
    """structlog processor: attach the active ``sync_run_id`` (or ``None``)."""
    event_dict["sync_run_id"] = _sync_run_context.get()
    return event_dict


def add_otel_context(logger, method_name, event_dict: dict) -> dict:  # noqa: ARG001
    """structlog processor: attach hex ``trace_id``/``span_id``, zeroed outside a span."""
    ctx = trace.get_current_span().get_span_context()
    has_span = bool(ctx and ctx.trace_id)
    event_dict["trace_id"] = format(ctx.trace_id, "032x") if has_span else "0" * 32
    event_dict["span_id"] = format(ctx.span_id, "016x") if has_span else "0" * 16
    return event_dict


def _redact(text: str) -> str:
    for pattern in _CREDENTIAL_PATTERNS:
        text = pattern.sub(lambda m: (m.group(1) if m.groups() else "") + _REDACTED, text)
    return text


class CredentialRedactionFilter(logging.Filter):
    """Masks API keys and bearer/personal access tokens in formatted messages.

    A rewritten record has its arguments folded into ``msg`` and ``args``
    emptied.  Records are never dropped.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not isinstance(record.msg, str):
            return True
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = _redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_sync_run_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(renderer, pre_chain: list) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.FileHandler:
    handler = logging.FileHandler(path)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    handler.setLevel(logging.DEBUG)
    handler.addFilter(CredentialRedactionFilter())
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
) -> None:
    """Install callsync's handlers on the root logger, replacing any present.

    Parameters
    ----------
    level:
        Root level name, e.g. ``"DEBUG"``.  Unknown names fall back to INFO.
    fmt:
        ``"json"`` for JSON lines on stderr; anything else renders text.
    log_root:
        Optional directory for the JSON ``callsync.log`` and ``http.log``
        files.  Created when missing.
    """
    json_console = fmt == "json"
    pre_chain = _pre_chain("iso" if json_console else "%H:%M:%S")
    renderer = structlog.processors.JSONRenderer() if json_console else structlog.dev.ConsoleRenderer()

    redaction = CredentialRedactionFilter()
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))
    console.addFilter(redaction)

    root = logging.getLogger()
    root.handlers.clear()
    root.filters = [f for f in root.filters if not isinstance(f, CredentialRedactionFilter)]
    root.addFilter(redaction)
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        noisy = logging.getLogger(name)
        noisy.setLevel(logging.WARNING)
        for stale in [h for h in noisy.handlers if isinstance(h, logging.FileHandler)]:
            noisy.removeHandler(stale)
            stale.close()

    if log_root is not None:
        log_dir = Path(log_root)
        log_dir.mkdir(parents=True, exist_ok=True)
        root.addHandler(_json_file_handler(log_dir / _APP_LOG_FILE))
        http_handler = _json_file_handler(log_dir / _HTTP_LOG_FILE)
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(http_handler)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
