"""structlog setup for the consent service.

Every entry carries the request's correlation_id. Signatures are shortened
and subject ids are one-way hashed before rendering, so log sinks never hold
a full wallet signature or a clear patient identifier.
"""

from __future__ import annotations

import hashlib
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

__all__ = [
    "configure_logging",
    "correlation_id_var",
    "get_logger",
    "hash_subject",
    "new_correlation_id",
    "redact_signature",
]

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


def new_correlation_id() -> str:
    """Generate a correlation ID and make it current for this context."""
    cid = uuid.uuid4().hex
    correlation_id_var.set(cid)
    return cid


def redact_signature(signature: str) -> str:
    if len(signature) <= 12:
        return "***"
    return f"{signature[:6]}…{signature[-4:]}"


def hash_subject(subject_id: str) -> str:
    """Stable 16-hex-char pseudonym for a subject id."""
    return hashlib.sha256(subject_id.encode("utf-8")).hexdigest()[:16]


def _add_correlation_id(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask_consent_fields(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    signature = event_dict.get("signature")
    if isinstance(signature, str):
        event_dict["signature"] = redact_signature(signature)
    subject_id = event_dict.pop("subject_id", None)
    if isinstance(subject_id, str):
        event_dict["subject"] = hash_subject(subject_id)
    return event_dict


def configure_logging(*, json_output: bool = True, level: str = "INFO") -> None:
    """Configure structlog.

    Args:
        json_output: JSON lines (deployed) or the console renderer (local dev).
        level: Minimum level name, e.g. ``"INFO"``.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_correlation_id,
        _mask_consent_fields,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.processors.NAME_TO_LEVEL[level.lower()]
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(**initial_values: Any) -> structlog.BoundLogger:
    return structlog.get_logger(**initial_values)  # type: ignore[no-any-return]
