"""FastAPI application factory."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from cacm.api.routes import consents, health, webhook_ledger
from cacm.errors import ConsentError
from cacm.ledger.client import HttpLedgerConfirmer
from cacm.lifecycle import ConsentLifecycleManager
from cacm.logging import configure_logging, correlation_id_var, new_correlation_id
from cacm.settings import Settings
from cacm.signing.ed25519 import Ed25519Verifier
from cacm.signing.eip191 import Eip191Verifier
from cacm.storage.audit_log import InMemoryAuditLog
from cacm.storage.consent_store import InMemoryConsentStore
from cacm.storage.deliveries import DeliveryGate

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from cacm.signing.signer import SignatureVerifier
    from cacm.storage.audit_log import AuditLogProtocol
    from cacm.storage.consent_store import ConsentStoreProtocol

__all__ = ["build_manager", "create_app"]

logger = logging.getLogger(__name__)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    401: "SIGNATURE_INVALID",
    403: "FORBIDDEN",
    429: "RATE_LIMIT_EXCEEDED",
}


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Inject correlation_id and record request metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        cid = request.headers.get("x-correlation-id") or new_correlation_id()
        correlation_id_var.set(cid)
        request.state.request_id = cid

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        response.headers["x-correlation-id"] = cid
        response.headers["x-request-duration-ms"] = f"{duration * 1000:.1f}"

        health.record_request(response.status_code)

        return response


def _resolve_request_id(request: Request) -> str:
    state_request_id = getattr(request.state, "request_id", "")
    if state_request_id:
        return state_request_id
    header_request_id = request.headers.get("x-correlation-id", "")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = new_correlation_id()
    request.state.request_id = generated
    return generated


def _error_payload(error_code: str, message: str, request_id: str, *, details: Any = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error_code": error_code,
        "message": message,
        "request_id": request_id,
    }
    if details is not None:
        payload["details"] = details
    return payload


async def _consent_exception_handler(request: Request, exc: ConsentError) -> JSONResponse:
    request_id = _resolve_request_id(request)
    health.record_consent_error(exc.code)
    if exc.http_status >= 500:
        logger.warning("Consent operation failed: %s", exc.message)
    return JSONResponse(
        status_code=exc.http_status,
        content=_error_payload(
            exc.code,
            exc.message,
            request_id,
            details={"retryable": exc.retryable},
        ),
    )


def _error_code_for_status(status_code: int) -> str:
    if status_code in _ERROR_CODE_BY_STATUS:
        return _ERROR_CODE_BY_STATUS[status_code]
    if 400 <= status_code < 500:
        return "INVALID_REQUEST"
    if status_code == 503:
        return "SERVICE_UNAVAILABLE"
    return "INTERNAL_ERROR"


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(_error_code_for_status(exc.status_code), message, _resolve_request_id(request)),
    )


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    request_id = _resolve_request_id(request)
    return JSONResponse(
        status_code=422,
        content=_error_payload(
            "INVALID_REQUEST",
            "Request validation failed",
            request_id,
            details=exc.errors(),
        ),
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _resolve_request_id(request)
    logger.exception("Unhandled application exception", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=_error_payload("INTERNAL_ERROR", "Internal server error", request_id),
    )


_VERIFIERS: dict[str, Callable[[], SignatureVerifier]] = {
    "eip191": Eip191Verifier,
    "ed25519": Ed25519Verifier,
}


def build_manager(
    settings: Settings,
    store: ConsentStoreProtocol,
    audit_log: AuditLogProtocol | None = None,
    ledger_confirmer: HttpLedgerConfirmer | None = None,
) -> ConsentLifecycleManager:
    """Wire a lifecycle manager from settings and storage backends."""
    return ConsentLifecycleManager(
        store=store,
        audit_log=audit_log,
        verifier=_VERIFIERS[settings.signature_scheme]() if settings.verify_signatures else None,
        ledger_confirmer=ledger_confirmer,
        signing_timeout=settings.signing_timeout_seconds,
        on_activated=lambda _consent: health.record_consent_activated(),
    )


def _open_stores(settings: Settings) -> tuple[ConsentStoreProtocol, AuditLogProtocol, Any]:
    """Return (consent store, audit log, pool to close on shutdown)."""
    if not settings.pg_dsn:
        logger.warning("CACM_PG_DSN not set, consents are kept in memory")
        return InMemoryConsentStore(), InMemoryAuditLog(), None

    from cacm.storage.postgres import open_postgres_backends

    return open_postgres_backends(settings.pg_dsn, settings.pg_pool_max_size)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = Settings()
    configure_logging(json_output=settings.log_json, level=settings.log_level)

    store, audit_log, pool = _open_stores(settings)
    ledger = (
        HttpLedgerConfirmer(settings.ledger_url, timeout=settings.ledger_timeout_seconds)
        if settings.ledger_url
        else None
    )
    delivery_gate = DeliveryGate.from_url(settings.redis_url) if settings.redis_url else None

    app.state.settings = settings
    app.state.manager = build_manager(settings, store, audit_log, ledger)
    app.state.delivery_gate = delivery_gate
    logger.info(
        "Consent service started (store=%s, ledger_check=%s, webhook_dedup=%s)",
        type(store).__name__,
        ledger is not None,
        delivery_gate is not None,
    )
    try:
        yield
    finally:
        if delivery_gate is not None:
            delivery_gate.close()
        if ledger is not None:
            await ledger.close()
        if pool is not None:
            pool.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Consent Authorization & Lifecycle Manager",
        version="0.1.0",
        description="Signed patient consents with a ledger-confirmed lifecycle.",
        lifespan=lifespan,
    )
    app.add_exception_handler(ConsentError, _consent_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_exception_handler)
    app.add_middleware(ObservabilityMiddleware)
    app.include_router(health.router, tags=["health"])
    app.include_router(consents.router, tags=["consents"])
    app.include_router(webhook_ledger.router, tags=["webhook"])
    return app


app = create_app()
