"""Health, readiness, and metrics endpoints."""

from __future__ import annotations

import asyncio
import time
from typing import Any

from fastapi import APIRouter, Request, Response
from starlette.responses import JSONResponse

from cacm.healthchecks import check_ledger, check_postgres, check_redis

router = APIRouter()

__all__ = ["router"]

# ──────────── In-process metrics counters ────────────
_metrics: dict[str, Any] = {
    "requests_total": 0,
    "requests_by_status": {},
    "consents_created": 0,
    "consents_activated": 0,
    "consent_errors": {},
    "start_time": time.time(),
}


def record_request(status: int) -> None:
    """Call from middleware to track request counts."""
    _metrics["requests_total"] += 1
    key = str(status)
    _metrics["requests_by_status"][key] = _metrics["requests_by_status"].get(key, 0) + 1


def record_consent_created() -> None:
    _metrics["consents_created"] += 1


def record_consent_activated() -> None:
    _metrics["consents_activated"] += 1


def record_consent_error(code: str) -> None:
    _metrics["consent_errors"][code] = _metrics["consent_errors"].get(code, 0) + 1


# ──────────── Endpoints ────────────


@router.get("/health", summary="Liveness probe", operation_id="health")
async def health() -> dict[str, str]:
    """Liveness: app process is running."""
    return {"status": "ok"}


@router.get("/ready", summary="Readiness probe", operation_id="ready")
async def ready(request: Request) -> JSONResponse:
    """Readiness: configured downstream dependencies reachable.

    Only dependencies that are configured are probed. Returns 200 when all
    probes pass, 503 otherwise.
    """
    settings = request.app.state.settings
    probes = {
        "postgres": (check_postgres, settings.pg_dsn),
        "redis": (check_redis, settings.redis_url),
        "ledger": (check_ledger, settings.ledger_url),
    }
    pending = {name: probe(target) for name, (probe, target) in probes.items() if target}
    results = await asyncio.gather(*pending.values())
    checks: dict[str, bool] = dict(zip(pending, results, strict=True))

    all_ok = all(checks.values())
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"ready": all_ok, "checks": checks},
    )


@router.get("/metrics", summary="Prometheus metrics", operation_id="metrics")
async def metrics() -> Response:
    """Prometheus text exposition format."""
    uptime = time.time() - _metrics["start_time"]

    lines = [
        "# HELP cacm_up Consent service is up",
        "# TYPE cacm_up gauge",
        "cacm_up 1",
        "",
        "# HELP cacm_uptime_seconds Seconds since process start",
        "# TYPE cacm_uptime_seconds gauge",
        f"cacm_uptime_seconds {uptime:.1f}",
        "",
        "# HELP cacm_requests_total Total HTTP requests",
        "# TYPE cacm_requests_total counter",
        f"cacm_requests_total {_metrics['requests_total']}",
        "",
    ]

    for status, count in sorted(_metrics["requests_by_status"].items()):
        lines.append(f'cacm_requests_total{{status="{status}"}} {count}')

    lines += [
        "",
        "# HELP cacm_consent_transitions_total Consent lifecycle transitions",
        "# TYPE cacm_consent_transitions_total counter",
        f'cacm_consent_transitions_total{{to="pending"}} {_metrics["consents_created"]}',
        f'cacm_consent_transitions_total{{to="active"}} {_metrics["consents_activated"]}',
        "",
        "# HELP cacm_consent_errors_total Consent operation failures by error code",
        "# TYPE cacm_consent_errors_total counter",
    ]
    for code, count in sorted(_metrics["consent_errors"].items()):
        lines.append(f'cacm_consent_errors_total{{code="{code}"}} {count}')
    lines.append("")

    return Response(content="\n".join(lines), media_type="text/plain; charset=utf-8")
