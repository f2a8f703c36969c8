"""
Health Check Endpoints

Liveness and readiness probes for container orchestration, plus a
read-only view of the relay's per-schema state.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _now() -> datetime:
    return datetime.now(timezone.utc)


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """
    Liveness probe.

    Returns 200 if the process is alive. Does not touch the database.
    """
    return {"status": "ok", "timestamp": _now().isoformat()}


@router.get("/health/ready")
async def readiness_check(request: Request, response: Response) -> Dict[str, Any]:
    """
    Readiness probe.

    Ready when the database answers and some schema was polled within the
    last READINESS_MAX_POLL_AGE_SECONDS. Returns 503 otherwise.
    """
    state = request.app.state
    checks = {"database": "ok", "polling": "ok"}
    details: Dict[str, Any] = {}

    try:
        last_poll = await state.relay_state.latest_poll_time()
    except Exception as e:
        logger.error("Readiness probe: database check failed", extra={"error": str(e)})
        checks = {"database": "error", "polling": "stale"}
        last_poll = None
    else:
        if last_poll is None:
            logger.warning("Readiness probe: no polling state found")
            checks["polling"] = "stale"
        else:
            age = (_now() - last_poll).total_seconds()
            details["seconds_since_last_poll"] = round(age, 3)
            if age > state.max_poll_age_seconds:
                logger.warning(
                    "Readiness probe: polling is stale",
                    extra={"seconds_since_last_poll": age},
                )
                checks["polling"] = "stale"

    ready = checks["database"] == "ok" and checks["polling"] == "ok"
    if not ready:
        response.status_code = 503

    return {
        "status": "ready" if ready else "unavailable",
        "timestamp": _now().isoformat(),
        "checks": checks,
        **details,
    }


@router.get("/relay/state")
async def relay_state(request: Request) -> Dict[str, Any]:
    """Per-schema cursors and published counts, plus scheduler status."""
    state = request.app.state
    states = await state.relay_state.get_states()

    scheduler = getattr(state, "scheduler", None)
    scheduler_info = None
    if scheduler is not None:
        scheduler_info = {
            "state": scheduler.state.value,
            "cycles_completed": scheduler.cycles_completed,
            "last_cycle_started_at": (
                scheduler.last_cycle_started_at.isoformat()
                if scheduler.last_cycle_started_at else None
            ),
            "last_cycle_finished_at": (
                scheduler.last_cycle_finished_at.isoformat()
                if scheduler.last_cycle_finished_at else None
            ),
        }

    return {
        "schemas": [s.model_dump(mode="json") for s in states],
        "scheduler": scheduler_info,
        "timestamp": _now().isoformat(),
    }
