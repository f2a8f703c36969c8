"""
Dead Letter Queue Endpoints

Read-only operator view of outbox_relay.failed_events.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from ..relay.dlq import DeadLetterSink

router = APIRouter(prefix="/relay/dlq", tags=["dlq"])


def _sink(request: Request) -> DeadLetterSink:
    sink = getattr(request.app.state, "dead_letters", None)
    if sink is None:
        raise HTTPException(status_code=503, detail="Dead letter queue is not configured")
    return sink


@router.get("")
async def list_dlq_entries(
    request: Request,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    source_schema: Optional[str] = None,
) -> Dict[str, Any]:
    """List dead-lettered events, newest first."""
    sink = _sink(request)

    entries = await sink.list_entries(limit=limit, offset=offset, source_schema=source_schema)
    total = await sink.count(source_schema)

    return {
        "entries": [e.to_dict() for e in entries],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/stats")
async def dlq_stats(request: Request) -> Dict[str, Any]:
    """Get DLQ statistics."""
    return await _sink(request).stats()
