"""
HTTP application for health, state and dead letter endpoints.
"""

from typing import Optional

from fastapi import FastAPI

from .. import __version__
from ..relay.dlq import DeadLetterSink
from ..relay.scheduler import PollScheduler
from ..relay.state import RelayStateReader
from .dlq import router as dlq_router
from .health import router as health_router


def create_app(
    relay_state: RelayStateReader,
    scheduler: Optional[PollScheduler] = None,
    max_poll_age_seconds: int = 30,
    dead_letters: Optional[DeadLetterSink] = None
) -> FastAPI:
    """
    Create the FastAPI app.

    Dependencies are attached to app.state rather than module globals so
    the same process can build several apps in tests.
    """
    app = FastAPI(title="Outbox Relay", version=__version__, docs_url=None, redoc_url=None)
    app.state.relay_state = relay_state
    app.state.scheduler = scheduler
    app.state.max_poll_age_seconds = max_poll_age_seconds
    app.state.dead_letters = dead_letters
    app.include_router(health_router)
    app.include_router(dlq_router)
    return app
