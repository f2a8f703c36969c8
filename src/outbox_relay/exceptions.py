"""
Relay Exception Classes

Errors raised by the relay engine. The scheduler catches these per schema
and per event so that one failure never aborts a polling cycle.
"""

from typing import Optional


class RelayError(Exception):
    """Base exception for all relay errors."""

    def __init__(self, message: str, *, schema: Optional[str] = None):
        self.message = message
        self.schema = schema
        super().__init__(message)


class ConfigurationError(RelayError):
    """Invalid or missing configuration detected at startup."""


class PollError(RelayError):
    """
    Polling a schema's outbox table failed.

    Raised for connectivity loss, a missing table, or any other database
    error. Only the affected schema is skipped for the current cycle.
    """

    def __init__(self, schema: str, table: str, cause: Exception):
        self.table = table
        self.cause = cause
        super().__init__(
            f"Failed to poll {schema}.{table}: {cause}",
            schema=schema,
        )


class PublishError(RelayError):
    """
    Publishing a record failed.

    `acknowledged` tells whether the broker had already accepted the
    message when the failure happened (i.e. only the bookkeeping failed).
    """

    def __init__(
        self,
        event_id: str,
        cause: Exception,
        *,
        schema: Optional[str] = None,
        acknowledged: bool = False
    ):
        self.event_id = event_id
        self.cause = cause
        self.acknowledged = acknowledged
        super().__init__(str(cause) or type(cause).__name__, schema=schema)


class DeadLetterError(RelayError):
    """Inserting a record into the dead-letter table failed."""

    def __init__(self, event_id: str, cause: Exception, *, schema: Optional[str] = None):
        self.event_id = event_id
        self.cause = cause
        super().__init__(
            f"Failed to move event {event_id} to DLQ: {cause}",
            schema=schema,
        )
