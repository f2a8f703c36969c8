"""
Schema Registry

Maps each upstream service schema to its outbox table and publication
marker column. Services grew their outbox tables independently, so both the
table name (outbox vs outbox_events) and the marker column (published_at vs
processed_at) vary.
"""

import logging
import re
from typing import Dict, Iterable, List, Mapping, Optional

from ..exceptions import ConfigurationError
from .models import SchemaSource

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "outbox_events"
DEFAULT_TIMESTAMP_COLUMN = "published_at"

TIMESTAMP_COLUMNS = ("published_at", "processed_at")

# schema -> (table, publication marker column)
SCHEMA_TABLE_MAP: Dict[str, tuple] = {
    "whatsapp_handler": ("outbox_events", "published_at"),
    "darwin_ingestor": ("outbox_events", "published_at"),
    "journey_matcher": ("outbox", "processed_at"),
    "data_retention": ("outbox", "published_at"),
    "delay_tracker": ("outbox", "processed_at"),
    "evaluation_coordinator": ("outbox", "published_at"),
}

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


def validate_identifier(name: str, kind: str = "identifier") -> str:
    """
    Ensure a schema/table/column name is a plain lowercase SQL identifier.

    These names are interpolated into queries as quoted identifiers, so
    anything that would not match the unquoted (case-folded) name is refused.
    """
    if not _IDENTIFIER_RE.match(name or ""):
        raise ConfigurationError(f"Invalid {kind} name: {name!r}")
    return name


class SchemaRegistry:
    """
    Resolves configured schema names to SchemaSource entries.

    Unknown schemas are not an error: they are polled against the default
    table shape and a warning is logged once, at resolution time.
    """

    def __init__(
        self,
        known: Optional[Mapping[str, tuple]] = None,
        default_table: str = DEFAULT_TABLE,
        default_column: str = DEFAULT_TIMESTAMP_COLUMN
    ):
        self._known = dict(SCHEMA_TABLE_MAP if known is None else known)
        self.default_table = validate_identifier(default_table, "table")
        self.default_column = validate_identifier(default_column, "column")

        for schema, (table, column) in self._known.items():
            validate_identifier(schema, "schema")
            validate_identifier(table, "table")
            validate_identifier(column, "column")

    @property
    def known_schemas(self) -> List[str]:
        return list(self._known)

    def lookup(self, schema: str) -> Optional[SchemaSource]:
        """Return the known mapping for a schema, or None."""
        entry = self._known.get(schema)
        if entry is None:
            return None
        table, column = entry
        return SchemaSource(schema=schema, table=table, timestamp_column=column)

    def resolve(self, schema_names: Iterable[str]) -> List[SchemaSource]:
        """
        Resolve schema names, preserving input order.

        Raises:
            ConfigurationError: if a name is not a valid SQL identifier
        """
        sources = []
        for schema in schema_names:
            validate_identifier(schema, "schema")
            source = self.lookup(schema)
            if source is None:
                logger.warning(
                    "Unknown schema in OUTBOX_SCHEMAS, using defaults",
                    extra={
                        "schema": schema,
                        "default_table": self.default_table,
                        "default_timestamp_column": self.default_column,
                    },
                )
                source = SchemaSource(
                    schema=schema,
                    table=self.default_table,
                    timestamp_column=self.default_column,
                )
            sources.append(source)

        if not sources:
            logger.warning("No OUTBOX_SCHEMAS configured, polling will be disabled")
        else:
            logger.info(
                "Resolved outbox schemas",
                extra={"sources": [
                    f"{s.qualified_table}.{s.timestamp_column}" for s in sources
                ]},
            )

        return sources
