"""
Outbox Relay Configuration

Centralized configuration management for the relay service.
All settings come from environment variables (optionally from a .env file).
"""

import os
from typing import List, Mapping, Optional
from urllib.parse import quote

from dotenv import load_dotenv

from .exceptions import ConfigurationError

# Load environment variables from .env file
load_dotenv()


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_schema_list(value: str) -> List[str]:
    """
    Split a comma separated OUTBOX_SCHEMAS value, dropping blanks.

    Names are lowercased the way PostgreSQL folds unquoted identifiers.
    """
    return [name.strip().lower() for name in value.split(",") if name.strip()]


class RelayConfig:
    """Configuration for the outbox relay, read once from the environment."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ
        self._env = env

        # Service
        self.service_name: str = env.get("SERVICE_NAME", "outbox-relay")
        self.log_level: str = env.get("LOG_LEVEL", "INFO").upper()
        self.log_structured: bool = env.get("LOG_FORMAT", "json").lower() != "text"

        # PostgreSQL
        self.database_url: str = env.get("DATABASE_URL") or self._build_database_url()
        self.db_pool_min_size: int = self._int("DB_POOL_MIN_SIZE", 2)
        self.db_pool_max_size: int = self._int("DB_POOL_MAX_SIZE", 20)

        # Kafka
        self.kafka_brokers: List[str] = [
            b.strip() for b in env.get("KAFKA_BROKERS", "localhost:9092").split(",") if b.strip()
        ]
        self.kafka_client_id: str = env.get("KAFKA_CLIENT_ID", "outbox-relay")
        self.kafka_ssl: bool = _parse_bool(env.get("KAFKA_SSL", "false"))
        self.kafka_username: Optional[str] = env.get("KAFKA_USERNAME") or None
        self.kafka_password: Optional[str] = env.get("KAFKA_PASSWORD") or None
        self.kafka_sasl_mechanism: str = env.get("KAFKA_SASL_MECHANISM", "PLAIN").upper()

        # Polling
        self.outbox_schemas: List[str] = parse_schema_list(env.get("OUTBOX_SCHEMAS", ""))
        self.polling_interval_ms: int = self._int("POLLING_INTERVAL_MS", 1000)
        self.batch_size: int = self._int("OUTBOX_BATCH_SIZE", 100)

        # Retry policy
        self.retry_max_retries: int = self._int("RETRY_MAX_RETRIES", 10)
        self.retry_initial_delay_ms: int = self._int("RETRY_INITIAL_DELAY_MS", 1000)
        self.retry_max_delay_ms: int = self._int("RETRY_MAX_DELAY_MS", 300000)

        # Health server
        self.host: str = env.get("HOST", "0.0.0.0")
        self.port: int = self._int("PORT", 3000)
        self.readiness_max_poll_age_seconds: int = self._int("READINESS_MAX_POLL_AGE_SECONDS", 30)

        # Telemetry
        self.otlp_endpoint: Optional[str] = env.get("OTEL_EXPORTER_OTLP_ENDPOINT") or None
        self.otel_console_export: bool = _parse_bool(env.get("OTEL_CONSOLE_EXPORT", "false"))

    def _int(self, name: str, default: int) -> int:
        raw = self._env.get(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(f"{name} must be an integer, got {raw!r}")

    def _build_database_url(self) -> str:
        env = self._env
        user = quote(env.get("PGUSER", "postgres"), safe="")
        password = quote(env.get("PGPASSWORD", "postgres"), safe="")
        host = env.get("PGHOST", "localhost")
        port = env.get("PGPORT", "5432")
        database = env.get("PGDATABASE", "railrepay")
        return f"postgresql://{user}:{password}@{host}:{port}/{database}"

    @property
    def kafka_sasl_enabled(self) -> bool:
        return bool(self.kafka_username and self.kafka_password)

    def validate(self) -> List[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if not self.outbox_schemas:
            issues.append("WARNING: No OUTBOX_SCHEMAS configured, polling will be disabled")

        if not self.kafka_brokers:
            issues.append("ERROR: KAFKA_BROKERS is empty")

        if self.polling_interval_ms <= 0:
            issues.append("ERROR: POLLING_INTERVAL_MS must be positive")

        if self.batch_size <= 0:
            issues.append("ERROR: OUTBOX_BATCH_SIZE must be positive")

        if self.retry_max_retries < 0:
            issues.append("ERROR: RETRY_MAX_RETRIES must not be negative")

        if self.retry_initial_delay_ms <= 0 or self.retry_max_delay_ms <= 0:
            issues.append("ERROR: retry delays must be positive")

        if self.db_pool_min_size > self.db_pool_max_size:
            issues.append("ERROR: DB_POOL_MIN_SIZE is larger than DB_POOL_MAX_SIZE")

        return issues

    def __repr__(self) -> str:
        return (
            f"RelayConfig(service={self.service_name}, schemas={self.outbox_schemas}, "
            f"interval_ms={self.polling_interval_ms}, batch_size={self.batch_size}, "
            f"brokers={self.kafka_brokers})"
        )
