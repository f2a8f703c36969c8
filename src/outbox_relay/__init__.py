"""
Outbox Relay

Relays events written into per-service outbox tables (Transactional Outbox
pattern) to Kafka with per-aggregate ordering, retry with exponential
backoff and a dead-letter table for poisoned records.

Usage:
    python -m outbox_relay.runner
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
