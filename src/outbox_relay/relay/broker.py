"""
Kafka Producer Factory

Builds the process-wide aiokafka producer from relay configuration.
"""

import logging

from aiokafka import AIOKafkaProducer
from aiokafka.helpers import create_ssl_context

from ..config import RelayConfig

logger = logging.getLogger(__name__)


def _security_protocol(config: RelayConfig) -> str:
    if config.kafka_sasl_enabled:
        return "SASL_SSL" if config.kafka_ssl else "SASL_PLAINTEXT"
    return "SSL" if config.kafka_ssl else "PLAINTEXT"


def create_producer(config: RelayConfig) -> AIOKafkaProducer:
    """
    Create (but do not start) the Kafka producer.

    acks="all" so that send_and_wait() only returns once the message is
    replicated; the outbox row is marked published after that.
    """
    kwargs = {
        "bootstrap_servers": config.kafka_brokers,
        "client_id": config.kafka_client_id,
        "acks": "all",
        "linger_ms": 5,
        "security_protocol": _security_protocol(config),
    }

    if config.kafka_ssl:
        kwargs["ssl_context"] = create_ssl_context()
        logger.info("Kafka SSL enabled")

    if config.kafka_sasl_enabled:
        kwargs["sasl_mechanism"] = config.kafka_sasl_mechanism
        kwargs["sasl_plain_username"] = config.kafka_username
        kwargs["sasl_plain_password"] = config.kafka_password
        logger.info("Kafka SASL authentication enabled")

    return AIOKafkaProducer(**kwargs)


async def start_producer(config: RelayConfig) -> AIOKafkaProducer:
    """Create and connect the Kafka producer."""
    producer = create_producer(config)
    await producer.start()
    logger.info("Kafka producer connected", extra={"brokers": config.kafka_brokers})
    return producer
