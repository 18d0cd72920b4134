from __future__ import annotations

import logging
import os

from payoutledger.bus.kafka import KafkaBus

logger = logging.getLogger(__name__)

BUS_BACKENDS = ("memory", "kafka")


def build_transport_bus_from_env() -> KafkaBus | None:
    """Return the external transport for settlement events, or None for in-process only."""
    backend = os.getenv("PAYOUTLEDGER_BUS_BACKEND", "memory").strip().lower()
    if backend not in BUS_BACKENDS:
        raise ValueError(f"Unsupported PAYOUTLEDGER_BUS_BACKEND '{backend}'. Use one of: {', '.join(BUS_BACKENDS)}.")
    if backend == "memory":
        return None
    bootstrap_servers = os.getenv("PAYOUTLEDGER_KAFKA_BOOTSTRAP_SERVERS", "127.0.0.1:9092").strip()
    client_id = os.getenv("PAYOUTLEDGER_KAFKA_CLIENT_ID", "payoutledger-settlements").strip()
    logger.info("Publishing settlement events to Kafka at %s as %s", bootstrap_servers, client_id)
    return KafkaBus(bootstrap_servers=bootstrap_servers, client_id=client_id)
