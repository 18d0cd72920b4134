from __future__ import annotations

import json
from typing import Iterable

from kafka import KafkaProducer

from payoutledger.bus.routing import EVENT_TOPIC_MAP
from payoutledger.models.events import SettlementEvent


class KafkaBus:
    def __init__(
        self,
        bootstrap_servers: str,
        client_id: str = "payoutledger-producer",
        producer: KafkaProducer | None = None,
    ) -> None:
        self._owns_producer = producer is None
        self._producer = producer or KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            client_id=client_id,
            linger_ms=10,
            acks="all",
            value_serializer=lambda payload: json.dumps(payload).encode("utf-8"),
            key_serializer=lambda key: key.encode("utf-8"),
        )

    def publish(self, event: SettlementEvent) -> None:
        topic = EVENT_TOPIC_MAP[event.event_type]
        payload = event.model_dump(mode="json")
        # Keyed by user so one user's lifecycle events stay ordered within a partition.
        self._producer.send(topic, key=event.user_id, value=payload)

    def publish_many(self, events: Iterable[SettlementEvent]) -> None:
        for event in events:
            self.publish(event)
        self._producer.flush()

    def close(self) -> None:
        if self._owns_producer:
            self._producer.flush()
            self._producer.close()
