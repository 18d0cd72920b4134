from __future__ import annotations

from collections import defaultdict
from threading import Lock

from payoutledger.bus.routing import EVENT_TOPIC_MAP
from payoutledger.models.events import SettlementEvent, SettlementEventType


class InMemoryBus:
    """Keeps every published event per topic; backs the /api/events snapshot and tests."""

    def __init__(self) -> None:
        self.topics: dict[str, list[SettlementEvent]] = defaultdict(list)
        self._lock = Lock()

    def publish(self, event: SettlementEvent) -> None:
        topic = EVENT_TOPIC_MAP[event.event_type]
        with self._lock:
            self.topics[topic].append(event)

    def events_of_type(self, event_type: SettlementEventType) -> list[SettlementEvent]:
        topic = EVENT_TOPIC_MAP[event_type]
        with self._lock:
            return [event for event in self.topics.get(topic, []) if event.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self.topics.clear()
