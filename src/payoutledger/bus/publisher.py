from __future__ import annotations

import logging
from typing import Any

from payoutledger.models.events import SettlementEvent, SettlementEventType

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(self, bus: Any) -> None:
        self.bus = bus

    def publish(
        self,
        event_type: SettlementEventType,
        user_id: str,
        payload: dict[str, Any],
        settlement_id: str | None = None,
    ) -> SettlementEvent:
        event = SettlementEvent(
            event_type=event_type,
            user_id=user_id,
            settlement_id=settlement_id,
            payload=payload,
        )
        try:
            self.bus.publish(event)
        except Exception:
            logger.exception("Failed to publish %s for user %s", event_type.value, user_id)
        return event

    def close(self) -> None:
        close = getattr(self.bus, "close", None)
        if callable(close):
            close()
