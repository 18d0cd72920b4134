from __future__ import annotations

from payoutledger.models.events import SettlementEventType


EVENT_TOPIC_MAP = {
    SettlementEventType.SETTLEMENT_CREATED: "settlement.lifecycle",
    SettlementEventType.SETTLEMENT_COMPLETED: "settlement.lifecycle",
    SettlementEventType.SETTLEMENT_FAILED: "settlement.lifecycle",
    SettlementEventType.SCHEDULE_CREATED: "settlement.schedule",
    SettlementEventType.DISPUTE_CREATED: "settlement.dispute",
}
