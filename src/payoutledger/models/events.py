from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class SettlementEventType(str, Enum):
    SETTLEMENT_CREATED = "settlement.created"
    SETTLEMENT_COMPLETED = "settlement.completed"
    SETTLEMENT_FAILED = "settlement.failed"
    SCHEDULE_CREATED = "settlement.schedule.created"
    DISPUTE_CREATED = "settlement.dispute.created"


class SettlementEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: SettlementEventType
    user_id: str
    settlement_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
