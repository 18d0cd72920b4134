from __future__ import annotations

import logging
from typing import Any

from payoutledger.models.settlement import Settlement, SettlementPeriod, UserType
from payoutledger.settlement.engine import SettlementEngine

logger = logging.getLogger(__name__)

CAMPAIGN_EVENTS = {"campaign.completed", "settlement.trigger"}


class CampaignSettlementTrigger:
    """Creates custom-period settlements when a campaign finishes."""

    def __init__(self, engine: SettlementEngine) -> None:
        self.engine = engine

    def handle(self, event_name: str, data: dict[str, Any]) -> list[Settlement]:
        if event_name not in CAMPAIGN_EVENTS:
            raise ValueError(f"Unsupported campaign event '{event_name}'")
        campaign_id = data["campaign_id"]
        logger.info("Triggering settlements for campaign %s", campaign_id)
        parties = [
            (data.get("influencer_id"), UserType.INFLUENCER),
            (data.get("business_id"), UserType.BUSINESS),
        ]
        created: list[Settlement] = []
        for user_id, user_type in parties:
            if not user_id:
                continue
            try:
                settlement = self._settle_party(campaign_id, user_id, user_type)
            except Exception:
                logger.exception("Failed to trigger campaign settlement for %s (campaign %s)", user_id, campaign_id)
                continue
            if settlement is not None:
                created.append(settlement)
        return created

    def _settle_party(self, campaign_id: str, user_id: str, user_type: UserType) -> Settlement | None:
        transactions = self.engine.guard.call(
            "ledger", self.engine.ledger.campaign_transactions, campaign_id, user_id
        )
        if not transactions:
            logger.info("No unsettled campaign transactions for %s in campaign %s", user_id, campaign_id)
            return None
        now = self.engine.clock()
        start = min(min(tx.occurred_at for tx in transactions), now)
        return self.engine.create_settlement(
            user_id=user_id,
            user_type=user_type,
            period=SettlementPeriod.CUSTOM,
            start_date=start,
            end_date=now,
            transactions=transactions,
            metadata={"campaign_id": campaign_id, "type": "campaign_completion"},
        )
