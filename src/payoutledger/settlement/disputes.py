from __future__ import annotations

import logging
from decimal import Decimal

from payoutledger.bus.publisher import EventPublisher
from payoutledger.db.repositories import DisputeRepository
from payoutledger.errors import NotFoundError
from payoutledger.models.events import SettlementEventType
from payoutledger.models.settlement import Dispute
from payoutledger.settlement.engine import SettlementEngine

logger = logging.getLogger(__name__)


class DisputeHandler:
    """Opens disputes and puts the disputed settlement on hold."""

    def __init__(
        self,
        engine: SettlementEngine,
        publisher: EventPublisher,
        repository: DisputeRepository | None = None,
    ) -> None:
        self.engine = engine
        self.publisher = publisher
        self.repository = repository or DisputeRepository()

    def reset(self) -> None:
        self.repository.reset()

    def create_dispute(
        self,
        settlement_id: str,
        reason: str,
        description: str = "",
        evidence: list[str] | None = None,
        requested_amount: Decimal | None = None,
    ) -> Dispute:
        settlement = self.engine.get_settlement(settlement_id)
        dispute = Dispute(
            settlement_id=settlement_id,
            reason=reason,
            description=description,
            evidence=list(evidence or []),
            requested_amount=requested_amount,
            created_at=self.engine.clock(),
        )
        self.repository.insert(dispute.model_dump(mode="json"))
        try:
            self.engine.hold_for_dispute(settlement_id, dispute.id)
        except Exception:
            # No dispute row may outlive a failed hold.
            self.repository.delete(dispute.id)
            raise
        logger.info("Settlement dispute created: %s for settlement %s", dispute.id, settlement_id)
        self.publisher.publish(
            SettlementEventType.DISPUTE_CREATED,
            settlement.user_id,
            {
                "dispute_id": dispute.id,
                "reason": reason,
                "requested_amount": str(requested_amount) if requested_amount is not None else None,
            },
            settlement_id=settlement_id,
        )
        return dispute

    def get_dispute(self, dispute_id: str) -> Dispute:
        row = self.repository.get(dispute_id)
        if not row:
            raise NotFoundError("Dispute", dispute_id)
        return Dispute.model_validate(row)

    def list_disputes(self, settlement_id: str) -> list[Dispute]:
        return [Dispute.model_validate(row) for row in self.repository.list_by_settlement(settlement_id)]
