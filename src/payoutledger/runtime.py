from __future__ import annotations

import os
from dataclasses import asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from payoutledger.audit.lineage import AuditStore
from payoutledger.bus import EventPublisher, FanoutBus, InMemoryBus, build_transport_bus_from_env
from payoutledger.collaborators.base import PayoutGateway
from payoutledger.collaborators.in_memory import InMemoryLedger, InMemoryProfileDirectory, SimulatedPayoutGateway
from payoutledger.config import EngineSettings, FeeStructure
from payoutledger.db.repositories import get_storage_backend, reset_memory_backend
from payoutledger.fees.calculator import FeeCalculator
from payoutledger.models.settlement import BankAccount, TaxProfile, Transaction, UserType, utc_now
from payoutledger.reports.renderer import build_report, render_report
from payoutledger.scheduling.scheduler import SettlementScheduler
from payoutledger.scheduling.store import ScheduleStore
from payoutledger.settlement.campaign import CampaignSettlementTrigger
from payoutledger.settlement.disputes import DisputeHandler
from payoutledger.settlement.engine import SettlementEngine
from payoutledger.settlement.retry_queue import RetryQueue


class PayoutLedgerRuntime:
    """Wires the engine, schedule store, dispute handler and scheduler together.

    The ledger and profile directory are the in-memory implementations; the
    payout gateway can be swapped for a real integration.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        fee_structure: FeeStructure | None = None,
        gateway: PayoutGateway | None = None,
        transport_bus: Any | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.clock = clock or utc_now
        self.snapshot_bus = InMemoryBus()
        bus = self.snapshot_bus if transport_bus is None else FanoutBus([self.snapshot_bus, transport_bus])
        self.publisher = EventPublisher(bus)
        self.audit = AuditStore()
        self.ledger = InMemoryLedger()
        self.profiles = InMemoryProfileDirectory()
        self.gateway = gateway or SimulatedPayoutGateway()
        self.engine = SettlementEngine(
            ledger=self.ledger,
            profiles=self.profiles,
            gateway=self.gateway,
            publisher=self.publisher,
            retry_queue=RetryQueue(base_delay_seconds=self.settings.retry_base_delay_seconds),
            fee_calculator=FeeCalculator(fee_structure),
            audit_store=self.audit,
            settings=self.settings,
            clock=self.clock,
        )
        self.schedules = ScheduleStore(self.publisher, audit_store=self.audit, clock=self.clock)
        self.disputes = DisputeHandler(self.engine, self.publisher)
        self.campaigns = CampaignSettlementTrigger(self.engine)
        self.scheduler = SettlementScheduler(self.engine, self.schedules, self.settings)

    @classmethod
    def from_env(cls) -> "PayoutLedgerRuntime":
        return cls(
            settings=EngineSettings.from_env(),
            fee_structure=FeeStructure.from_env(),
            transport_bus=build_transport_bus_from_env(),
        )

    def reset(self) -> None:
        if get_storage_backend().value == "memory":
            reset_memory_backend()
        else:
            self.engine.reset()
            self.schedules.reset()
            self.disputes.reset()
            self.audit.reset()
        self.ledger.reset()
        self.snapshot_bus.clear()

    def shutdown(self) -> None:
        self.scheduler.stop(timeout=5)
        self.publisher.close()

    def health_check(self) -> dict[str, Any]:
        counts = self.engine.status_counts()
        return {
            "status": "healthy",
            "active_settlements": counts["active_settlements"],
            "pending_settlements": counts["pending_settlements"],
            "processing_settlements": counts["processing_settlements"],
            "pending_retries": counts["pending_retries"],
            "scheduled_users": self.schedules.count(),
            "storage_backend": get_storage_backend().value,
            "bus_backend": os.getenv("PAYOUTLEDGER_BUS_BACKEND", "memory").strip().lower(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def register_user(
        self,
        user_id: str,
        user_type: UserType,
        tax_profile: TaxProfile | None = None,
        bank_account: BankAccount | None = None,
        info: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self.profiles.register(user_id, user_type, tax_profile, bank_account, info)
        return {"user_id": user_id, "user_type": user_type.value, "has_bank_account": bank_account is not None}

    def record_transaction(self, transaction: Transaction) -> dict[str, Any]:
        return self.ledger.add(transaction).model_dump(mode="json")

    def create_settlement(self, **kwargs: Any) -> dict[str, Any]:
        return self.engine.create_settlement(**kwargs).model_dump(mode="json")

    def process_settlement(
        self,
        settlement_id: str,
        bank_account: BankAccount | None = None,
        payment_method: str | None = None,
    ) -> dict[str, Any]:
        return self.engine.process_settlement(settlement_id, bank_account, payment_method).model_dump(mode="json")

    def settlement(self, settlement_id: str) -> dict[str, Any]:
        return self.engine.get_settlement(settlement_id).model_dump(mode="json")

    def settlements(self, status: str | None = None) -> list[dict[str, Any]]:
        return self.engine.list_settlements(status=status)

    def user_settlements(self, user_id: str, status: str | None, limit: int, offset: int) -> list[dict[str, Any]]:
        rows = self.engine.get_user_settlements(user_id, status=status, limit=limit, offset=offset)
        return [row.model_dump(mode="json") for row in rows]

    def settlement_stats(self, user_id: str) -> dict[str, Any]:
        stats = self.engine.get_settlement_stats(user_id)
        return {**stats, "total_amount": str(stats["total_amount"])}

    def settlement_saga(self, settlement_id: str) -> list[dict[str, Any]]:
        self.engine.get_settlement(settlement_id)
        return self.engine.get_saga(settlement_id)

    def settlement_audit(self, settlement_id: str) -> list[dict[str, Any]]:
        self.engine.get_settlement(settlement_id)
        return [asdict(record) for record in self.audit.get_lineage(settlement_id)]

    def settlement_report(self, settlement_id: str, fmt: str) -> dict[str, Any]:
        settlement = self.engine.get_settlement(settlement_id)
        report = build_report(settlement, self.profiles.get_user_info(settlement.user_id))
        fmt = fmt.strip().lower()
        if fmt == "json":
            return report
        return render_report(report, fmt)

    def create_dispute(
        self,
        settlement_id: str,
        reason: str,
        description: str,
        evidence: list[str],
        requested_amount: Decimal | None,
    ) -> dict[str, Any]:
        dispute = self.disputes.create_dispute(settlement_id, reason, description, evidence, requested_amount)
        return dispute.model_dump(mode="json")

    def dispute(self, dispute_id: str) -> dict[str, Any]:
        return self.disputes.get_dispute(dispute_id).model_dump(mode="json")

    def settlement_disputes(self, settlement_id: str) -> list[dict[str, Any]]:
        self.engine.get_settlement(settlement_id)
        return [dispute.model_dump(mode="json") for dispute in self.disputes.list_disputes(settlement_id)]

    def create_schedule(self, user_id: str, **kwargs: Any) -> dict[str, Any]:
        return self.schedules.create_schedule(user_id, **kwargs).model_dump(mode="json")

    def update_schedule(self, user_id: str, **changes: Any) -> dict[str, Any]:
        return self.schedules.update_schedule(user_id, **changes).model_dump(mode="json")

    def schedule(self, user_id: str) -> dict[str, Any]:
        return self.schedules.get_schedule(user_id).model_dump(mode="json")

    def all_schedules(self) -> list[dict[str, Any]]:
        return [schedule.model_dump(mode="json") for schedule in self.schedules.list_schedules()]

    def run_scheduler_tick(self, now: datetime | None = None) -> dict[str, Any]:
        result = self.scheduler.tick(now)
        return {
            "ran_at": result.ran_at.isoformat(),
            "runs": [{**asdict(run), "outcome": run.outcome.value} for run in result.runs],
            "retried_settlement_ids": result.retried_settlement_ids,
        }

    def handle_campaign_event(self, event_name: str, data: dict[str, Any]) -> list[dict[str, Any]]:
        return [settlement.model_dump(mode="json") for settlement in self.campaigns.handle(event_name, data)]

    def events(self) -> dict[str, Any]:
        topics: dict[str, Any] = {}
        for topic, events in sorted(self.snapshot_bus.topics.items()):
            serialized = [event.model_dump(mode="json") for event in events]
            topics[topic] = {"count": len(serialized), "events": serialized}
        return {"total_topics": len(topics), "topics": topics}
