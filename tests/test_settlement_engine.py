from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from threading import Barrier, Thread

import pytest
from pydantic import ValidationError

from payoutledger.config import EngineSettings
from payoutledger.errors import (
    InvalidStateError,
    MissingAccountError,
    NoTransactionsError,
    NotFoundError,
    PayoutError,
    UnexpectedError,
)
from payoutledger.models.events import SettlementEventType
from payoutledger.models.settlement import PayoutResult, Settlement, SettlementStatus, UserType
from payoutledger.runtime import PayoutLedgerRuntime

WINDOW_START = datetime(2024, 3, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2024, 3, 15, tzinfo=timezone.utc)


def _create(runtime: PayoutLedgerRuntime, user_id: str = "inf-1", user_type: UserType = UserType.INFLUENCER) -> Settlement:
    return runtime.engine.create_settlement(
        user_id=user_id,
        user_type=user_type,
        period="custom",
        start_date=WINDOW_START,
        end_date=WINDOW_END,
    )


def _seed(runtime: PayoutLedgerRuntime, make_tx, account, amount: str = "100000", user_id: str = "inf-1") -> None:
    runtime.profiles.register(user_id, UserType.INFLUENCER, bank_account=account)
    runtime.ledger.add(make_tx(f"tx-{user_id}-{amount}", amount, user_id=user_id))


def test_create_settlement_computes_net_from_ledger(runtime, make_tx, account) -> None:
    _seed(runtime, make_tx, account)

    settlement = _create(runtime)

    assert settlement.status == SettlementStatus.PENDING
    assert settlement.transaction_ids == ["tx-inf-1-100000"]
    assert settlement.gross_amount == Decimal("100000")
    assert settlement.fees.total == Decimal("18900")
    assert settlement.taxes.total == Decimal("4866")
    assert settlement.net_amount == Decimal("76234")
    assert runtime.engine.get_settlement(settlement.id) == settlement

    created = runtime.snapshot_bus.events_of_type(SettlementEventType.SETTLEMENT_CREATED)
    assert [event.settlement_id for event in created] == [settlement.id]
    saga = runtime.engine.get_saga(settlement.id)
    assert [(step["from_status"], step["to_status"]) for step in saga] == [("none", "pending")]


def test_create_settlement_outside_window_has_no_transactions(runtime, make_tx, account) -> None:
    runtime.profiles.register("inf-1", UserType.INFLUENCER, bank_account=account)
    runtime.ledger.add(make_tx("tx-late", "50000", occurred_at=WINDOW_END))

    with pytest.raises(NoTransactionsError):
        _create(runtime)

    assert runtime.engine.list_settlements() == []
    assert runtime.snapshot_bus.events_of_type(SettlementEventType.SETTLEMENT_CREATED) == []


def test_explicit_transactions_bypass_ledger(runtime, make_tx) -> None:
    settlement = runtime.engine.create_settlement(
        user_id="biz-1",
        user_type="business",
        period="weekly",
        start_date=WINDOW_START,
        end_date=WINDOW_END,
        transactions=[make_tx("tx-a", "30000", user_id="biz-1"), make_tx("tx-b", "20000", user_id="biz-1")],
        metadata={"source": "manual"},
        created_by="ops@example.com",
    )

    assert settlement.gross_amount == Decimal("50000")
    assert settlement.audit.created_by == "ops@example.com"
    assert settlement.metadata == {"source": "manual"}


def test_negative_net_is_persisted(runtime, make_tx, account) -> None:
    _seed(runtime, make_tx, account, amount="500")

    settlement = _create(runtime)

    assert settlement.fees.total == Decimal("1090")
    assert settlement.taxes.total == Decimal("0")
    assert settlement.net_amount == Decimal("-590")


def test_process_settlement_completes_and_marks_ledger(runtime, make_tx, account) -> None:
    _seed(runtime, make_tx, account)
    settlement = _create(runtime)

    settlement = runtime.engine.process_settlement(settlement.id)

    assert settlement.status == SettlementStatus.COMPLETED
    assert settlement.processing.completed_at is not None
    assert settlement.bank_account == account
    assert settlement.payment_method == "bank_transfer"
    assert settlement.metadata["payment_id"].startswith("pay_")
    assert runtime.ledger.get("tx-inf-1-100000").settlement_id == settlement.id
    assert runtime.ledger.collect_transactions("inf-1", WINDOW_START, WINDOW_END) == []

    completed = runtime.snapshot_bus.events_of_type(SettlementEventType.SETTLEMENT_COMPLETED)
    assert completed[0].payload["amount"] == "76234"
    saga = runtime.engine.get_saga(settlement.id)
    assert [step["to_status"] for step in saga] == ["pending", "processing", "completed"]


def test_process_non_pending_raises_without_mutation(runtime, make_tx, account) -> None:
    _seed(runtime, make_tx, account)
    settlement = runtime.engine.process_settlement(_create(runtime).id)
    before = runtime.engine.get_settlement(settlement.id)

    with pytest.raises(InvalidStateError):
        runtime.engine.process_settlement(settlement.id)

    assert runtime.engine.get_settlement(settlement.id) == before
    assert runtime.gateway.calls == [settlement.id]


def test_concurrent_process_has_exactly_one_winner(runtime, make_tx, account) -> None:
    _seed(runtime, make_tx, account)
    settlement = _create(runtime)
    barrier = Barrier(2)
    outcomes: list[object] = []

    def worker() -> None:
        barrier.wait()
        try:
            outcomes.append(runtime.engine.process_settlement(settlement.id))
        except InvalidStateError as exc:
            outcomes.append(exc)

    threads = [Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [item for item in outcomes if isinstance(item, Settlement)]
    losers = [item for item in outcomes if isinstance(item, InvalidStateError)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert runtime.gateway.calls == [settlement.id]
    assert runtime.engine.get_settlement(settlement.id).status == SettlementStatus.COMPLETED


def test_failed_payout_schedules_linear_retry(runtime, clock, make_tx, account) -> None:
    _seed(runtime, make_tx, account)
    runtime.gateway.fail_next(1, error="Bank rejected transfer")

    settlement = runtime.engine.process_settlement(_create(runtime).id)

    assert settlement.status == SettlementStatus.FAILED
    assert settlement.processing.retry_count == 1
    assert settlement.processing.error_message == "Bank rejected transfer"
    jobs = runtime.engine.retry_queue.pending_for(settlement.id)
    assert [job.run_at for job in jobs] == [clock.now + timedelta(seconds=60)]
    assert settlement.metadata["next_retry_at"] == jobs[0].run_at.isoformat()

    assert runtime.engine.run_due_retries(clock.now + timedelta(seconds=30)) == []

    clock.advance(seconds=61)
    retried = runtime.engine.run_due_retries()
    assert [item.status for item in retried] == [SettlementStatus.COMPLETED]
    assert runtime.engine.retry_queue.pending_count() == 0


def test_retries_stop_after_three_failures(runtime, clock, make_tx, account) -> None:
    _seed(runtime, make_tx, account)
    runtime.gateway.fail_next(3)

    settlement = runtime.engine.process_settlement(_create(runtime).id)
    clock.advance(seconds=61)
    runtime.engine.run_due_retries()
    clock.advance(seconds=121)
    runtime.engine.run_due_retries()

    settlement = runtime.engine.get_settlement(settlement.id)
    assert settlement.status == SettlementStatus.FAILED
    assert settlement.processing.retry_count == 3
    assert settlement.metadata["next_retry_at"] is None
    assert runtime.engine.retry_queue.pending_count() == 0
    assert len(runtime.gateway.calls) == 3

    clock.advance(days=1)
    assert runtime.engine.run_due_retries() == []
    with pytest.raises(InvalidStateError):
        runtime.engine.retry_settlement(settlement.id)

    failed = runtime.snapshot_bus.events_of_type(SettlementEventType.SETTLEMENT_FAILED)
    assert [event.payload["retry_scheduled"] for event in failed] == [True, True, False]


def test_gateway_payout_error_is_retryable(runtime, make_tx, account) -> None:
    _seed(runtime, make_tx, account)
    runtime.gateway.raise_next(PayoutError("declined"))

    settlement = runtime.engine.process_settlement(_create(runtime).id)

    assert settlement.status == SettlementStatus.FAILED
    assert settlement.processing.error_message == "declined"
    assert runtime.engine.retry_queue.pending_count() == 1


def test_missing_bank_account_fails_without_retry(runtime, make_tx) -> None:
    runtime.profiles.register("inf-1", UserType.INFLUENCER)
    runtime.ledger.add(make_tx("tx-1", "100000"))
    settlement = _create(runtime)

    with pytest.raises(MissingAccountError):
        runtime.engine.process_settlement(settlement.id)

    stored = runtime.engine.get_settlement(settlement.id)
    assert stored.status == SettlementStatus.FAILED
    assert "Bank account not found" in stored.processing.error_message
    assert runtime.engine.retry_queue.pending_count() == 0
    assert runtime.gateway.calls == []
    assert len(runtime.snapshot_bus.events_of_type(SettlementEventType.SETTLEMENT_FAILED)) == 1


def test_unexpected_gateway_exception_forces_failed(runtime, make_tx, account) -> None:
    _seed(runtime, make_tx, account)
    runtime.gateway.raise_next(RuntimeError("connection reset"))
    settlement = _create(runtime)

    with pytest.raises(UnexpectedError):
        runtime.engine.process_settlement(settlement.id)

    stored = runtime.engine.get_settlement(settlement.id)
    assert stored.status == SettlementStatus.FAILED
    assert stored.processing.error_message == "connection reset"


class SlowGateway:
    def __init__(self, delay: float) -> None:
        self.delay = delay

    def execute_payout(self, settlement: Settlement) -> PayoutResult:
        time.sleep(self.delay)
        return PayoutResult(success=True, payment_id="pay_slow")


def test_payout_timeout_is_a_retryable_failure(clock, make_tx, account) -> None:
    settings = EngineSettings(payout_timeout_seconds=0.05)
    runtime = PayoutLedgerRuntime(settings=settings, gateway=SlowGateway(0.5), clock=clock)
    _seed(runtime, make_tx, account)

    settlement = runtime.engine.process_settlement(_create(runtime).id)

    assert settlement.status == SettlementStatus.FAILED
    assert "timed out" in settlement.processing.error_message
    assert runtime.engine.retry_queue.pending_count() == 1


def test_user_settlement_queries(runtime, clock, make_tx, account) -> None:
    ids = []
    for amount in ("100000", "200000", "300000"):
        _seed(runtime, make_tx, account, amount=amount)
        ids.append(_create(runtime).id)
        clock.advance(minutes=1)
    runtime.engine.process_settlement(ids[0])

    newest_first = runtime.engine.get_user_settlements("inf-1")
    assert [item.id for item in newest_first] == list(reversed(ids))
    assert [item.id for item in runtime.engine.get_user_settlements("inf-1", limit=1, offset=1)] == [ids[1]]
    assert [item.id for item in runtime.engine.get_user_settlements("inf-1", status="completed")] == [ids[0]]
    assert runtime.engine.get_user_settlements("someone-else") == []

    stats = runtime.engine.get_settlement_stats("inf-1")
    assert stats["total_settlements"] == 3
    assert stats["completed_settlements"] == 1
    assert stats["pending_settlements"] == 2
    assert stats["failed_settlements"] == 0
    assert stats["total_amount"] == sum(item.net_amount for item in newest_first)


def test_get_unknown_settlement_raises(runtime) -> None:
    with pytest.raises(NotFoundError):
        runtime.engine.get_settlement("sttl_missing")


def test_mark_settled_is_idempotent(runtime, make_tx) -> None:
    runtime.ledger.add(make_tx("tx-1", "1000"))
    runtime.ledger.add(make_tx("tx-2", "2000"))

    assert runtime.ledger.mark_settled(["tx-1", "tx-2"], "sttl_a") == 2
    assert runtime.ledger.mark_settled(["tx-1", "tx-2"], "sttl_b") == 0
    assert runtime.ledger.get("tx-1").settlement_id == "sttl_a"


def test_settlement_rejects_inconsistent_net(runtime, make_tx, account) -> None:
    _seed(runtime, make_tx, account)
    data = _create(runtime).model_dump()
    data["net_amount"] = data["net_amount"] + 1

    with pytest.raises(ValidationError):
        Settlement.model_validate(data)


def test_health_check_counts(runtime, make_tx, account) -> None:
    _seed(runtime, make_tx, account)
    _create(runtime)
    runtime.schedules.create_schedule("inf-1", period="weekly")

    health = runtime.health_check()

    assert health["status"] == "healthy"
    assert health["active_settlements"] == 1
    assert health["pending_settlements"] == 1
    assert health["scheduled_users"] == 1


def test_ledger_marking_failure_still_completes_settlement(runtime, make_tx, account, monkeypatch) -> None:
    _seed(runtime, make_tx, account)
    settlement = _create(runtime)
    mark_settled = runtime.ledger.mark_settled

    def ledger_down(transaction_ids: list[str], settlement_id: str) -> int:
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(runtime.ledger, "mark_settled", ledger_down)
    settlement = runtime.engine.process_settlement(settlement.id)

    assert settlement.status == SettlementStatus.COMPLETED
    assert settlement.metadata["ledger_marked"] is False
    completed = runtime.snapshot_bus.events_of_type(SettlementEventType.SETTLEMENT_COMPLETED)
    assert [event.settlement_id for event in completed] == [settlement.id]

    with pytest.raises(NoTransactionsError):
        _create(runtime)
    assert runtime.gateway.calls == [settlement.id]

    monkeypatch.setattr(runtime.ledger, "mark_settled", mark_settled)
    assert runtime.engine.mark_unsettled_ledger() == [settlement.id]
    assert runtime.ledger.get("tx-inf-1-100000").settlement_id == settlement.id
    assert runtime.engine.get_settlement(settlement.id).metadata["ledger_marked"] is True
    assert runtime.engine.mark_unsettled_ledger() == []


def test_paid_transactions_are_not_settled_twice(runtime, make_tx, account) -> None:
    _seed(runtime, make_tx, account)
    paid = runtime.engine.process_settlement(_create(runtime).id)

    with pytest.raises(NoTransactionsError):
        runtime.engine.create_settlement(
            user_id="inf-1",
            user_type=UserType.INFLUENCER,
            period="custom",
            start_date=WINDOW_START,
            end_date=WINDOW_END,
            transactions=[runtime.ledger.get("tx-inf-1-100000")],
        )

    assert [item.id for item in runtime.engine.get_user_settlements("inf-1")] == [paid.id]


def test_retry_job_is_kept_until_the_retry_claims_the_settlement(runtime, clock, make_tx, account, monkeypatch) -> None:
    _seed(runtime, make_tx, account)
    runtime.gateway.fail_next(1)
    settlement = runtime.engine.process_settlement(_create(runtime).id)
    clock.advance(seconds=61)
    retry_settlement = runtime.engine.retry_settlement

    def worker_died(settlement_id: str, job_id: str | None = None) -> Settlement:
        raise RuntimeError("worker died")

    monkeypatch.setattr(runtime.engine, "retry_settlement", worker_died)
    with pytest.raises(RuntimeError):
        runtime.engine.run_due_retries()
    assert runtime.engine.retry_queue.pending_count() == 1

    monkeypatch.setattr(runtime.engine, "retry_settlement", retry_settlement)
    retried = runtime.engine.run_due_retries()
    assert [item.id for item in retried] == [settlement.id]
    assert retried[0].status == SettlementStatus.COMPLETED
    assert runtime.engine.retry_queue.pending_count() == 0
