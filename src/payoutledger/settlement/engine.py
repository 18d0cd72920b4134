from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable
from uuid import uuid4

from payoutledger.audit.lineage import AuditStore
from payoutledger.bus.publisher import EventPublisher
from payoutledger.collaborators.base import Ledger, PayoutGateway, ProfileDirectory
from payoutledger.collaborators.timeouts import TimeoutGuard
from payoutledger.config import EngineSettings
from payoutledger.db.repositories import SettlementRepository
from payoutledger.errors import (
    CollaboratorTimeoutError,
    InvalidStateError,
    MissingAccountError,
    NoTransactionsError,
    NotFoundError,
    PayoutError,
    SettlementError,
    UnexpectedError,
)
from payoutledger.fees.calculator import FeeCalculator
from payoutledger.models.events import SettlementEventType
from payoutledger.models.settlement import (
    BankAccount,
    PayoutResult,
    PeriodWindow,
    Settlement,
    SettlementAudit,
    SettlementPeriod,
    SettlementStatus,
    Transaction,
    UserType,
    utc_now,
)
from payoutledger.settlement.retry_queue import RetryQueue
from payoutledger.tax.calculator import TaxCalculator

logger = logging.getLogger(__name__)

DISPUTABLE_STATUSES = {
    SettlementStatus.PENDING,
    SettlementStatus.COMPLETED,
    SettlementStatus.FAILED,
    SettlementStatus.DISPUTED,
}


class SettlementEngine:
    def __init__(
        self,
        ledger: Ledger,
        profiles: ProfileDirectory,
        gateway: PayoutGateway,
        publisher: EventPublisher,
        repository: SettlementRepository | None = None,
        retry_queue: RetryQueue | None = None,
        fee_calculator: FeeCalculator | None = None,
        tax_calculator: TaxCalculator | None = None,
        audit_store: AuditStore | None = None,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.ledger = ledger
        self.profiles = profiles
        self.gateway = gateway
        self.publisher = publisher
        self.settings = settings or EngineSettings()
        self.repository = repository or SettlementRepository()
        self.retry_queue = retry_queue or RetryQueue(base_delay_seconds=self.settings.retry_base_delay_seconds)
        self.fee_calculator = fee_calculator or FeeCalculator()
        self.tax_calculator = tax_calculator or TaxCalculator()
        self.audit_store = audit_store
        self.clock = clock or utc_now
        self.guard = TimeoutGuard(
            {
                "ledger": self.settings.ledger_timeout_seconds,
                "payout": self.settings.payout_timeout_seconds,
                "profile": self.settings.profile_timeout_seconds,
            }
        )

    def reset(self) -> None:
        self.repository.reset()
        self.retry_queue.reset()

    def create_settlement(
        self,
        user_id: str,
        user_type: UserType | str,
        period: SettlementPeriod | str,
        start_date: datetime,
        end_date: datetime,
        transactions: list[Transaction] | None = None,
        metadata: dict[str, Any] | None = None,
        created_by: str = "system",
    ) -> Settlement:
        user_type = UserType(user_type)
        window = PeriodWindow(type=SettlementPeriod(period), start_date=start_date, end_date=end_date)

        if transactions is None:
            transactions = self.guard.call(
                "ledger", self.ledger.collect_transactions, user_id, window.start_date, window.end_date
            )
        transactions = self.exclude_paid(user_id, transactions)
        if not transactions:
            raise NoTransactionsError(user_id)

        gross_amount = sum((tx.amount for tx in transactions), Decimal("0"))
        fees = self.fee_calculator.calculate(gross_amount, user_type, transactions)
        tax_profile = self.guard.call("profile", self.profiles.get_user_tax_info, user_id)
        taxes = self.tax_calculator.calculate(gross_amount, fees, user_type, tax_profile)

        now = self.clock()
        settlement = Settlement(
            user_id=user_id,
            user_type=user_type,
            period=window,
            transaction_ids=[tx.id for tx in transactions],
            gross_amount=gross_amount,
            fees=fees,
            taxes=taxes,
            net_amount=gross_amount - fees.total - taxes.total,
            audit=SettlementAudit(created_by=created_by),
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self.repository.insert(settlement.model_dump(mode="json"))
        self._log_transition(
            settlement,
            "none",
            "create",
            {"gross_amount": str(gross_amount), "net_amount": str(settlement.net_amount)},
        )
        if settlement.net_amount < 0:
            logger.warning("Settlement %s for user %s has negative net amount %s", settlement.id, user_id, settlement.net_amount)
        logger.info("Settlement created: %s for user %s", settlement.id, user_id)
        self.publisher.publish(
            SettlementEventType.SETTLEMENT_CREATED,
            user_id,
            {
                "user_type": user_type.value,
                "gross_amount": str(gross_amount),
                "net_amount": str(settlement.net_amount),
                "period": window.model_dump(mode="json"),
            },
            settlement_id=settlement.id,
        )
        return settlement

    def process_settlement(
        self,
        settlement_id: str,
        bank_account: BankAccount | dict[str, Any] | None = None,
        payment_method: str | None = None,
    ) -> Settlement:
        settlement = self.get_settlement(settlement_id)
        if settlement.status != SettlementStatus.PENDING:
            raise InvalidStateError(settlement_id, settlement.status.value, "process")
        return self._attempt_payout(settlement, "process", bank_account, payment_method)

    def retry_settlement(self, settlement_id: str, job_id: str | None = None) -> Settlement:
        settlement = self.get_settlement(settlement_id)
        if settlement.status != SettlementStatus.FAILED:
            raise InvalidStateError(settlement_id, settlement.status.value, "retry")
        if settlement.processing.retry_count >= self.settings.max_retries:
            raise InvalidStateError(settlement_id, "failed (retries exhausted)", "retry")
        logger.info("Retrying settlement: %s", settlement_id)
        return self._attempt_payout(
            settlement, "retry", settlement.bank_account, settlement.payment_method, retry_job_id=job_id
        )

    def run_due_retries(self, now: datetime | None = None) -> list[Settlement]:
        now = now or self.clock()
        retried: list[Settlement] = []
        for job in self.retry_queue.due(now):
            row = self.repository.get(job.settlement_id)
            if not row or row["status"] != SettlementStatus.FAILED.value:
                self.retry_queue.cancel(job.id)
                continue
            try:
                retried.append(self.retry_settlement(job.settlement_id, job_id=job.id))
            except InvalidStateError:
                # Another worker claimed the settlement or its retries ran out.
                logger.warning("Dropping retry job %s for settlement %s", job.id, job.settlement_id)
                self.retry_queue.cancel(job.id)
            except SettlementError:
                logger.exception("Retry of settlement %s failed", job.settlement_id)
        return retried

    def exclude_paid(self, user_id: str, transactions: list[Transaction]) -> list[Transaction]:
        paid_ids = {
            transaction_id
            for row in self.repository.list_by_user(user_id)
            if row["metadata"].get("payment_id")
            for transaction_id in row["transaction_ids"]
        }
        kept = [tx for tx in transactions if tx.id not in paid_ids]
        if len(kept) < len(transactions):
            logger.warning(
                "Skipping %d transaction(s) for user %s already paid out by another settlement",
                len(transactions) - len(kept),
                user_id,
            )
        return kept

    def mark_unsettled_ledger(self) -> list[str]:
        marked: list[str] = []
        for row in self.repository.list_all():
            if row["metadata"].get("ledger_marked") is not False:
                continue
            settlement = Settlement.model_validate(row)
            if self._mark_ledger(settlement):
                marked.append(settlement.id)
        return marked

    def hold_for_dispute(self, settlement_id: str, dispute_id: str) -> Settlement:
        settlement = self.get_settlement(settlement_id)
        if settlement.status not in DISPUTABLE_STATUSES:
            raise InvalidStateError(settlement_id, settlement.status.value, "dispute")
        dispute_ids = [*settlement.metadata.get("dispute_ids", []), dispute_id]
        settlement = self._transition(
            settlement,
            SettlementStatus.DISPUTED,
            "dispute",
            metadata={"dispute_id": dispute_id, "dispute_ids": dispute_ids, "next_retry_at": None},
            note=f"dispute {dispute_id} opened",
            detail={"dispute_id": dispute_id},
        )
        cancelled = self.retry_queue.cancel_for(settlement_id)
        if cancelled:
            logger.info("Cancelled %d pending retries for disputed settlement %s", cancelled, settlement_id)
        return settlement

    def get_settlement(self, settlement_id: str) -> Settlement:
        row = self.repository.get(settlement_id)
        if not row:
            raise NotFoundError("Settlement", settlement_id)
        return Settlement.model_validate(row)

    def get_user_settlements(
        self,
        user_id: str,
        status: SettlementStatus | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Settlement]:
        status_value = SettlementStatus(status).value if status else None
        rows = self.repository.list_by_user(user_id, status=status_value)
        return [Settlement.model_validate(row) for row in rows[offset : offset + limit]]

    def get_settlement_stats(self, user_id: str) -> dict[str, Any]:
        settlements = [Settlement.model_validate(row) for row in self.repository.list_by_user(user_id)]
        return {
            "total_settlements": len(settlements),
            "total_amount": sum((item.net_amount for item in settlements), Decimal("0")),
            "completed_settlements": len([item for item in settlements if item.status == SettlementStatus.COMPLETED]),
            "pending_settlements": len([item for item in settlements if item.status == SettlementStatus.PENDING]),
            "failed_settlements": len([item for item in settlements if item.status == SettlementStatus.FAILED]),
        }

    def list_settlements(self, status: str | None = None) -> list[dict[str, Any]]:
        rows = self.repository.list_all()
        if status:
            rows = [row for row in rows if row["status"] == status]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return rows

    def status_counts(self) -> dict[str, int]:
        counts = self.repository.count_by_status()
        return {
            "active_settlements": sum(counts.values()),
            "pending_settlements": counts.get(SettlementStatus.PENDING.value, 0),
            "processing_settlements": counts.get(SettlementStatus.PROCESSING.value, 0),
            "pending_retries": self.retry_queue.pending_count(),
        }

    def get_saga(self, settlement_id: str) -> list[dict[str, Any]]:
        return self.repository.get_saga_log(settlement_id)

    def _attempt_payout(
        self,
        settlement: Settlement,
        action: str,
        bank_account: BankAccount | dict[str, Any] | None,
        payment_method: str | None,
        retry_job_id: str | None = None,
    ) -> Settlement:
        settlement = self._transition(
            settlement,
            SettlementStatus.PROCESSING,
            action,
            processing={"initiated_at": self.clock()},
        )
        if retry_job_id:
            self.retry_queue.complete(retry_job_id)
        try:
            account = bank_account or self.guard.call("profile", self.profiles.get_bank_account, settlement.user_id)
            if account is None:
                raise MissingAccountError(settlement.user_id)
            account = BankAccount.model_validate(account)
            settlement = self._update(
                settlement,
                {
                    "bank_account": account.model_dump(mode="json"),
                    "payment_method": payment_method or "bank_transfer",
                },
            )
            try:
                result = self.guard.call("payout", self.gateway.execute_payout, settlement)
            except (PayoutError, CollaboratorTimeoutError) as exc:
                result = PayoutResult(success=False, error=str(exc))
            if result.success:
                return self._complete(settlement, result)
            return self._fail(settlement, result.error or "Payment failed")
        except Exception as exc:
            self._abort(settlement.id, exc)
            if isinstance(exc, SettlementError):
                raise
            raise UnexpectedError(str(exc)) from exc

    def _complete(self, settlement: Settlement, result: PayoutResult) -> Settlement:
        settlement = self._transition(
            settlement,
            SettlementStatus.COMPLETED,
            "payout_succeeded",
            processing={"completed_at": self.clock(), "error_message": None},
            metadata={
                "payment_id": result.payment_id,
                "transaction_id": result.transaction_id,
                "next_retry_at": None,
                "ledger_marked": False,
            },
            note=f"payout completed ({result.payment_id})",
            detail={"payment_id": result.payment_id},
        )
        if self._mark_ledger(settlement):
            settlement = self.get_settlement(settlement.id)
        logger.info("Settlement completed: %s - %s %s", settlement.id, settlement.net_amount, settlement.currency)
        self.publisher.publish(
            SettlementEventType.SETTLEMENT_COMPLETED,
            settlement.user_id,
            {
                "user_type": settlement.user_type.value,
                "amount": str(settlement.net_amount),
                "payment_id": result.payment_id,
            },
            settlement_id=settlement.id,
        )
        return settlement

    def _mark_ledger(self, settlement: Settlement) -> bool:
        # The payout already went out; a failure here leaves ledger_marked False
        # for mark_unsettled_ledger to pick up.
        try:
            self.guard.call("ledger", self.ledger.mark_settled, settlement.transaction_ids, settlement.id)
        except Exception:
            logger.exception("Failed to mark ledger transactions settled for %s", settlement.id)
            return False
        row = self.repository.get(settlement.id)
        if row is None:
            return False
        current = Settlement.model_validate(row)
        try:
            self._update(current, {"metadata": {**current.metadata, "ledger_marked": True}}, action="mark_ledger")
        except InvalidStateError:
            logger.warning("Settlement %s changed while recording ledger marking", settlement.id)
            return False
        return True

    def _fail(self, settlement: Settlement, error: str) -> Settlement:
        now = self.clock()
        retry_count = settlement.processing.retry_count + 1
        retry_scheduled = retry_count < self.settings.max_retries
        next_retry_at = now + self.retry_queue.delay_for(retry_count) if retry_scheduled else None
        settlement = self._transition(
            settlement,
            SettlementStatus.FAILED,
            "payout_failed",
            processing={"failed_at": now, "error_message": error, "retry_count": retry_count},
            metadata={"next_retry_at": next_retry_at.isoformat() if next_retry_at else None},
            note=f"payout attempt {retry_count} failed: {error}",
            detail={"error": error, "retry_count": retry_count, "retry_scheduled": retry_scheduled},
        )
        if retry_scheduled:
            self.retry_queue.schedule(settlement.id, retry_count, now)
            logger.warning("Settlement failed: %s - %s (retry %d scheduled)", settlement.id, error, retry_count)
        else:
            logger.error("Settlement failed: %s - %s (retries exhausted after %d attempts)", settlement.id, error, retry_count)
        self.publisher.publish(
            SettlementEventType.SETTLEMENT_FAILED,
            settlement.user_id,
            {"error": error, "retry_count": retry_count, "retry_scheduled": retry_scheduled},
            settlement_id=settlement.id,
        )
        return settlement

    def _abort(self, settlement_id: str, exc: Exception) -> None:
        logger.error("Failed to process settlement %s: %s", settlement_id, exc)
        row = self.repository.get(settlement_id)
        if not row or row["status"] != SettlementStatus.PROCESSING.value:
            return
        settlement = Settlement.model_validate(row)
        message = str(exc) or type(exc).__name__
        settlement = self._transition(
            settlement,
            SettlementStatus.FAILED,
            "abort",
            processing={"failed_at": self.clock(), "error_message": message},
            metadata={"next_retry_at": None},
            note=f"processing aborted: {message}",
            detail={"error": message, "exception": type(exc).__name__},
        )
        self.publisher.publish(
            SettlementEventType.SETTLEMENT_FAILED,
            settlement.user_id,
            {"error": message, "retry_count": settlement.processing.retry_count, "retry_scheduled": False},
            settlement_id=settlement.id,
        )

    def _transition(
        self,
        settlement: Settlement,
        to_status: SettlementStatus,
        action: str,
        processing: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        note: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> Settlement:
        values: dict[str, Any] = {"status": to_status.value}
        if processing:
            values["processing"] = settlement.processing.model_copy(update=processing).model_dump(mode="json")
        if metadata:
            values["metadata"] = {**settlement.metadata, **metadata}
        if note:
            values["audit"] = {**settlement.audit.model_dump(mode="json"), "notes": [*settlement.audit.notes, note]}
        updated = self._update(settlement, values, action=action)
        self._log_transition(updated, settlement.status.value, action, detail or {})
        return updated

    def _update(self, settlement: Settlement, values: dict[str, Any], action: str = "update") -> Settlement:
        row = self.repository.compare_and_set(
            settlement.id,
            settlement.status.value,
            settlement.version,
            {**values, "updated_at": self.clock().isoformat()},
        )
        if row is None:
            current = self.repository.get(settlement.id)
            status = current["status"] if current else "missing"
            raise InvalidStateError(settlement.id, status, action)
        return Settlement.model_validate(row)

    def _log_transition(
        self,
        settlement: Settlement,
        from_status: str,
        action: str,
        detail: dict[str, Any],
    ) -> None:
        row = {
            "id": str(uuid4()),
            "settlement_id": settlement.id,
            "from_status": from_status,
            "to_status": settlement.status.value,
            "action": action,
            "detail": detail,
            "timestamp": self.clock().isoformat(),
        }
        self.repository.insert_saga(row)
        if self.audit_store:
            self.audit_store.log(
                action=f"settlement_{action}",
                component="settlement_engine",
                user_id=settlement.user_id,
                output_reference=settlement.id,
                detail={"from_status": from_status, "to_status": settlement.status.value, **detail},
            )
