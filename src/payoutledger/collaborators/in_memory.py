from __future__ import annotations

from collections import deque
from datetime import datetime
from threading import Lock
from typing import Any
from uuid import uuid4

from payoutledger.collaborators.base import Ledger, PayoutGateway, ProfileDirectory
from payoutledger.errors import NotFoundError
from payoutledger.models.settlement import (
    BankAccount,
    PayoutResult,
    Settlement,
    TaxProfile,
    Transaction,
    UserType,
    ensure_utc,
)


class InMemoryLedger(Ledger):
    def __init__(self, transactions: list[Transaction] | None = None) -> None:
        self._transactions: dict[str, Transaction] = {}
        self._lock = Lock()
        for transaction in transactions or []:
            self.add(transaction)

    def add(self, transaction: Transaction) -> Transaction:
        with self._lock:
            self._transactions[transaction.id] = transaction
        return transaction

    def get(self, transaction_id: str) -> Transaction | None:
        with self._lock:
            return self._transactions.get(transaction_id)

    def reset(self) -> None:
        with self._lock:
            self._transactions.clear()

    def collect_transactions(self, user_id: str, start: datetime, end: datetime) -> list[Transaction]:
        start, end = ensure_utc(start), ensure_utc(end)
        with self._lock:
            rows = [
                tx
                for tx in self._transactions.values()
                if tx.user_id == user_id and tx.settlement_id is None and start <= tx.occurred_at < end
            ]
        rows.sort(key=lambda tx: (tx.occurred_at, tx.id))
        return rows

    def campaign_transactions(self, campaign_id: str, user_id: str) -> list[Transaction]:
        with self._lock:
            rows = [
                tx
                for tx in self._transactions.values()
                if tx.campaign_id == campaign_id and tx.user_id == user_id and tx.settlement_id is None
            ]
        rows.sort(key=lambda tx: (tx.occurred_at, tx.id))
        return rows

    def mark_settled(self, transaction_ids: list[str], settlement_id: str) -> int:
        marked = 0
        with self._lock:
            for transaction_id in transaction_ids:
                tx = self._transactions.get(transaction_id)
                if tx is None or tx.settlement_id is not None:
                    continue
                self._transactions[transaction_id] = tx.model_copy(update={"settlement_id": settlement_id})
                marked += 1
        return marked


class InMemoryProfileDirectory(ProfileDirectory):
    def __init__(self) -> None:
        self._user_types: dict[str, UserType] = {}
        self._tax_profiles: dict[str, TaxProfile] = {}
        self._accounts: dict[str, BankAccount] = {}
        self._info: dict[str, dict[str, Any]] = {}

    def register(
        self,
        user_id: str,
        user_type: UserType,
        tax_profile: TaxProfile | None = None,
        bank_account: BankAccount | None = None,
        info: dict[str, Any] | None = None,
    ) -> None:
        self._user_types[user_id] = user_type
        self._tax_profiles[user_id] = tax_profile or TaxProfile()
        if bank_account is not None:
            self._accounts[user_id] = bank_account
        else:
            self._accounts.pop(user_id, None)
        self._info[user_id] = dict(info or {})

    def get_user_type(self, user_id: str) -> UserType:
        if user_id not in self._user_types:
            raise NotFoundError("User", user_id)
        return self._user_types[user_id]

    def get_user_tax_info(self, user_id: str) -> TaxProfile:
        return self._tax_profiles.get(user_id, TaxProfile())

    def get_bank_account(self, user_id: str) -> BankAccount | None:
        return self._accounts.get(user_id)

    def get_user_info(self, user_id: str) -> dict[str, Any]:
        return dict(self._info.get(user_id, {}))


class SimulatedPayoutGateway(PayoutGateway):
    """Gateway stand-in for local runs and tests.

    Queued outcomes are consumed first; after that every payout succeeds. A
    settlement that was already paid gets its original result back.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self._outcomes: deque[PayoutResult | Exception] = deque()
        self._paid: dict[str, PayoutResult] = {}
        self._lock = Lock()

    def fail_next(self, count: int = 1, error: str = "Payment failed") -> None:
        with self._lock:
            for _ in range(count):
                self._outcomes.append(PayoutResult(success=False, error=error))

    def raise_next(self, exc: Exception) -> None:
        with self._lock:
            self._outcomes.append(exc)

    def execute_payout(self, settlement: Settlement) -> PayoutResult:
        with self._lock:
            self.calls.append(settlement.id)
            if settlement.id in self._paid:
                return self._paid[settlement.id]
            outcome = self._outcomes.popleft() if self._outcomes else None
            if isinstance(outcome, Exception):
                raise outcome
            if outcome is not None:
                return outcome
            result = PayoutResult(
                success=True,
                payment_id=f"pay_{uuid4().hex[:12]}",
                transaction_id=f"ptx_{uuid4().hex[:12]}",
            )
            self._paid[settlement.id] = result
            return result
