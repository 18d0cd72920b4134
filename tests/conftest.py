from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

import pytest

from payoutledger.config import EngineSettings
from payoutledger.db.repositories import reset_memory_backend
from payoutledger.models.settlement import BankAccount, Transaction
from payoutledger.runtime import PayoutLedgerRuntime

START = datetime(2024, 3, 15, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def memory_backend(monkeypatch):
    monkeypatch.delenv("PAYOUTLEDGER_STORAGE_BACKEND", raising=False)
    monkeypatch.delenv("PAYOUTLEDGER_BUS_BACKEND", raising=False)
    reset_memory_backend()
    yield
    reset_memory_backend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def runtime(clock: FakeClock) -> PayoutLedgerRuntime:
    return PayoutLedgerRuntime(settings=EngineSettings(), clock=clock)


@pytest.fixture
def account() -> BankAccount:
    return BankAccount(bank_name="Shinhan", account_number="110-123-456789", account_holder="Kim Minji")


@pytest.fixture
def make_tx() -> Callable[..., Transaction]:
    def _make(
        tx_id: str,
        amount: str,
        user_id: str = "inf-1",
        occurred_at: datetime | None = None,
        currency: str = "KRW",
        campaign_id: str | None = None,
    ) -> Transaction:
        return Transaction(
            id=tx_id,
            amount=Decimal(amount),
            currency=currency,
            occurred_at=occurred_at or START - timedelta(days=5),
            user_id=user_id,
            campaign_id=campaign_id,
        )

    return _make
