from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from payoutledger.models.settlement import BankAccount, PayoutResult, Settlement, TaxProfile, Transaction, UserType


class Ledger(ABC):
    @abstractmethod
    def collect_transactions(self, user_id: str, start: datetime, end: datetime) -> list[Transaction]:
        """Unsettled transactions for ``user_id`` with ``start <= occurred_at < end``."""

    @abstractmethod
    def mark_settled(self, transaction_ids: list[str], settlement_id: str) -> int:
        """Tag transactions as settled and return how many were newly marked.

        Marking an already settled transaction is a no-op.
        """

    @abstractmethod
    def campaign_transactions(self, campaign_id: str, user_id: str) -> list[Transaction]:
        """Unsettled transactions a campaign produced for one participant."""


class ProfileDirectory(ABC):
    @abstractmethod
    def get_user_type(self, user_id: str) -> UserType:
        """Whether the user is a business or an influencer."""

    @abstractmethod
    def get_user_tax_info(self, user_id: str) -> TaxProfile:
        """VAT registration and corporate form."""

    @abstractmethod
    def get_bank_account(self, user_id: str) -> BankAccount | None:
        """Payout destination, or None when the user has not registered one."""

    @abstractmethod
    def get_user_info(self, user_id: str) -> dict[str, Any]:
        """Display details used on settlement reports."""


class PayoutGateway(ABC):
    @abstractmethod
    def execute_payout(self, settlement: Settlement) -> PayoutResult:
        """Move ``settlement.net_amount`` to ``settlement.bank_account``.

        Implementations must treat ``settlement.id`` as an idempotency key.
        """
