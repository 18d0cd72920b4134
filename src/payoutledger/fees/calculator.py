from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from payoutledger.config import FeeStructure
from payoutledger.models.settlement import (
    SETTLEMENT_CURRENCY,
    FeeBreakdown,
    FeeType,
    LineItem,
    Transaction,
    UserType,
    quantize_amount,
)


def has_international_transactions(transactions: Iterable[Transaction]) -> bool:
    return any(tx.currency != SETTLEMENT_CURRENCY for tx in transactions)


class FeeCalculator:
    """Deductions taken by the platform before tax.

    Rates are applied to the gross amount and rounded to whole won per line
    item, so ``total`` is always the exact sum of the breakdown. The
    international fee only appears when a transaction is not in KRW.
    """

    def __init__(self, structure: FeeStructure | None = None) -> None:
        self.structure = structure or FeeStructure()

    def calculate(
        self,
        gross_amount: Decimal,
        user_type: UserType,
        transactions: list[Transaction],
    ) -> FeeBreakdown:
        structure = self.structure
        items: list[LineItem] = []

        platform_fee = quantize_amount(gross_amount * structure.platform_fee_rate)
        items.append(
            LineItem(
                type=FeeType.PLATFORM.value,
                rate=structure.platform_fee_rate,
                amount=platform_fee,
                description="Platform usage fee",
            )
        )

        processing_fee = quantize_amount(gross_amount * structure.processing_fee_rate)
        items.append(
            LineItem(
                type=FeeType.PROCESSING.value,
                rate=structure.processing_fee_rate,
                amount=processing_fee,
                description="Payment processing fee",
            )
        )

        withdrawal_fee = quantize_amount(structure.withdrawal_fee)
        items.append(
            LineItem(type=FeeType.WITHDRAWAL.value, amount=withdrawal_fee, description="Withdrawal fee")
        )

        international_fee = Decimal("0")
        if has_international_transactions(transactions):
            international_fee = quantize_amount(gross_amount * structure.international_fee_rate)
            items.append(
                LineItem(
                    type=FeeType.INTERNATIONAL.value,
                    rate=structure.international_fee_rate,
                    amount=international_fee,
                    description="International transaction fee",
                )
            )

        return FeeBreakdown(
            platform_fee=platform_fee,
            processing_fee=processing_fee,
            withdrawal_fee=withdrawal_fee,
            international_fee=international_fee,
            total=platform_fee + processing_fee + withdrawal_fee + international_fee,
            items=items,
        )
