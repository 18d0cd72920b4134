from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from payoutledger.models.settlement import (
    FeeBreakdown,
    LineItem,
    TaxBreakdown,
    TaxProfile,
    TaxType,
    UserType,
    quantize_amount,
)

VAT_RATE = Decimal("0.10")


@dataclass(frozen=True)
class TaxBracket:
    upper_bound: Decimal | None
    rate: Decimal


# Upper bounds are inclusive. The last bracket is open-ended.
PERSONAL_INCOME_BRACKETS: tuple[TaxBracket, ...] = (
    TaxBracket(Decimal("12000000"), Decimal("0.06")),
    TaxBracket(Decimal("46000000"), Decimal("0.15")),
    TaxBracket(Decimal("88000000"), Decimal("0.24")),
    TaxBracket(Decimal("150000000"), Decimal("0.35")),
    TaxBracket(None, Decimal("0.38")),
)

CORPORATE_BRACKETS: tuple[TaxBracket, ...] = (
    TaxBracket(Decimal("200000000"), Decimal("0.10")),
    TaxBracket(Decimal("20000000000"), Decimal("0.20")),
    TaxBracket(None, Decimal("0.22")),
)


def bracket_rate(amount: Decimal, brackets: tuple[TaxBracket, ...]) -> Decimal:
    """Rate of the single bracket ``amount`` falls in.

    The whole amount is taxed at that rate; this is not a marginal
    calculation.
    """
    for bracket in brackets:
        if bracket.upper_bound is None or amount <= bracket.upper_bound:
            return bracket.rate
    return brackets[-1].rate


def income_tax_rate(taxable_amount: Decimal) -> Decimal:
    return bracket_rate(taxable_amount, PERSONAL_INCOME_BRACKETS)


def business_tax_rate(taxable_amount: Decimal, tax_profile: TaxProfile) -> Decimal:
    if tax_profile.corporate_type == "corporation":
        return bracket_rate(taxable_amount, CORPORATE_BRACKETS)
    return income_tax_rate(taxable_amount)


class TaxCalculator:
    def calculate(
        self,
        gross_amount: Decimal,
        fees: FeeBreakdown,
        user_type: UserType,
        tax_profile: TaxProfile,
    ) -> TaxBreakdown:
        taxable_amount = gross_amount - fees.total
        # Fees above gross leave nothing to tax; the negative net is reported as is.
        base = max(taxable_amount, Decimal("0"))
        items: list[LineItem] = []
        vat = income_tax = business_tax = Decimal("0")
        withholding_tax = Decimal("0")

        if user_type == UserType.BUSINESS and tax_profile.vat_registered:
            vat = quantize_amount(base * VAT_RATE)
            items.append(LineItem(type=TaxType.VAT.value, rate=VAT_RATE, amount=vat, description="Value added tax"))

        if user_type == UserType.INFLUENCER:
            rate = income_tax_rate(taxable_amount)
            income_tax = quantize_amount(base * rate)
            items.append(
                LineItem(
                    type=TaxType.INCOME_TAX.value,
                    rate=rate,
                    amount=income_tax,
                    description="Income tax (withheld)",
                )
            )
        elif user_type == UserType.BUSINESS:
            rate = business_tax_rate(taxable_amount, tax_profile)
            business_tax = quantize_amount(base * rate)
            items.append(
                LineItem(type=TaxType.BUSINESS_TAX.value, rate=rate, amount=business_tax, description="Business income tax")
            )

        return TaxBreakdown(
            taxable_amount=taxable_amount,
            vat=vat,
            income_tax=income_tax,
            business_tax=business_tax,
            withholding_tax=withholding_tax,
            total=vat + income_tax + business_tax + withholding_tax,
            items=items,
        )
