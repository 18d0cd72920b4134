from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

SETTLEMENT_CURRENCY = "KRW"
KRW_QUANTUM = Decimal("1")


def quantize_amount(value: Decimal) -> Decimal:
    """Round to the KRW minor unit (whole won)."""
    return value.quantize(KRW_QUANTUM, rounding=ROUND_HALF_UP)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class SettlementPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class UserType(str, Enum):
    BUSINESS = "business"
    INFLUENCER = "influencer"


class FeeType(str, Enum):
    PLATFORM = "platform_fee"
    PROCESSING = "processing_fee"
    WITHDRAWAL = "withdrawal_fee"
    INTERNATIONAL = "international_fee"


class TaxType(str, Enum):
    VAT = "vat"
    INCOME_TAX = "income_tax"
    BUSINESS_TAX = "business_tax"
    WITHHOLDING_TAX = "withholding_tax"


class DisputeStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class LineItem(BaseModel):
    type: str
    amount: Decimal
    rate: Decimal | None = None
    description: str = ""


def _sum_items(items: list[LineItem]) -> Decimal:
    return sum((item.amount for item in items), Decimal("0"))


class FeeBreakdown(BaseModel):
    platform_fee: Decimal = Decimal("0")
    processing_fee: Decimal = Decimal("0")
    withdrawal_fee: Decimal = Decimal("0")
    international_fee: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    items: list[LineItem] = Field(default_factory=list)

    @model_validator(mode="after")
    def _total_matches_items(self) -> "FeeBreakdown":
        named = self.platform_fee + self.processing_fee + self.withdrawal_fee + self.international_fee
        if self.total != named or self.total != _sum_items(self.items):
            raise ValueError("fee total must equal the sum of its line items")
        return self


class TaxBreakdown(BaseModel):
    taxable_amount: Decimal = Decimal("0")
    vat: Decimal = Decimal("0")
    income_tax: Decimal = Decimal("0")
    business_tax: Decimal = Decimal("0")
    withholding_tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    items: list[LineItem] = Field(default_factory=list)

    @model_validator(mode="after")
    def _total_matches_items(self) -> "TaxBreakdown":
        named = self.vat + self.income_tax + self.business_tax + self.withholding_tax
        if self.total != named or self.total != _sum_items(self.items):
            raise ValueError("tax total must equal the sum of its line items")
        return self


class Transaction(BaseModel):
    id: str
    amount: Decimal
    currency: str = SETTLEMENT_CURRENCY
    occurred_at: datetime = Field(default_factory=utc_now)
    user_id: str | None = None
    campaign_id: str | None = None
    type: str = "campaign_payment"
    settlement_id: str | None = None

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class TaxProfile(BaseModel):
    vat_registered: bool = False
    corporate_type: str = "individual"
    tax_year: int | None = None


class BankAccount(BaseModel):
    bank_name: str
    account_number: str
    account_holder: str


class PayoutResult(BaseModel):
    success: bool
    payment_id: str | None = None
    transaction_id: str | None = None
    error: str | None = None


class PeriodWindow(BaseModel):
    type: SettlementPeriod
    start_date: datetime
    end_date: datetime

    @field_validator("start_date", "end_date")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _ordered(self) -> "PeriodWindow":
        if self.start_date > self.end_date:
            raise ValueError("period start_date must not be after end_date")
        return self


class ProcessingInfo(BaseModel):
    initiated_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    retry_count: int = 0
    error_message: str | None = None


class SettlementAudit(BaseModel):
    created_by: str = "system"
    approved_by: str | None = None
    reviewed_by: str | None = None
    notes: list[str] = Field(default_factory=list)


class Settlement(BaseModel):
    id: str = Field(default_factory=lambda: new_id("sttl"))
    user_id: str
    user_type: UserType
    period: PeriodWindow
    transaction_ids: list[str]
    currency: str = SETTLEMENT_CURRENCY
    gross_amount: Decimal
    fees: FeeBreakdown
    taxes: TaxBreakdown
    net_amount: Decimal
    status: SettlementStatus = SettlementStatus.PENDING
    processing: ProcessingInfo = Field(default_factory=ProcessingInfo)
    audit: SettlementAudit = Field(default_factory=SettlementAudit)
    bank_account: BankAccount | None = None
    payment_method: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_amounts(self) -> "Settlement":
        if not self.transaction_ids:
            raise ValueError("a settlement needs at least one transaction")
        if self.net_amount != self.gross_amount - self.fees.total - self.taxes.total:
            raise ValueError("net_amount must equal gross_amount - fees.total - taxes.total")
        return self


class SettlementSchedule(BaseModel):
    id: str = Field(default_factory=lambda: new_id("sch"))
    user_id: str
    period: SettlementPeriod = SettlementPeriod.MONTHLY
    day_of_week: int = Field(default=1, ge=0, le=6)
    day_of_month: int = Field(default=1, ge=1, le=31)
    auto_process: bool = True
    minimum_amount: Decimal = Decimal("10000")
    enabled: bool = True
    timezone: str = "Asia/Seoul"
    next_scheduled: datetime
    last_processed: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Dispute(BaseModel):
    id: str = Field(default_factory=lambda: new_id("disp"))
    settlement_id: str
    reason: str
    description: str = ""
    evidence: list[str] = Field(default_factory=list)
    requested_amount: Decimal | None = None
    status: DisputeStatus = DisputeStatus.OPEN
    created_at: datetime = Field(default_factory=utc_now)
    resolved_at: datetime | None = None
    resolution: str | None = None
