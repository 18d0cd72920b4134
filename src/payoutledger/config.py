from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default).strip()
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be a decimal number, got '{raw}'") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got '{raw}'") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got '{raw}'") from exc


@dataclass(frozen=True)
class FeeStructure:
    platform_fee_rate: Decimal = Decimal("0.15")
    processing_fee_rate: Decimal = Decimal("0.029")
    withdrawal_fee: Decimal = Decimal("1000")
    international_fee_rate: Decimal = Decimal("0.01")

    @classmethod
    def from_env(cls) -> "FeeStructure":
        return cls(
            platform_fee_rate=_env_decimal("PAYOUTLEDGER_PLATFORM_FEE_RATE", "0.15"),
            processing_fee_rate=_env_decimal("PAYOUTLEDGER_PROCESSING_FEE_RATE", "0.029"),
            withdrawal_fee=_env_decimal("PAYOUTLEDGER_WITHDRAWAL_FEE", "1000"),
            international_fee_rate=_env_decimal("PAYOUTLEDGER_INTERNATIONAL_FEE_RATE", "0.01"),
        )


@dataclass(frozen=True)
class EngineSettings:
    max_retries: int = 3
    retry_base_delay_seconds: float = 60.0
    ledger_timeout_seconds: float | None = 10.0
    payout_timeout_seconds: float | None = 30.0
    profile_timeout_seconds: float | None = 5.0
    scheduler_workers: int = 4
    scheduler_tick_seconds: float = 3600.0
    retry_poll_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "EngineSettings":
        settings = cls(
            max_retries=_env_int("PAYOUTLEDGER_MAX_RETRIES", 3),
            retry_base_delay_seconds=_env_float("PAYOUTLEDGER_RETRY_BASE_DELAY_SECONDS", 60.0),
            ledger_timeout_seconds=_env_float("PAYOUTLEDGER_LEDGER_TIMEOUT_SECONDS", 10.0),
            payout_timeout_seconds=_env_float("PAYOUTLEDGER_PAYOUT_TIMEOUT_SECONDS", 30.0),
            profile_timeout_seconds=_env_float("PAYOUTLEDGER_PROFILE_TIMEOUT_SECONDS", 5.0),
            scheduler_workers=_env_int("PAYOUTLEDGER_SCHEDULER_WORKERS", 4),
            scheduler_tick_seconds=_env_float("PAYOUTLEDGER_SCHEDULER_TICK_SECONDS", 3600.0),
            retry_poll_seconds=_env_float("PAYOUTLEDGER_RETRY_POLL_SECONDS", 30.0),
        )
        if settings.max_retries < 1:
            raise ValueError("PAYOUTLEDGER_MAX_RETRIES must be at least 1")
        if settings.scheduler_workers < 1:
            raise ValueError("PAYOUTLEDGER_SCHEDULER_WORKERS must be at least 1")
        return settings


def log_level() -> str:
    return os.getenv("PAYOUTLEDGER_LOG_LEVEL", "INFO").strip().upper()


def scheduler_enabled() -> bool:
    return os.getenv("PAYOUTLEDGER_SCHEDULER_ENABLED", "false").strip().lower() in {"1", "true", "yes"}
