import time
from decimal import Decimal

import pytest

from payoutledger.collaborators.timeouts import TimeoutGuard
from payoutledger.config import EngineSettings, FeeStructure, log_level, scheduler_enabled
from payoutledger.errors import CollaboratorTimeoutError


def test_fee_structure_from_env(monkeypatch) -> None:
    monkeypatch.setenv("PAYOUTLEDGER_PLATFORM_FEE_RATE", "0.12")
    monkeypatch.setenv("PAYOUTLEDGER_WITHDRAWAL_FEE", "500")

    structure = FeeStructure.from_env()

    assert structure.platform_fee_rate == Decimal("0.12")
    assert structure.processing_fee_rate == Decimal("0.029")
    assert structure.withdrawal_fee == Decimal("500")


def test_engine_settings_from_env(monkeypatch) -> None:
    monkeypatch.setenv("PAYOUTLEDGER_MAX_RETRIES", "5")
    monkeypatch.setenv("PAYOUTLEDGER_PAYOUT_TIMEOUT_SECONDS", "12.5")

    settings = EngineSettings.from_env()

    assert settings.max_retries == 5
    assert settings.payout_timeout_seconds == 12.5
    assert settings.retry_base_delay_seconds == 60.0


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PAYOUTLEDGER_MAX_RETRIES", "0"),
        ("PAYOUTLEDGER_MAX_RETRIES", "three"),
        ("PAYOUTLEDGER_SCHEDULER_WORKERS", "0"),
        ("PAYOUTLEDGER_LEDGER_TIMEOUT_SECONDS", "soon"),
    ],
)
def test_invalid_settings_fail_fast(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        EngineSettings.from_env()


def test_invalid_fee_rate(monkeypatch) -> None:
    monkeypatch.setenv("PAYOUTLEDGER_PROCESSING_FEE_RATE", "2.9%")
    with pytest.raises(ValueError):
        FeeStructure.from_env()


def test_logging_and_scheduler_flags(monkeypatch) -> None:
    monkeypatch.setenv("PAYOUTLEDGER_LOG_LEVEL", "debug")
    monkeypatch.setenv("PAYOUTLEDGER_SCHEDULER_ENABLED", "true")
    assert log_level() == "DEBUG"
    assert scheduler_enabled() is True


def test_timeout_guard() -> None:
    guard = TimeoutGuard({"ledger": 0.05, "profile": None})

    assert guard.call("profile", lambda value: value * 2, 21) == 42
    assert guard.call("ledger", sum, [1, 2, 3]) == 6
    with pytest.raises(CollaboratorTimeoutError, match="ledger timed out"):
        guard.call("ledger", time.sleep, 0.5)
