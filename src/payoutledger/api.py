from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterator

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from payoutledger.config import log_level, scheduler_enabled
from payoutledger.errors import (
    CollaboratorTimeoutError,
    InvalidStateError,
    MissingAccountError,
    NoTransactionsError,
    NotFoundError,
    SettlementError,
)
from payoutledger.models.settlement import (
    BankAccount,
    SettlementPeriod,
    TaxProfile,
    Transaction,
    UserType,
)
from payoutledger.runtime import PayoutLedgerRuntime

logging.basicConfig(
    level=log_level(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

runtime = PayoutLedgerRuntime.from_env()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if scheduler_enabled():
        logger.info("Starting settlement scheduler")
        runtime.scheduler.start()
    yield
    runtime.shutdown()


app = FastAPI(title="PayoutLedger API", version="0.1.0", lifespan=lifespan)


def _cors_origins() -> list[str]:
    raw = os.getenv("PAYOUTLEDGER_CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")
    parsed = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if "*" in parsed:
        return ["*"]
    return parsed


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (NoTransactionsError, MissingAccountError, ValueError) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except CollaboratorTimeoutError as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc
    except SettlementError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


class RegisterUserRequest(BaseModel):
    user_type: UserType
    tax_profile: TaxProfile | None = None
    bank_account: BankAccount | None = None
    info: dict[str, Any] = Field(default_factory=dict)


class CreateSettlementRequest(BaseModel):
    user_id: str
    user_type: UserType
    period: SettlementPeriod = SettlementPeriod.CUSTOM
    start_date: datetime
    end_date: datetime
    transactions: list[Transaction] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str = "system"


class ProcessSettlementRequest(BaseModel):
    bank_account: BankAccount | None = None
    payment_method: str | None = None


class DisputeRequest(BaseModel):
    reason: str
    description: str = ""
    evidence: list[str] = Field(default_factory=list)
    requested_amount: Decimal | None = None


class ScheduleRequest(BaseModel):
    period: SettlementPeriod = SettlementPeriod.MONTHLY
    day_of_week: int = 1
    day_of_month: int = 1
    auto_process: bool = True
    minimum_amount: Decimal = Decimal("10000")
    timezone: str = "Asia/Seoul"
    metadata: dict[str, Any] = Field(default_factory=dict)


class ScheduleUpdateRequest(BaseModel):
    period: SettlementPeriod | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    auto_process: bool | None = None
    minimum_amount: Decimal | None = None
    enabled: bool | None = None
    timezone: str | None = None


class TickRequest(BaseModel):
    now: datetime | None = None


class CampaignEventRequest(BaseModel):
    campaign_id: str
    influencer_id: str | None = None
    business_id: str | None = None


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "payoutledger-api", "status": "ok"}


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/health")
def health_check() -> dict[str, Any]:
    return runtime.health_check()


@app.put("/api/users/{user_id}")
def register_user(user_id: str, payload: RegisterUserRequest) -> dict[str, Any]:
    return runtime.register_user(
        user_id,
        payload.user_type,
        tax_profile=payload.tax_profile,
        bank_account=payload.bank_account,
        info=payload.info,
    )


@app.post("/api/ledger/transactions", status_code=201)
def record_transaction(payload: Transaction) -> dict[str, Any]:
    return runtime.record_transaction(payload)


@app.get("/api/settlements")
def get_settlements(status: str | None = None) -> list[dict[str, Any]]:
    return runtime.settlements(status=status)


@app.post("/api/settlements", status_code=201)
def create_settlement(payload: CreateSettlementRequest) -> dict[str, Any]:
    with _domain_errors():
        return runtime.create_settlement(
            user_id=payload.user_id,
            user_type=payload.user_type,
            period=payload.period,
            start_date=payload.start_date,
            end_date=payload.end_date,
            transactions=payload.transactions,
            metadata=payload.metadata,
            created_by=payload.created_by,
        )


@app.get("/api/settlements/{settlement_id}")
def get_settlement(settlement_id: str) -> dict[str, Any]:
    with _domain_errors():
        return runtime.settlement(settlement_id)


@app.post("/api/settlements/{settlement_id}/process")
def process_settlement(settlement_id: str, payload: ProcessSettlementRequest | None = None) -> dict[str, Any]:
    payload = payload or ProcessSettlementRequest()
    with _domain_errors():
        return runtime.process_settlement(settlement_id, payload.bank_account, payload.payment_method)


@app.get("/api/settlements/{settlement_id}/saga")
def get_settlement_saga(settlement_id: str) -> list[dict[str, Any]]:
    with _domain_errors():
        return runtime.settlement_saga(settlement_id)


@app.get("/api/settlements/{settlement_id}/audit")
def get_settlement_audit(settlement_id: str) -> list[dict[str, Any]]:
    with _domain_errors():
        return runtime.settlement_audit(settlement_id)


@app.get("/api/settlements/{settlement_id}/report")
def get_settlement_report(settlement_id: str, format: str = "json") -> dict[str, Any]:
    with _domain_errors():
        return runtime.settlement_report(settlement_id, format)


@app.post("/api/settlements/{settlement_id}/disputes", status_code=201)
def create_dispute(settlement_id: str, payload: DisputeRequest) -> dict[str, Any]:
    with _domain_errors():
        return runtime.create_dispute(
            settlement_id,
            payload.reason,
            payload.description,
            payload.evidence,
            payload.requested_amount,
        )


@app.get("/api/settlements/{settlement_id}/disputes")
def get_settlement_disputes(settlement_id: str) -> list[dict[str, Any]]:
    with _domain_errors():
        return runtime.settlement_disputes(settlement_id)


@app.get("/api/disputes/{dispute_id}")
def get_dispute(dispute_id: str) -> dict[str, Any]:
    with _domain_errors():
        return runtime.dispute(dispute_id)


@app.get("/api/users/{user_id}/settlements")
def get_user_settlements(
    user_id: str,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    with _domain_errors():
        return runtime.user_settlements(user_id, status=status, limit=limit, offset=offset)


@app.get("/api/users/{user_id}/settlements/stats")
def get_settlement_stats(user_id: str) -> dict[str, Any]:
    return runtime.settlement_stats(user_id)


@app.put("/api/users/{user_id}/schedule", status_code=201)
def create_schedule(user_id: str, payload: ScheduleRequest) -> dict[str, Any]:
    with _domain_errors():
        return runtime.create_schedule(user_id, **payload.model_dump())


@app.get("/api/users/{user_id}/schedule")
def get_schedule(user_id: str) -> dict[str, Any]:
    with _domain_errors():
        return runtime.schedule(user_id)


@app.patch("/api/users/{user_id}/schedule")
def update_schedule(user_id: str, payload: ScheduleUpdateRequest) -> dict[str, Any]:
    with _domain_errors():
        return runtime.update_schedule(user_id, **payload.model_dump(exclude_none=True))


@app.get("/api/schedules")
def get_schedules() -> list[dict[str, Any]]:
    return runtime.all_schedules()


@app.post("/api/scheduler/tick")
def run_scheduler_tick(payload: TickRequest | None = None) -> dict[str, Any]:
    return runtime.run_scheduler_tick(payload.now if payload else None)


@app.post("/api/campaign-events/{event_name}")
def handle_campaign_event(event_name: str, payload: CampaignEventRequest) -> list[dict[str, Any]]:
    with _domain_errors():
        return runtime.handle_campaign_event(event_name, payload.model_dump())


@app.get("/api/events")
def get_events() -> dict[str, Any]:
    return runtime.events()
