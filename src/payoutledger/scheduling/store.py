from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from payoutledger.audit.lineage import AuditStore
from payoutledger.bus.publisher import EventPublisher
from payoutledger.db.repositories import ScheduleRepository
from payoutledger.errors import NotFoundError
from payoutledger.models.events import SettlementEventType
from payoutledger.models.settlement import SettlementPeriod, SettlementSchedule, utc_now
from payoutledger.scheduling.schedule_dates import calculate_next_schedule_date

logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = {"period", "day_of_week", "day_of_month", "auto_process", "minimum_amount", "enabled", "timezone"}


def _next_run(schedule: SettlementSchedule, now: datetime) -> datetime:
    return calculate_next_schedule_date(
        schedule.period,
        schedule.day_of_week,
        schedule.day_of_month,
        now,
        schedule.timezone,
    )


def _validate_timezone(name: str) -> None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone '{name}'") from exc


class ScheduleStore:
    def __init__(
        self,
        publisher: EventPublisher,
        repository: ScheduleRepository | None = None,
        audit_store: AuditStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.publisher = publisher
        self.repository = repository or ScheduleRepository()
        self.audit_store = audit_store
        self.clock = clock or utc_now

    def reset(self) -> None:
        self.repository.reset()

    def create_schedule(
        self,
        user_id: str,
        period: SettlementPeriod | str = SettlementPeriod.MONTHLY,
        day_of_week: int = 1,
        day_of_month: int = 1,
        auto_process: bool = True,
        minimum_amount: Decimal = Decimal("10000"),
        timezone: str = "Asia/Seoul",
        metadata: dict[str, Any] | None = None,
    ) -> SettlementSchedule:
        period = SettlementPeriod(period)
        if period == SettlementPeriod.CUSTOM:
            raise ValueError("Custom periods cannot be scheduled")
        _validate_timezone(timezone)
        now = self.clock()
        next_scheduled = calculate_next_schedule_date(period, day_of_week, day_of_month, now, timezone)
        schedule = SettlementSchedule(
            user_id=user_id,
            period=period,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
            auto_process=auto_process,
            minimum_amount=minimum_amount,
            timezone=timezone,
            next_scheduled=next_scheduled,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        if self.repository.get(user_id):
            logger.info("Replacing existing settlement schedule for user %s", user_id)
        self.repository.upsert(schedule.model_dump(mode="json"))
        self._audit("schedule_created", schedule, {"next_scheduled": next_scheduled.isoformat()})
        logger.info("Settlement schedule created for user %s, next run %s", user_id, next_scheduled.isoformat())
        self.publisher.publish(
            SettlementEventType.SCHEDULE_CREATED,
            user_id,
            {"schedule": schedule.model_dump(mode="json")},
        )
        return schedule

    def update_schedule(self, user_id: str, **changes: Any) -> SettlementSchedule:
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown schedule fields: {', '.join(sorted(unknown))}")
        current = self.get_schedule(user_id)
        merged = SettlementSchedule.model_validate({**current.model_dump(), **changes})
        if merged.period == SettlementPeriod.CUSTOM:
            raise ValueError("Custom periods cannot be scheduled")
        _validate_timezone(merged.timezone)
        now = self.clock()
        values = {
            **{key: merged.model_dump(mode="json")[key] for key in changes},
            "next_scheduled": _next_run(merged, now).isoformat(),
            "updated_at": now.isoformat(),
        }
        row = self.repository.update(user_id, values)
        if row is None:
            raise NotFoundError("Schedule", user_id)
        schedule = SettlementSchedule.model_validate(row)
        self._audit("schedule_updated", schedule, {"changes": sorted(changes)})
        return schedule

    def get_schedule(self, user_id: str) -> SettlementSchedule:
        row = self.repository.get(user_id)
        if not row:
            raise NotFoundError("Schedule", user_id)
        return SettlementSchedule.model_validate(row)

    def list_schedules(self) -> list[SettlementSchedule]:
        return [SettlementSchedule.model_validate(row) for row in self.repository.list_all()]

    def due_schedules(self, now: datetime) -> list[SettlementSchedule]:
        return [SettlementSchedule.model_validate(row) for row in self.repository.list_due(now)]

    def record_run(self, user_id: str, ran_at: datetime) -> SettlementSchedule:
        """Stamp ``last_processed`` and move ``next_scheduled`` forward from ``ran_at``."""
        schedule = self.get_schedule(user_id)
        row = self.repository.update(
            user_id,
            {
                "last_processed": ran_at.isoformat(),
                "next_scheduled": _next_run(schedule, ran_at).isoformat(),
                "updated_at": self.clock().isoformat(),
            },
        )
        if row is None:
            raise NotFoundError("Schedule", user_id)
        return SettlementSchedule.model_validate(row)

    def count(self) -> int:
        return len(self.repository.list_all())

    def _audit(self, action: str, schedule: SettlementSchedule, detail: dict[str, Any]) -> None:
        if self.audit_store:
            self.audit_store.log(
                action=action,
                component="schedule_store",
                user_id=schedule.user_id,
                output_reference=schedule.id,
                detail=detail,
            )
