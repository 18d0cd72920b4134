from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from threading import Event, Lock, Thread

from payoutledger.config import EngineSettings
from payoutledger.models.settlement import SettlementSchedule, SettlementStatus
from payoutledger.scheduling.schedule_dates import calculate_period_start_date
from payoutledger.scheduling.store import ScheduleStore
from payoutledger.settlement.engine import SettlementEngine

logger = logging.getLogger(__name__)


class RunOutcome(str, Enum):
    SETTLED = "settled"
    CREATED = "created"
    PAYOUT_FAILED = "payout_failed"
    SKIPPED_NO_TRANSACTIONS = "skipped_no_transactions"
    SKIPPED_BELOW_MINIMUM = "skipped_below_minimum"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    ERROR = "error"


@dataclass
class ScheduleRunResult:
    user_id: str
    outcome: RunOutcome
    settlement_id: str | None = None
    error_message: str | None = None


@dataclass
class TickResult:
    ran_at: datetime
    runs: list[ScheduleRunResult] = field(default_factory=list)
    retried_settlement_ids: list[str] = field(default_factory=list)

    def outcomes(self) -> dict[str, RunOutcome]:
        return {run.user_id: run.outcome for run in self.runs}


class SettlementScheduler:
    """Runs due schedules and queued payout retries."""

    def __init__(
        self,
        engine: SettlementEngine,
        schedules: ScheduleStore,
        settings: EngineSettings | None = None,
    ) -> None:
        self.engine = engine
        self.schedules = schedules
        self.settings = settings or engine.settings
        self._in_flight: set[str] = set()
        self._in_flight_lock = Lock()
        self._stop = Event()
        self._thread: Thread | None = None

    def tick(self, now: datetime | None = None) -> TickResult:
        now = now or self.engine.clock()
        result = TickResult(ran_at=now)
        due = self.schedules.due_schedules(now)
        if due:
            logger.info("Scheduler tick at %s: %d schedule(s) due", now.isoformat(), len(due))
            with ThreadPoolExecutor(
                max_workers=min(self.settings.scheduler_workers, len(due)),
                thread_name_prefix="payoutledger-schedule",
            ) as pool:
                futures = [pool.submit(self._run_guarded, schedule, now) for schedule in due]
                result.runs = [future.result() for future in futures]
        result.retried_settlement_ids = self.run_retries(now)
        return result

    def run_retries(self, now: datetime | None = None) -> list[str]:
        self.engine.mark_unsettled_ledger()
        return [settlement.id for settlement in self.engine.run_due_retries(now)]

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="payoutledger-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        last_scan: datetime | None = None
        while not self._stop.is_set():
            now = self.engine.clock()
            try:
                if last_scan is None or (now - last_scan).total_seconds() >= self.settings.scheduler_tick_seconds:
                    self.tick(now)
                    last_scan = now
                else:
                    self.run_retries(now)
            except Exception:
                logger.exception("Error in settlement scheduler")
            self._stop.wait(self.settings.retry_poll_seconds)

    def _run_guarded(self, schedule: SettlementSchedule, now: datetime) -> ScheduleRunResult:
        with self._in_flight_lock:
            if schedule.user_id in self._in_flight:
                return ScheduleRunResult(schedule.user_id, RunOutcome.SKIPPED_IN_FLIGHT)
            self._in_flight.add(schedule.user_id)
        try:
            return self._run_schedule(schedule, now)
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(schedule.user_id)

    def _run_schedule(self, schedule: SettlementSchedule, now: datetime) -> ScheduleRunResult:
        user_id = schedule.user_id
        settlement_id: str | None = None
        try:
            logger.info("Executing scheduled settlement for user %s", user_id)
            start_date = calculate_period_start_date(schedule.period, now, schedule.day_of_month, schedule.timezone)
            transactions = self.engine.guard.call(
                "ledger", self.engine.ledger.collect_transactions, user_id, start_date, now
            )
            transactions = self.engine.exclude_paid(user_id, transactions)
            if not transactions:
                logger.info("No transactions for user %s between %s and %s", user_id, start_date.isoformat(), now.isoformat())
                return ScheduleRunResult(user_id, RunOutcome.SKIPPED_NO_TRANSACTIONS)

            total = sum((tx.amount for tx in transactions), Decimal("0"))
            if total < schedule.minimum_amount:
                logger.info("Total %s below minimum %s for user %s", total, schedule.minimum_amount, user_id)
                return ScheduleRunResult(user_id, RunOutcome.SKIPPED_BELOW_MINIMUM)

            user_type = self.engine.guard.call("profile", self.engine.profiles.get_user_type, user_id)
            settlement = self.engine.create_settlement(
                user_id=user_id,
                user_type=user_type,
                period=schedule.period,
                start_date=start_date,
                end_date=now,
                transactions=transactions,
                metadata={"scheduled": True, "schedule_id": schedule.id},
            )
            settlement_id = settlement.id
            if not schedule.auto_process:
                return ScheduleRunResult(user_id, RunOutcome.CREATED, settlement.id)

            settlement = self.engine.process_settlement(settlement.id)
            if settlement.status == SettlementStatus.COMPLETED:
                logger.info("Scheduled settlement completed for user %s: %s", user_id, settlement.id)
                return ScheduleRunResult(user_id, RunOutcome.SETTLED, settlement.id)
            return ScheduleRunResult(
                user_id,
                RunOutcome.PAYOUT_FAILED,
                settlement.id,
                settlement.processing.error_message,
            )
        except Exception as exc:
            logger.exception("Failed to execute scheduled settlement for user %s", user_id)
            return ScheduleRunResult(user_id, RunOutcome.ERROR, settlement_id, str(exc))
        finally:
            self._advance(user_id, now)

    def _advance(self, user_id: str, now: datetime) -> None:
        try:
            self.schedules.record_run(user_id, now)
        except Exception:
            logger.exception("Failed to advance settlement schedule for user %s", user_id)
