from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from payoutledger.db.repositories import RetryJobRepository
from payoutledger.models.settlement import ensure_utc, new_id


class RetryJobStatus(str, Enum):
    SCHEDULED = "scheduled"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass
class RetryJob:
    id: str
    settlement_id: str
    attempt: int
    run_at: datetime
    status: RetryJobStatus


def _to_job(row: dict[str, Any]) -> RetryJob:
    run_at = row["run_at"]
    if isinstance(run_at, str):
        run_at = datetime.fromisoformat(run_at.replace("Z", "+00:00"))
    return RetryJob(
        id=row["id"],
        settlement_id=row["settlement_id"],
        attempt=int(row["attempt"]),
        run_at=ensure_utc(run_at),
        status=RetryJobStatus(row["status"]),
    )


class RetryQueue:
    """Delayed payout retries stored in the repository so they survive restarts."""

    def __init__(self, repository: RetryJobRepository | None = None, base_delay_seconds: float = 60.0) -> None:
        self.repository = repository or RetryJobRepository()
        self.base_delay_seconds = base_delay_seconds

    def reset(self) -> None:
        self.repository.reset()

    def delay_for(self, retry_count: int) -> timedelta:
        # Linear: 60s after the first failure, 120s after the second.
        return timedelta(seconds=self.base_delay_seconds * retry_count)

    def schedule(self, settlement_id: str, retry_count: int, now: datetime) -> RetryJob:
        row = {
            "id": new_id("rty"),
            "settlement_id": settlement_id,
            "attempt": retry_count + 1,
            "run_at": (ensure_utc(now) + self.delay_for(retry_count)).isoformat(),
            "status": RetryJobStatus.SCHEDULED.value,
        }
        return _to_job(self.repository.insert(row))

    def due(self, now: datetime) -> list[RetryJob]:
        rows = self.repository.get_due(ensure_utc(now), RetryJobStatus.SCHEDULED.value)
        return [_to_job(row) for row in rows]

    def pending_for(self, settlement_id: str) -> list[RetryJob]:
        rows = self.repository.list_by_settlement(settlement_id, status=RetryJobStatus.SCHEDULED.value)
        return [_to_job(row) for row in rows]

    def complete(self, job_id: str) -> None:
        self.repository.update(job_id, {"status": RetryJobStatus.DONE.value})

    def cancel(self, job_id: str) -> None:
        self.repository.update(job_id, {"status": RetryJobStatus.CANCELLED.value})

    def cancel_for(self, settlement_id: str) -> int:
        jobs = self.pending_for(settlement_id)
        for job in jobs:
            self.cancel(job.id)
        return len(jobs)

    def pending_count(self) -> int:
        return self.repository.count(RetryJobStatus.SCHEDULED.value)
