from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import RLock
from typing import Any
from uuid import uuid4

from payoutledger.db.supabase_client import get_client


class StorageBackend(str, Enum):
    MEMORY = "memory"
    SUPABASE = "supabase"


def get_storage_backend() -> StorageBackend:
    raw = os.getenv("PAYOUTLEDGER_STORAGE_BACKEND", StorageBackend.MEMORY.value).strip().lower()
    if raw == StorageBackend.SUPABASE.value:
        return StorageBackend.SUPABASE
    return StorageBackend.MEMORY


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_datetime(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class _MemoryState:
    settlements: dict[str, dict[str, Any]] = field(default_factory=dict)
    settlement_saga_log: list[dict[str, Any]] = field(default_factory=list)
    schedules: dict[str, dict[str, Any]] = field(default_factory=dict)
    disputes: dict[str, dict[str, Any]] = field(default_factory=dict)
    retry_jobs: dict[str, dict[str, Any]] = field(default_factory=dict)
    audit_log: list[dict[str, Any]] = field(default_factory=list)
    lock: RLock = field(default_factory=RLock)

    def reset(self) -> None:
        with self.lock:
            self.settlements.clear()
            self.settlement_saga_log.clear()
            self.schedules.clear()
            self.disputes.clear()
            self.retry_jobs.clear()
            self.audit_log.clear()


_MEMORY_STATE = _MemoryState()


class _BaseRepository:
    def __init__(self) -> None:
        self.backend = get_storage_backend()
        self.client = get_client() if self.backend == StorageBackend.SUPABASE else None


class SettlementRepository(_BaseRepository):
    def reset(self) -> None:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                _MEMORY_STATE.settlements.clear()
                _MEMORY_STATE.settlement_saga_log.clear()
            return
        self.client.table("settlement_saga_log").delete().neq("action", "").execute()
        self.client.table("settlements").delete().neq("id", "").execute()

    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                if row["id"] in _MEMORY_STATE.settlements:
                    raise ValueError(f"Duplicate settlement id {row['id']}")
                _MEMORY_STATE.settlements[row["id"]] = copy.deepcopy(row)
            return copy.deepcopy(row)
        response = self.client.table("settlements").insert(row).execute()
        return (response.data or [row])[0]

    def get(self, settlement_id: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                row = _MEMORY_STATE.settlements.get(settlement_id)
                return copy.deepcopy(row) if row else None
        response = self.client.table("settlements").select("*").eq("id", settlement_id).limit(1).execute()
        rows = response.data or []
        return rows[0] if rows else None

    def compare_and_set(
        self,
        settlement_id: str,
        expected_status: str,
        expected_version: int,
        values: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Apply ``values`` only if the stored row still has the expected status and version.

        Returns the updated row, or None when another writer got there first.
        """
        payload = {**values, "version": expected_version + 1, "updated_at": values.get("updated_at") or _now_iso()}
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                current = _MEMORY_STATE.settlements.get(settlement_id)
                if (
                    current is None
                    or current["status"] != expected_status
                    or int(current.get("version", 0)) != expected_version
                ):
                    return None
                current.update(copy.deepcopy(payload))
                return copy.deepcopy(current)
        response = (
            self.client.table("settlements")
            .update(payload)
            .eq("id", settlement_id)
            .eq("status", expected_status)
            .eq("version", expected_version)
            .execute()
        )
        rows = response.data or []
        return rows[0] if rows else None

    def list_all(self) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                return copy.deepcopy(list(_MEMORY_STATE.settlements.values()))
        response = self.client.table("settlements").select("*").execute()
        return response.data or []

    def list_by_user(self, user_id: str, status: str | None = None) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            rows = [row for row in self.list_all() if row["user_id"] == user_id]
        else:
            query = self.client.table("settlements").select("*").eq("user_id", user_id)
            if status:
                query = query.eq("status", status)
            rows = query.execute().data or []
        if status:
            rows = [row for row in rows if row["status"] == status]
        rows.sort(key=lambda row: _to_datetime(row["created_at"]), reverse=True)
        return rows

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for row in self.list_all():
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        return counts

    def insert_saga(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            if "id" not in row:
                row = {**row, "id": str(uuid4())}
            with _MEMORY_STATE.lock:
                _MEMORY_STATE.settlement_saga_log.append(row)
                _MEMORY_STATE.settlement_saga_log.sort(key=lambda item: item["timestamp"])
            return row
        response = self.client.table("settlement_saga_log").insert(row).execute()
        return (response.data or [row])[0]

    def get_saga_log(self, settlement_id: str) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                return [dict(row) for row in _MEMORY_STATE.settlement_saga_log if row["settlement_id"] == settlement_id]
        response = (
            self.client.table("settlement_saga_log")
            .select("*")
            .eq("settlement_id", settlement_id)
            .order("timestamp")
            .execute()
        )
        return response.data or []


class ScheduleRepository(_BaseRepository):
    def reset(self) -> None:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                _MEMORY_STATE.schedules.clear()
            return
        self.client.table("settlement_schedules").delete().neq("user_id", "").execute()

    def upsert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                _MEMORY_STATE.schedules[row["user_id"]] = copy.deepcopy(row)
            return copy.deepcopy(row)
        response = self.client.table("settlement_schedules").upsert(row, on_conflict="user_id").execute()
        return (response.data or [row])[0]

    def get(self, user_id: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                row = _MEMORY_STATE.schedules.get(user_id)
                return copy.deepcopy(row) if row else None
        response = self.client.table("settlement_schedules").select("*").eq("user_id", user_id).limit(1).execute()
        rows = response.data or []
        return rows[0] if rows else None

    def update(self, user_id: str, values: dict[str, Any]) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                row = _MEMORY_STATE.schedules.get(user_id)
                if row is None:
                    return None
                row.update(copy.deepcopy(values))
                return copy.deepcopy(row)
        response = self.client.table("settlement_schedules").update(values).eq("user_id", user_id).execute()
        rows = response.data or []
        return rows[0] if rows else None

    def list_all(self) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                return copy.deepcopy(list(_MEMORY_STATE.schedules.values()))
        response = self.client.table("settlement_schedules").select("*").execute()
        return response.data or []

    def list_due(self, now: datetime) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            rows = [row for row in self.list_all() if row["enabled"]]
        else:
            response = (
                self.client.table("settlement_schedules")
                .select("*")
                .eq("enabled", True)
                .lte("next_scheduled", now.isoformat())
                .execute()
            )
            rows = response.data or []
        return [row for row in rows if _to_datetime(row["next_scheduled"]) <= now]


class DisputeRepository(_BaseRepository):
    def reset(self) -> None:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                _MEMORY_STATE.disputes.clear()
            return
        self.client.table("settlement_disputes").delete().neq("id", "").execute()

    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                _MEMORY_STATE.disputes[row["id"]] = copy.deepcopy(row)
            return copy.deepcopy(row)
        response = self.client.table("settlement_disputes").insert(row).execute()
        return (response.data or [row])[0]

    def delete(self, dispute_id: str) -> None:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                _MEMORY_STATE.disputes.pop(dispute_id, None)
            return
        self.client.table("settlement_disputes").delete().eq("id", dispute_id).execute()

    def get(self, dispute_id: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                row = _MEMORY_STATE.disputes.get(dispute_id)
                return copy.deepcopy(row) if row else None
        response = self.client.table("settlement_disputes").select("*").eq("id", dispute_id).limit(1).execute()
        rows = response.data or []
        return rows[0] if rows else None

    def list_by_settlement(self, settlement_id: str) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                rows = [copy.deepcopy(row) for row in _MEMORY_STATE.disputes.values() if row["settlement_id"] == settlement_id]
        else:
            response = (
                self.client.table("settlement_disputes")
                .select("*")
                .eq("settlement_id", settlement_id)
                .execute()
            )
            rows = response.data or []
        rows.sort(key=lambda row: _to_datetime(row["created_at"]))
        return rows


class RetryJobRepository(_BaseRepository):
    def reset(self) -> None:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                _MEMORY_STATE.retry_jobs.clear()
            return
        self.client.table("settlement_retry_jobs").delete().neq("id", "").execute()

    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                _MEMORY_STATE.retry_jobs[row["id"]] = copy.deepcopy(row)
            return copy.deepcopy(row)
        response = self.client.table("settlement_retry_jobs").insert(row).execute()
        return (response.data or [row])[0]

    def update(self, job_id: str, values: dict[str, Any]) -> None:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                _MEMORY_STATE.retry_jobs[job_id].update(copy.deepcopy(values))
            return
        self.client.table("settlement_retry_jobs").update(values).eq("id", job_id).execute()

    def list_by_settlement(self, settlement_id: str, status: str | None = None) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                rows = [copy.deepcopy(row) for row in _MEMORY_STATE.retry_jobs.values() if row["settlement_id"] == settlement_id]
        else:
            response = (
                self.client.table("settlement_retry_jobs")
                .select("*")
                .eq("settlement_id", settlement_id)
                .execute()
            )
            rows = response.data or []
        if status:
            rows = [row for row in rows if row["status"] == status]
        rows.sort(key=lambda row: _to_datetime(row["run_at"]))
        return rows

    def get_due(self, now: datetime, status: str) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                rows = [copy.deepcopy(row) for row in _MEMORY_STATE.retry_jobs.values() if row["status"] == status]
        else:
            response = (
                self.client.table("settlement_retry_jobs")
                .select("*")
                .eq("status", status)
                .lte("run_at", now.isoformat())
                .execute()
            )
            rows = response.data or []
        rows = [row for row in rows if _to_datetime(row["run_at"]) <= now]
        rows.sort(key=lambda row: _to_datetime(row["run_at"]))
        return rows

    def count(self, status: str) -> int:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                return len([row for row in _MEMORY_STATE.retry_jobs.values() if row["status"] == status])
        response = self.client.table("settlement_retry_jobs").select("id").eq("status", status).execute()
        return len(response.data or [])


class AuditRepository(_BaseRepository):
    def reset(self) -> None:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                _MEMORY_STATE.audit_log.clear()
            return
        self.client.table("audit_log").delete().neq("action", "").execute()

    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            if "id" not in row:
                row = {**row, "id": str(uuid4())}
            with _MEMORY_STATE.lock:
                _MEMORY_STATE.audit_log.append(row)
                _MEMORY_STATE.audit_log.sort(key=lambda item: item["timestamp"])
            return row
        response = self.client.table("audit_log").insert(row).execute()
        return (response.data or [row])[0]

    def get_by_user(self, user_id: str) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                return [dict(row) for row in _MEMORY_STATE.audit_log if row.get("user_id") == user_id]
        response = (
            self.client.table("audit_log")
            .select("*")
            .eq("user_id", user_id)
            .order("timestamp")
            .execute()
        )
        return response.data or []

    def get_by_output_reference(self, output_reference: str) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            with _MEMORY_STATE.lock:
                return [dict(row) for row in _MEMORY_STATE.audit_log if row.get("output_reference") == output_reference]
        response = (
            self.client.table("audit_log")
            .select("*")
            .eq("output_reference", output_reference)
            .order("timestamp")
            .execute()
        )
        return response.data or []


def reset_memory_backend() -> None:
    _MEMORY_STATE.reset()
