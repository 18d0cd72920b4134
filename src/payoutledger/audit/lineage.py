from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from payoutledger.db.repositories import AuditRepository


@dataclass
class AuditRecord:
    id: str
    timestamp: str
    action: str
    component: str
    user_id: str | None
    output_reference: str | None
    detail: dict[str, Any]


class AuditStore:
    """Append-only trail of engine actions, keyed by user and by settlement/schedule id."""

    def __init__(self, repository: AuditRepository | None = None) -> None:
        self.repository = repository or AuditRepository()

    def reset(self) -> None:
        self.repository.reset()

    def log(
        self,
        action: str,
        component: str,
        user_id: str | None = None,
        output_reference: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> AuditRecord:
        row = {
            "id": str(uuid4()),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "component": component,
            "user_id": user_id,
            "output_reference": output_reference,
            "detail": detail or {},
        }
        stored = self.repository.insert(row)
        return AuditRecord(**stored)

    def get_lineage(self, output_reference: str) -> list[AuditRecord]:
        rows = self.repository.get_by_output_reference(output_reference)
        return [AuditRecord(**row) for row in rows]

    def get_history(self, user_id: str) -> list[AuditRecord]:
        rows = self.repository.get_by_user(user_id)
        return [AuditRecord(**row) for row in rows]
