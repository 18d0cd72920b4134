from .repositories import (
    AuditRepository,
    DisputeRepository,
    RetryJobRepository,
    ScheduleRepository,
    SettlementRepository,
    StorageBackend,
    get_storage_backend,
    reset_memory_backend,
)

__all__ = [
    "AuditRepository",
    "DisputeRepository",
    "RetryJobRepository",
    "ScheduleRepository",
    "SettlementRepository",
    "StorageBackend",
    "get_storage_backend",
    "reset_memory_backend",
]
