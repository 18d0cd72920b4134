from .base import Ledger, PayoutGateway, ProfileDirectory
from .in_memory import InMemoryLedger, InMemoryProfileDirectory, SimulatedPayoutGateway
from .timeouts import TimeoutGuard

__all__ = [
    "InMemoryLedger",
    "InMemoryProfileDirectory",
    "Ledger",
    "PayoutGateway",
    "ProfileDirectory",
    "SimulatedPayoutGateway",
    "TimeoutGuard",
]
