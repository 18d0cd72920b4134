from __future__ import annotations

from typing import Iterable

from payoutledger.models.events import SettlementEvent


class FanoutBus:
    def __init__(self, buses: Iterable[object]) -> None:
        self.buses = list(buses)

    def publish(self, event: SettlementEvent) -> None:
        first_error: Exception | None = None
        for bus in self.buses:
            try:
                bus.publish(event)
            except Exception as exc:
                first_error = first_error or exc
        if first_error is not None:
            raise first_error

    def close(self) -> None:
        for bus in self.buses:
            close = getattr(bus, "close", None)
            if callable(close):
                close()
