from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, TypeVar

from payoutledger.errors import CollaboratorTimeoutError

T = TypeVar("T")


class TimeoutGuard:
    """Bounds a blocking collaborator call.

    Each call runs on its own short-lived worker so a hung call never holds a
    slot another call needs. The hung worker is abandoned, not killed.
    """

    def __init__(self, timeouts: dict[str, float | None] | None = None) -> None:
        self.timeouts = dict(timeouts or {})

    def call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        timeout = self.timeouts.get(operation)
        if timeout is None:
            return fn(*args, **kwargs)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"payoutledger-{operation}")
        try:
            future = executor.submit(fn, *args, **kwargs)
            try:
                return future.result(timeout=timeout)
            except FutureTimeoutError as exc:
                future.cancel()
                raise CollaboratorTimeoutError(operation, timeout) from exc
        finally:
            executor.shutdown(wait=False)
