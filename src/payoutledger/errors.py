from __future__ import annotations


class SettlementError(Exception):
    """Base class for settlement engine failures."""


class NoTransactionsError(SettlementError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"No transactions found for settlement period (user {user_id})")
        self.user_id = user_id


class NotFoundError(SettlementError, KeyError):
    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier

    def __str__(self) -> str:
        return str(self.args[0])


class InvalidStateError(SettlementError):
    def __init__(self, settlement_id: str, status: str, action: str) -> None:
        super().__init__(f"Cannot {action} settlement {settlement_id} in status '{status}'")
        self.settlement_id = settlement_id
        self.status = status
        self.action = action


class MissingAccountError(SettlementError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"Bank account not found for user {user_id}")
        self.user_id = user_id


class PayoutError(SettlementError):
    """Gateway-reported payout failure. Retryable."""


class CollaboratorTimeoutError(SettlementError):
    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation} timed out after {timeout:g}s")
        self.operation = operation
        self.timeout = timeout


class UnexpectedError(SettlementError):
    """Uncaught failure during processing, raised after the FAILED state is persisted."""


class UnsupportedReportFormat(SettlementError, ValueError):
    def __init__(self, fmt: str) -> None:
        super().__init__(f"Unsupported report format '{fmt}'. Use 'json' or 'csv'.")
        self.fmt = fmt
