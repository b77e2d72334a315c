from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """
    Base class for every error the credit ledger raises on purpose.

    Each subclass pins a stable `code` and the HTTP status the API maps it to.
    `details` is merged into the error body so clients can act on it
    (e.g. `required` / `remaining` / `deficit` on a 402).
    """

    code = "LEDGER_ERROR"
    status_code = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class InvalidAmountError(LedgerError):
    code = "INVALID_AMOUNT"
    status_code = 400


class InvalidEstimateError(LedgerError):
    code = "VALIDATION_ERROR"
    status_code = 400


class AccountNotFoundError(LedgerError):
    code = "ACCOUNT_NOT_FOUND"
    status_code = 404

    def __init__(self, account_id: str, message: str = "User not found") -> None:
        super().__init__(message, account_id=account_id)
        self.account_id = account_id


class AccountConflictError(LedgerError):
    code = "CONFLICT"
    status_code = 409


class IdempotencyConflictError(AccountConflictError):
    code = "IDEMPOTENCY_CONFLICT"


class InsufficientCreditsError(LedgerError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, *, required: int, remaining: int) -> None:
        deficit = max(0, required - remaining)
        super().__init__(
            f"Insufficient credits: {required} required, {remaining} remaining",
            required=required,
            remaining=remaining,
            deficit=deficit,
        )
        self.required = required
        self.remaining = remaining
        self.deficit = deficit


class ForbiddenError(LedgerError):
    code = "FORBIDDEN"
    status_code = 403


class FreeExecutionsExhaustedError(LedgerError):
    code = "FREE_EXECUTIONS_EXHAUSTED"
    status_code = 409

    def __init__(self, *, tier: str, free_executions_per_day: int) -> None:
        super().__init__(
            "No free workflow executions left today",
            tier=tier,
            free_executions_per_day=free_executions_per_day,
        )


class UnknownTierError(LedgerError):
    code = "UNKNOWN_TIER"
    status_code = 400

    def __init__(self, tier: object) -> None:
        super().__init__(f"Unknown subscription tier: {tier!r}", tier=str(tier))
        self.tier = tier


class UnknownPremiumNodeError(LedgerError):
    code = "UNKNOWN_PREMIUM_NODE"
    status_code = 400

    def __init__(self, node_type: str) -> None:
        super().__init__(f"Unknown premium node type: {node_type!r}", node_type=node_type)
        self.node_type = node_type


class LedgerContentionError(LedgerError):
    code = "LEDGER_CONTENTION"
    status_code = 409

    def __init__(self, account_id: str, attempts: int) -> None:
        super().__init__(
            "Balance is being updated concurrently; please retry",
            account_id=account_id,
            attempts=attempts,
        )


class LedgerImmutableError(LedgerError):
    code = "LEDGER_IMMUTABLE"
    status_code = 500
