"""Ledger error classes.

Every error carries a machine-readable code, a human-readable message and
the HTTP status the surrounding application should map it to. The ledger
itself owns no HTTP surface.
"""


class LedgerError(Exception):
    """Base class for ledger errors.

    Attributes:
        code: Machine-readable error code (e.g., "NOT_FOUND").
        message: Human-readable error message.
        status_code: HTTP status code the caller should return.
        details: Optional list of additional error details.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: list[dict] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(LedgerError):
    """Argument validation failed (400)."""

    def __init__(
        self,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=400,
            details=details,
        )


class NotFoundError(LedgerError):
    """Resource not found (404).

    Raised by grant stores when a grant id does not exist. The ledger
    engine treats it as contention during a burn.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
        )


class UnknownModelError(LedgerError):
    """Model is not in the pricing table or not available (422).

    Args:
        model_id: Model identifier that failed to resolve.
    """

    def __init__(self, model_id: str) -> None:
        super().__init__(
            code="UNKNOWN_MODEL",
            message=f"Model '{model_id}' is not in the pricing table or is unavailable",
            status_code=422,
        )


class InsufficientCreditsError(LedgerError):
    """Eligible balance is below the required charge (402).

    Args:
        available: Sum of eligible grant balances in credits.
        required: Credits the charge needs.
    """

    def __init__(self, available: int, required: int) -> None:
        self.available = available
        self.required = required
        super().__init__(
            code="INSUFFICIENT_CREDITS",
            message=(
                f"Not enough credits: {required} required, {available} available. "
                "Please add credits to continue."
            ),
            status_code=402,
            details=[{"available": available, "required": required}],
        )


class LedgerContentionError(LedgerError):
    """Debit retries exhausted under concurrent contention (409).

    Transient: the caller may retry the whole burn.

    Args:
        attempts: Number of debit attempts made.
    """

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(
            code="LEDGER_CONTENTION",
            message=(
                f"Credit balance changed concurrently; gave up after {attempts} "
                "attempts. Please retry."
            ),
            status_code=409,
        )


class InsufficientGrantBalanceError(LedgerError):
    """Conditional debit rejected by the store (409).

    Store-internal: the grant's remaining balance was below the debit
    amount (or the grant expired) when the update was applied.

    Args:
        grant_id: Grant the debit targeted.
        amount: Credits the debit tried to take.
    """

    def __init__(self, grant_id: str, amount: int) -> None:
        self.grant_id = grant_id
        self.amount = amount
        super().__init__(
            code="INSUFFICIENT_GRANT_BALANCE",
            message=f"Grant '{grant_id}' cannot cover a debit of {amount} credits",
            status_code=409,
        )


class SettlementAlreadyResolvedError(LedgerError):
    """Payout failure was resolved by another reconciliation run (409).

    Args:
        failure_id: Settlement failure that was already claimed.
    """

    def __init__(self, failure_id: str) -> None:
        self.failure_id = failure_id
        super().__init__(
            code="SETTLEMENT_ALREADY_RESOLVED",
            message=f"Settlement failure '{failure_id}' is already resolved",
            status_code=409,
        )
