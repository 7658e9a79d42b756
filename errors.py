from typing import Optional


class FinanceError(Exception):
    """Base class for failures raised by the ledger services."""

    kind = "error"


class Unauthorized(FinanceError):
    kind = "unauthorized"


class NotFound(FinanceError):
    """Resource is absent or owned by someone else; the two are not told apart."""

    kind = "not_found"


class RateLimited(FinanceError):
    kind = "rate_limited"

    def __init__(
        self,
        message: str = "Too many requests. Please try again later.",
        *,
        remaining: int = 0,
        reset_in_seconds: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.remaining = remaining
        self.reset_in_seconds = reset_in_seconds


class Blocked(FinanceError):
    kind = "blocked"


class InvalidFormat(FinanceError):
    kind = "invalid_format"


class ExtractionFailed(FinanceError):
    kind = "extraction_failed"


class PersistenceFailure(FinanceError):
    kind = "persistence_failure"
