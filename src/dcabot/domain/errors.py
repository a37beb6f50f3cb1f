from __future__ import annotations


class DcaError(RuntimeError):
    """Base class for errors surfaced to callers of vault operations."""

    code = "dca_error"


class UnauthorizedError(DcaError):
    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class NotFoundError(DcaError):
    code = "not_found"


class InvalidInputError(DcaError):
    code = "invalid_input"


class DenomMismatchError(InvalidInputError):
    code = "denom_mismatch"


class AlreadyTerminalError(DcaError):
    code = "already_terminal"


class AlreadyCancelledError(AlreadyTerminalError):
    code = "already_cancelled"

    def __init__(self, message: str = "Error: vault is already cancelled") -> None:
        super().__init__(message)


class NotEligibleError(DcaError):
    code = "not_eligible"


class TriggerNotReadyError(DcaError):
    code = "trigger_not_ready"


class SagaInFlightError(DcaError):
    """Raised when a vault has a venue request awaiting its confirmation."""

    code = "saga_in_flight"


class PausedError(DcaError):
    code = "paused"

    def __init__(self, message: str = "Error: contract is paused") -> None:
        super().__init__(message)


class VenueError(RuntimeError):
    """Raised when the swap venue cannot be reached or answers malformed data."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        request_path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.request_path = request_path
