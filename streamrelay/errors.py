from typing import Optional


class RelayError(Exception):
    """
    Base class for every error the relay raises on purpose.

    Attributes:
        code (str): Stable, machine-readable error code.
        retryable (bool): Whether retrying the same call may succeed.
    """
    code = "RelayError"
    retryable = False


class InvalidArgument(RelayError):
    """Caller error. Never retried."""
    code = "InvalidArgument"


class Throttled(RelayError):
    """Transient overload of the log. Retried with backoff."""
    code = "Throttled"
    retryable = True


class DataExpired(RelayError):
    """
    The requested position is below the purge horizon of the partition.
    The reader must re-sync from `horizon`.
    """
    code = "DataExpired"

    def __init__(self, partition_id: int, requested: int, horizon: int):
        super().__init__(
            f"Sequence {requested} of partition {partition_id} has expired "
            f"(oldest retained: {horizon})"
        )
        self.partition_id = partition_id
        self.requested = requested
        self.horizon = horizon


class InvalidState(RelayError):
    """The target resource does not exist or is not in a usable state."""
    code = "InvalidState"


class DeliveryFailed(RelayError):
    """Producer retries were exhausted. The record was NOT appended."""
    code = "DeliveryFailed"

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class HandlerFailure(RelayError):
    """A consumer handler failed, returned False, or timed out."""
    code = "HandlerFailure"
    retryable = True

    def __init__(self, message: str, attempt: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.attempt = attempt
        if cause is not None:
            self.__cause__ = cause
