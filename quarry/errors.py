from typing import Optional, Sequence


class NonRetryableError(Exception):
    """
    An error which, when raised within an operation, prevents the operation from being retried
    regardless of the retry policy it was called with.
    """

    pass


class QuarryError(Exception):
    """Base class for every error raised by quarry itself."""

    pass


class MalformedCondition(QuarryError, NonRetryableError, ValueError):
    """The condition compiler could not map an operator or node shape to SQL."""

    pass


class RequiredFieldMissing(QuarryError, NonRetryableError, ValueError):
    def __init__(self, table: str, fields: Sequence[str]):
        self.table = table
        self.fields = list(fields)
        super().__init__(
            f"{table}: field(s) {', '.join(repr(f) for f in self.fields)} cannot be null and have no default value"
        )


class NoUpdatableFields(QuarryError, NonRetryableError, ValueError):
    pass


class RestoreNotSupported(QuarryError, NonRetryableError):
    pass


class ConstraintViolation(QuarryError):
    """
    The engine rejected a write (unique, foreign key, not null or check constraint).
    The driver error is kept as __cause__.
    """

    pass


class TimedOut(QuarryError):
    def __init__(self, operation: str, timeout_ms: float):
        self.operation = operation
        self.timeout_ms = timeout_ms
        super().__init__(f"{operation} did not finish within {timeout_ms}ms")


class RetryExhausted(QuarryError):
    """
    Raised when the maximum number of attempts is exceeded.
    """

    def __init__(
        self, operation: str, attempts: int, last_error: Optional[BaseException]
    ):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {last_error!r}"
        )
