"""
Custom exception classes for the content scheduler.

This module defines all exception classes used throughout the codebase.
Exceptions follow the fail-fast philosophy at the API boundary: invalid
requests surface immediately with clear context.  Inside the dispatch loop
every per-schedule error is converted into a failed execution result
instead of being raised further.

Hierarchy:
    Exception
    +-- SchedulerBaseError (base for all scheduler-specific errors)
    |   +-- ScheduleNotFoundError
    |   +-- ScheduleOwnershipError
    |   +-- InvalidScheduleStateError
    |   +-- GenerationError
    |   |   +-- GenerationTimeoutOrFailure
    |   +-- PostNotFoundError
    |   +-- PublishError
    |   +-- InsufficientPointsError
    +-- ValidationError (ValueError)
    |   +-- InvalidTriggerError
    +-- DatabaseError
    +-- ConfigurationError
    +-- RetryExhaustedError
"""


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class SchedulerBaseError(Exception):
    """Base exception for all scheduler-related errors."""

    pass


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails."""

    pass


class InvalidTriggerError(ValidationError):
    """Raised when a cron expression or calendar trigger is malformed."""

    pass


class DatabaseError(Exception):
    """Raised when database operations fail."""

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# =============================================================================
# SCHEDULE LIFECYCLE EXCEPTIONS
# =============================================================================


class ScheduleNotFoundError(SchedulerBaseError):
    """Raised when a schedule id does not exist."""

    pass


class ScheduleOwnershipError(SchedulerBaseError):
    """Raised when a user acts on a schedule they do not own.

    Attributes:
        schedule_id: The schedule that was targeted.
        user_id: The user who attempted the action.
    """

    def __init__(self, schedule_id: str, user_id: str):
        self.schedule_id = schedule_id
        self.user_id = user_id
        super().__init__(
            f"User {user_id} does not own schedule {schedule_id}"
        )


class InvalidScheduleStateError(SchedulerBaseError):
    """Raised when a transition is not allowed from the current status."""

    pass


# =============================================================================
# EXECUTION EXCEPTIONS
# =============================================================================


class GenerationError(SchedulerBaseError):
    """Raised when the generation collaborator fails to produce an artifact."""

    pass


class GenerationTimeoutOrFailure(GenerationError):
    """Raised when an asynchronous generation job failed or timed out.

    Attributes:
        job_id: Identifier of the generation job that was awaited.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(
            f"Generation job {job_id} failed or did not complete in time"
        )


class PostNotFoundError(SchedulerBaseError):
    """Raised when a publish action references a missing post."""

    pass


class PublishError(SchedulerBaseError):
    """Raised for social transport failures (non-2xx or network errors)."""

    pass


class InsufficientPointsError(SchedulerBaseError):
    """Raised by the points ledger when a balance cannot cover a charge.

    Attributes:
        required: Points needed for the operation.
        available: Points currently on the account.
    """

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient points: required {required}, available {available}"
        )


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "SchedulerBaseError",
    # Core
    "ValidationError",
    "InvalidTriggerError",
    "DatabaseError",
    "ConfigurationError",
    "RetryExhaustedError",
    # Lifecycle
    "ScheduleNotFoundError",
    "ScheduleOwnershipError",
    "InvalidScheduleStateError",
    # Execution
    "GenerationError",
    "GenerationTimeoutOrFailure",
    "PostNotFoundError",
    "PublishError",
    "InsufficientPointsError",
]
