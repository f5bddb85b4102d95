"""
Shared utility functions used throughout the content scheduler.

Provides:
    - utc_now(): Timezone-aware UTC datetime (for Supabase TIMESTAMPTZ columns)
    - generate_id(): UUID4 string generator (for schedule / record keys)
    - ensure_utc(dt): Convert any datetime to timezone-aware UTC
    - parse_datetime(value): Parse ISO strings / datetimes coming from rows or requests
    - coerce_enum(cls, value, name): Enum member from a value in any letter case
    - preview(text): Shorten prompts and captions for log lines
    - @with_retry: Decorator with exponential backoff for transient failures
"""

from datetime import datetime, timezone
import uuid
import asyncio
import logging
import time as time_module
from enum import Enum
from functools import wraps
from typing import Callable, TypeVar, Any, Tuple, Type, Optional, Union

from src.exceptions import RetryExhaustedError, ValidationError

T = TypeVar("T")
E = TypeVar("E", bound=Enum)


# ===========================================================================
# TIMEZONE UTILITIES
# All timestamps stored in Supabase must be timezone-aware (TIMESTAMPTZ)
# ===========================================================================


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Use this (or an injected ``Clock``) instead of ``datetime.now()`` or
    ``datetime.utcnow()``.

    Returns:
        Timezone-aware datetime in UTC.
    """
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """
    Generate a unique ID for schedules and publish records.

    Returns:
        A unique UUID4 string (compatible with Supabase UUID type).
    """
    return str(uuid.uuid4())


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure a datetime is timezone-aware in UTC.

    Args:
        dt: Datetime to convert (naive or aware).

    Returns:
        Timezone-aware datetime in UTC.
    """
    if dt.tzinfo is None:
        # Naive datetimes are treated as UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(
    value: Union[str, datetime, None], field_name: str = "datetime"
) -> Optional[datetime]:
    """
    Parse a datetime from an ISO-8601 string or pass a datetime through.

    Args:
        value: ISO string (``Z`` suffix accepted), datetime or ``None``.
        field_name: Name used in the error message.

    Returns:
        Timezone-aware UTC datetime, or ``None`` when *value* is empty.

    Raises:
        ValidationError: If *value* is not a parseable datetime.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError as exc:
            raise ValidationError(
                f"{field_name} is not a valid ISO-8601 datetime: {value!r}"
            ) from exc
    raise ValidationError(
        f"{field_name} must be a datetime or ISO string, got {type(value).__name__}"
    )


def coerce_enum(enum_cls: Type[E], value: Any, name: str) -> E:
    """Accept an enum member or its value in any letter case.

    Raises:
        ValidationError: If *value* names no member of *enum_cls*.
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{name} must be one of: {allowed} (got {value!r})") from None


def preview(text: Optional[str], limit: int = 80) -> str:
    """Return *text* shortened to *limit* characters for log output."""
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


# ===========================================================================
# RETRY DECORATOR WITH EXPONENTIAL BACKOFF
# Retries are for transient failures (rate limits, timeouts).
# Eventually raises if all attempts fail.
# ===========================================================================


def _log_attempt(op_name: str, attempt: int, max_attempts: int, error: Exception, delay: float) -> None:
    if attempt < max_attempts:
        logging.warning(
            "[RETRY] %s attempt %d/%d failed: %s. Retrying in %.1fs...",
            op_name,
            attempt,
            max_attempts,
            error,
            delay,
        )
    else:
        logging.error(
            "[RETRY EXHAUSTED] %s failed after %d attempts: %s",
            op_name,
            max_attempts,
            error,
        )


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Decorator for retry logic with exponential backoff.

    Works with both synchronous and asynchronous functions.  Exceptions not
    listed in *retryable_exceptions* propagate immediately.

    Args:
        max_attempts: Maximum number of attempts (default ``3``).
        base_delay: Delay in seconds before the first retry.  Subsequent
            delays grow as ``base_delay * (2 ** (attempt - 1))``.
        retryable_exceptions: Exception types that trigger a retry.
        operation_name: Name used in log messages (defaults to the
            wrapped function's ``__name__``).

    Raises:
        RetryExhaustedError: When all retry attempts have been exhausted.

    Usage::

        @with_retry(
            max_attempts=3,
            retryable_exceptions=(httpx.TransportError,),
        )
        async def submit(payload: dict) -> dict:
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_error = e
                    delay = base_delay * (2 ** (attempt - 1))
                    _log_attempt(op_name, attempt, max_attempts, e, delay)
                    if attempt < max_attempts:
                        await asyncio.sleep(delay)
            raise RetryExhaustedError(
                op_name, max_attempts, last_error  # type: ignore[arg-type]
            )

        @wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_error = e
                    delay = base_delay * (2 ** (attempt - 1))
                    _log_attempt(op_name, attempt, max_attempts, e, delay)
                    if attempt < max_attempts:
                        time_module.sleep(delay)
            raise RetryExhaustedError(
                op_name, max_attempts, last_error  # type: ignore[arg-type]
            )

        if asyncio.iscoroutinefunction(func):
            return async_wrapper  # type: ignore[return-value]
        return sync_wrapper  # type: ignore[return-value]

    return decorator
