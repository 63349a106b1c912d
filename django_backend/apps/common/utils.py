"""
Common utility functions for the case workflow engine.

Provides identifier generation, arithmetic helpers, calendar arithmetic
and access to the ``CASE_WORKFLOW`` settings block.
"""

import calendar
import secrets
import string
import time
import functools
from typing import Any, Optional, Union
from datetime import date, datetime, timezone as dt_timezone

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime


DEFAULT_WORKFLOW_SETTINGS = {
    'CONFLICT_WINDOW_HOURS': 2,
    'CONFLICT_THRESHOLD_MINUTES': 30,
    'SCHEDULE_PAST_TOLERANCE_SECONDS': 60,
    'AVAILABLE_HOURS_PER_WEEK': 40,
    'WORKLOAD_THRESHOLD': 0.8,
    'PENDING_AUTOMATION_DRAIN_SECONDS': 60,
    'RECURRING_TASKS_INTERVAL_MINUTES': 15,
    'DATE_TRIGGER_HOUR': 7,
    'DEFAULT_PHASE_DURATION_DAYS': 7,
    'HISTORY_LIMIT': 1000,
    'STATE_BACKEND': 'memory',
    'STATE_REDIS_URL': None,
    'STATE_KEY_PREFIX': 'case_workflow',
}


def get_workflow_setting(name: str, default: Any = None) -> Any:
    """
    Read one value from the ``CASE_WORKFLOW`` settings dict.

    Falls back to the module defaults, then to ``default``.
    """
    configured = getattr(settings, 'CASE_WORKFLOW', {}) or {}
    if name in configured:
        return configured[name]
    return DEFAULT_WORKFLOW_SETTINGS.get(name, default)


def generate_random_string(length: int = 9, include_uppercase: bool = False) -> str:
    """
    Generate a random alphanumeric string.

    Args:
        length: Length of the string
        include_uppercase: Include uppercase letters

    Returns:
        Random string
    """
    characters = string.ascii_lowercase + string.digits
    if include_uppercase:
        characters += string.ascii_uppercase

    return ''.join(secrets.choice(characters) for _ in range(length))


def generate_id(prefix: str) -> str:
    """
    Build a transient identifier of the form ``<prefix>_<millis>_<random>``.

    These ids only track objects in memory; persistent ids are assigned by
    whoever stores the records.
    """
    millis = int(timezone.now().timestamp() * 1000)
    return f"{prefix}_{millis}_{generate_random_string()}"


def calculate_percentage(part: Union[int, float], total: Union[int, float]) -> float:
    """
    Calculate percentage with handling for zero division.

    Args:
        part: Part value
        total: Total value

    Returns:
        Percentage (0-100)
    """
    if total == 0:
        return 0.0

    return round((part / total) * 100, 2)


def safe_divide(dividend: Union[int, float], divisor: Union[int, float], default: float = 0.0) -> float:
    """
    Perform division with handling for zero division.

    Args:
        dividend: Dividend
        divisor: Divisor
        default: Default value if divisor is zero

    Returns:
        Division result or default value
    """
    if divisor == 0:
        return default

    return dividend / divisor


def add_months(value: datetime, months: int) -> datetime:
    """
    Shift a datetime by whole calendar months.

    The day is clamped to the last day of the target month, so
    Jan 31 + 1 month is Feb 28 (or 29).
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_years(value: datetime, years: int) -> datetime:
    """Shift a datetime by whole years, clamping Feb 29 to Feb 28."""
    return add_months(value, years * 12)


def hours_between(start: datetime, end: datetime) -> float:
    """Signed number of hours from ``start`` to ``end``."""
    return (end - start).total_seconds() / 3600


def coerce_datetime(value: Any) -> Optional[datetime]:
    """
    Turn a datetime, date or ISO-8601 string into an aware datetime.

    Dates become midnight UTC. Returns None for anything else.
    """
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            result = parse_datetime(value)
            if result is None:
                parsed = parse_date(value)
                result = datetime(parsed.year, parsed.month, parsed.day) if parsed else None
        except ValueError:
            return None
        if result is None:
            return None
    else:
        return None

    if timezone.is_naive(result):
        result = timezone.make_aware(result, dt_timezone.utc)
    return result


def elapsed_ms(started: float) -> float:
    """Milliseconds elapsed since a ``time.perf_counter()`` reading."""
    return round((time.perf_counter() - started) * 1000, 3)


def log_execution_time(logger):
    """
    Decorator to log function execution time.

    Args:
        logger: Logger instance

    Returns:
        Decorator function
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                logger.debug(f"{func.__name__} executed in {elapsed_ms(start_time):.3f} ms")
                return result
            except Exception as e:
                logger.error(f"{func.__name__} failed after {elapsed_ms(start_time):.3f} ms: {str(e)}")
                raise

        return wrapper
    return decorator


def now() -> datetime:
    """Get current timezone-aware datetime."""
    return timezone.now()
