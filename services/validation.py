"""Input coercion shared by the services and the JSON routes."""
from __future__ import annotations

import datetime
import math
from typing import Optional

from models import as_utc
from .errors import InvalidInput


def require_text(value, field: str, max_length: int = 255) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f'{field} is required.')
    value = value.strip()
    if len(value) > max_length:
        raise InvalidInput(f'{field} must be at most {max_length} characters.')
    return value


def optional_text(value, field: str, max_length: int = 255):
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidInput(f'{field} must be a string.')
    value = value.strip()
    if len(value) > max_length:
        raise InvalidInput(f'{field} must be at most {max_length} characters.')
    return value or None


def require_int(value, field: str, minimum: Optional[int] = 0) -> int:
    if isinstance(value, bool):
        raise InvalidInput(f'{field} must be an integer.')
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f'{field} must be an integer.') from exc
    if isinstance(value, float) and number != value:
        raise InvalidInput(f'{field} must be an integer.')
    if minimum is not None and number < minimum:
        raise InvalidInput(f'{field} must be at least {minimum}.')
    return number


def require_quantity(value, field: str = 'quantity') -> int:
    return require_int(value, field, minimum=1)


def require_bool(value, field: str) -> bool:
    if not isinstance(value, bool):
        raise InvalidInput(f'{field} must be true or false.')
    return value


def _fromisoformat(raw: str) -> datetime.datetime:
    if raw.endswith('Z'):
        raw = raw[:-1] + '+00:00'
    return datetime.datetime.fromisoformat(raw)


def parse_date(value, field: str) -> datetime.date:
    """Calendar date; a full timestamp is accepted and keeps its own date."""
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        raw = value.strip()
        try:
            return datetime.date.fromisoformat(raw)
        except ValueError:
            pass
        try:
            return _fromisoformat(raw).date()
        except ValueError as exc:
            raise InvalidInput(f'{field} must be an ISO-8601 date.') from exc
    raise InvalidInput(f'{field} must be an ISO-8601 date.')


def parse_timestamp(value, field: str) -> datetime.datetime:
    """Aware UTC datetime; bare dates mean midnight UTC."""
    if isinstance(value, datetime.datetime):
        return as_utc(value)
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day, tzinfo=datetime.timezone.utc)
    if isinstance(value, str):
        try:
            return as_utc(_fromisoformat(value.strip()))
        except ValueError as exc:
            raise InvalidInput(f'{field} must be an ISO-8601 timestamp.') from exc
    raise InvalidInput(f'{field} must be an ISO-8601 timestamp.')


def parse_fee(value, field: str = 'late_fee') -> float:
    if isinstance(value, bool):
        raise InvalidInput(f'{field} must be a number.')
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f'{field} must be a number.') from exc
    if not math.isfinite(amount) or amount < 0:
        raise InvalidInput(f'{field} must be a non-negative amount.')
    return amount
