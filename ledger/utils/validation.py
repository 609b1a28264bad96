"""
Input validation helpers.

Each validator returns the normalized value on success and raises
ledger.errors.ValidationError on failure.
"""

import datetime
import re
import uuid
from decimal import Decimal

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from ledger.errors import ValidationError
from ledger.utils.money import HUNDRED, has_at_most_two_places, to_decimal


EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

DEFAULT_CURRENCY = "USD"
SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP", "JPY", "CAD", "AUD", "CHF", "CNY", "INR")
MAX_AMOUNT = Decimal("999999999.99")
MAX_DESCRIPTION_LENGTH = 1000
MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 255


def supported_currencies():
    return [c.upper() for c in getattr(settings, "LEDGER_SUPPORTED_CURRENCIES", SUPPORTED_CURRENCIES)]


def default_currency() -> str:
    return getattr(settings, "LEDGER_DEFAULT_CURRENCY", DEFAULT_CURRENCY).upper()


def max_amount() -> Decimal:
    return Decimal(str(getattr(settings, "LEDGER_MAX_AMOUNT", MAX_AMOUNT)))


def normalize_currency(currency) -> str:
    return (currency or "").strip().upper()


def validate_currency(currency) -> str:
    """Return the upper-cased code, defaulting blank input to the configured default."""
    code = normalize_currency(currency) or default_currency()
    if code not in supported_currencies():
        raise ValidationError.invalid_value("currency", code)
    return code


def currencies_compatible(first, second) -> bool:
    return normalize_currency(first) == normalize_currency(second)


def validate_amount(amount, field: str = "amount") -> Decimal:
    """
    Money amount: > 0, <= LEDGER_MAX_AMOUNT, at most 2 decimal places.
    """
    try:
        value = to_decimal(amount)
    except ValueError:
        if amount is None or amount == "":
            raise ValidationError.required(field)
        raise ValidationError.invalid_value(field, amount)
    if value <= 0:
        raise ValidationError("Amount must be greater than zero")
    if value > max_amount():
        raise ValidationError("Amount is too large")
    if not has_at_most_two_places(value):
        raise ValidationError("Amount must have at most 2 decimal places")
    return value


def validate_percentage(percentage, field: str = "percentage") -> Decimal:
    try:
        value = to_decimal(percentage)
    except ValueError:
        if percentage is None or percentage == "":
            raise ValidationError.required(field)
        raise ValidationError.invalid_value(field, percentage)
    if value < 0:
        raise ValidationError("Percentage cannot be negative")
    if value > HUNDRED:
        raise ValidationError("Percentage cannot be greater than 100")
    return value


def validate_description(description, required: bool = True) -> str:
    text = (description or "").strip()
    if not text:
        if required:
            raise ValidationError.required("description")
        return ""
    if len(text) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(f"Description must be less than {MAX_DESCRIPTION_LENGTH} characters")
    return text


def validate_name(name) -> str:
    text = (name or "").strip()
    if not text:
        raise ValidationError.required("name")
    if len(text) < MIN_NAME_LENGTH:
        raise ValidationError(f"Name must be at least {MIN_NAME_LENGTH} characters long")
    if len(text) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name must be less than {MAX_NAME_LENGTH} characters")
    return text


def validate_email(email) -> str:
    text = (email or "").strip()
    if not text:
        raise ValidationError.required("email")
    if not EMAIL_RE.match(text):
        raise ValidationError.invalid_value("email", text)
    return text.lower()


def is_valid_uuid(value) -> bool:
    if isinstance(value, uuid.UUID):
        return True
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return False
    return True


def validate_uuid(value, field: str) -> str:
    """Canonical lower-case hyphenated form of a UUID identifier."""
    if value is None or value == "":
        raise ValidationError.required(field)
    if not is_valid_uuid(value):
        raise ValidationError.invalid_value(field, value)
    return str(uuid.UUID(str(value)))


def normalize_page(page, limit):
    """
    Clamp pagination input: page < 1 becomes 1; limit outside
    [1, LEDGER_MAX_PAGE_SIZE] becomes LEDGER_PAGE_SIZE.
    """
    default_limit = getattr(settings, "LEDGER_PAGE_SIZE", 10)
    max_limit = getattr(settings, "LEDGER_MAX_PAGE_SIZE", 100)
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = default_limit
    if page < 1:
        page = 1
    if limit < 1 or limit > max_limit:
        limit = default_limit
    return page, limit


def validate_date(value, field: str):
    """
    Parse an ISO date or datetime query value. Blank input returns None.
    Plain dates become midnight in the current timezone.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        parsed = datetime.datetime.combine(value, datetime.time.min)
    else:
        text = str(value).strip()
        try:
            parsed = parse_datetime(text)
            if parsed is None:
                day = parse_date(text)
                parsed = datetime.datetime.combine(day, datetime.time.min) if day else None
        except ValueError:
            parsed = None
        if parsed is None:
            raise ValidationError.invalid_value(field, value)
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed
