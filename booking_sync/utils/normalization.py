"""Normalization of identity and enrichment fields.

Every comparison the patient resolver makes, and every value pushed to the
external system, goes through these helpers first.
"""

import re
from datetime import date, datetime
from typing import Optional

_DIGITS = re.compile(r"\D")
_ISO_DATE_PREFIX = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_US_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")

MIN_BIRTH_YEAR = 1900


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to its canonical form (trimmed, lowercase).

    Args:
        email: Raw email input

    Returns:
        Canonical email or None if empty
    """
    if not email:
        return None
    normalized = email.strip().lower()
    return normalized or None


def split_email(email: str) -> tuple[str, str]:
    """
    Split an email into (local, domain).

    Raises:
        ValueError: If the address has no usable local part or domain
    """
    local, sep, domain = email.rpartition("@")
    if not sep or not local or not domain or "." not in domain or " " in email:
        raise ValueError("Invalid email address")
    return local, domain


def build_email_alias(email: str, tag: str) -> str:
    """
    Plus-address an email: caseworker@org.com + tag → caseworker+tag@org.com.

    Deterministic for a given (email, tag).
    """
    local, domain = split_email(email)
    return f"{local}+{tag}@{domain}"


def normalize_name(name: Optional[str]) -> Optional[str]:
    """
    Normalize name by stripping whitespace and collapsing multiple spaces.

    Args:
        name: Raw name input

    Returns:
        Cleaned name or None if empty
    """
    if not name:
        return None
    collapsed = " ".join(name.split())
    return collapsed or None


def names_equal(left: Optional[str], right: Optional[str]) -> bool:
    """Case-insensitive name comparison after whitespace normalization."""
    a = normalize_name(left)
    b = normalize_name(right)
    if a is None or b is None:
        return a is b
    return a.casefold() == b.casefold()


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a US phone number to 10 digits.

    Accepts:
    - 10 digits with any punctuation: (555) 123-4567 → 5551234567
    - 11 digits starting with 1: +1 555 123 4567 → 5551234567

    Raises:
        ValueError: If phone is not a valid US phone number
    """
    if not phone:
        return None
    digits = _DIGITS.sub("", phone)
    if not digits:
        return None
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        raise ValueError("Invalid phone number. Use 10-digit US format (e.g., 5551234567).")
    return digits


def format_phone(phone: Optional[str]) -> Optional[str]:
    """Format a phone for the external system: (555) 123-4567. Invalid input yields None."""
    try:
        digits = normalize_phone(phone)
    except ValueError:
        return None
    if digits is None:
        return None
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


def parse_date_of_birth(value: date | datetime | str | None) -> Optional[date]:
    """
    Parse a date of birth to a calendar date.

    Time and zone information are discarded, never converted: the date
    written by the caller is the date kept.

    Accepts date/datetime objects, ISO strings (YYYY-MM-DD with an optional
    time part) and MM/DD/YYYY.

    Raises:
        ValueError: If the value is not a plausible date of birth
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    else:
        text = value.strip()
        if not text:
            return None
        parsed = _parse_date_text(text)

    if parsed.year < MIN_BIRTH_YEAR or parsed > date.today():
        raise ValueError("Date of birth is out of range")
    return parsed


def _parse_date_text(text: str) -> date:
    match = _ISO_DATE_PREFIX.match(text)
    if match:
        year, month, day = (int(part) for part in match.groups())
        return date(year, month, day)
    match = _US_DATE.match(text)
    if match:
        month, day, year = (int(part) for part in match.groups())
        return date(year, month, day)
    raise ValueError("Invalid date of birth. Use YYYY-MM-DD.")


def normalize_member_id(value: Optional[str]) -> Optional[str]:
    """Insurance member id: uppercase alphanumerics only."""
    if not value:
        return None
    cleaned = _NON_ALNUM.sub("", value).upper()
    return cleaned or None
