"""Utility modules."""

from booking_sync.utils.normalization import (
    build_email_alias,
    format_phone,
    names_equal,
    normalize_email,
    normalize_member_id,
    normalize_name,
    normalize_phone,
    parse_date_of_birth,
    split_email,
)

__all__ = [
    "build_email_alias",
    "format_phone",
    "names_equal",
    "normalize_email",
    "normalize_member_id",
    "normalize_name",
    "normalize_phone",
    "parse_date_of_birth",
    "split_email",
]
