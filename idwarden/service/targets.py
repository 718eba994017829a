from __future__ import annotations

import re
import unicodedata
from typing import Mapping, Optional, Tuple

from idwarden.service.errors import ValidationError

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_E164 = re.compile(r"^\+[1-9]\d{1,14}$")
_PHONE_SEPARATORS = re.compile(r"[\s\-().]")
_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,20}$")


def normalize_email(value: str) -> str:
    """Lower-case, NFKC-normalize and validate an email address."""
    if not isinstance(value, str):
        raise ValidationError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254 or len(normalized) < 3:
        raise ValidationError("invalid email address")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValidationError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValidationError("invalid email address")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValidationError("invalid email address")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValidationError("invalid email address")
    return normalized


def normalize_phone(value: str, default_country_code: str = "86") -> str:
    """Normalize a phone number to E.164.

    Separators are dropped, a ``00`` international prefix becomes ``+`` and
    numbers without a prefix get ``default_country_code`` (leading trunk zero
    removed).
    """
    if not isinstance(value, str):
        raise ValidationError("phone must be a string")
    compact = _PHONE_SEPARATORS.sub("", value.strip())
    if not compact.lstrip("+0"):
        raise ValidationError("invalid phone number")
    if compact.startswith("+"):
        candidate = compact
    elif compact.startswith("00"):
        candidate = "+" + compact[2:]
    else:
        candidate = f"+{default_country_code}{compact.lstrip('0')}"
    if not _E164.match(candidate):
        raise ValidationError("invalid phone number")
    return candidate


def normalize_target(
    *,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    default_country_code: str = "86",
) -> Tuple[str, str]:
    """Return ``(kind, normalized)`` for exactly one of email or phone."""
    if email and phone:
        raise ValidationError("provide either email or phone, not both")
    if email:
        return "email", normalize_email(email)
    if phone:
        return "phone", normalize_phone(phone, default_country_code)
    raise ValidationError("email or phone is required")


def guess_target(raw: str, default_country_code: str = "86") -> str:
    """Normalize a target whose kind is inferred from the presence of ``@``."""
    if "@" in (raw or ""):
        return normalize_email(raw)
    return normalize_phone(raw or "", default_country_code)


def validate_username(value: str) -> str:
    username = (value or "").strip()
    if not _USERNAME_PATTERN.match(username):
        raise ValidationError(
            "username must be 3-20 characters of letters, digits or underscore",
            detail={"field": "username"},
        )
    return username


def client_ip_from_headers(
    headers: Mapping[str, str], peer: Optional[str] = None
) -> Optional[str]:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    return real_ip or peer
