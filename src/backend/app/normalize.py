"""Canonical forms for PII before hashing, plus wire-format time helpers.

Every ad platform matches on SHA-256 of a normalized value, so two systems only
agree on a person when they produce byte-identical strings here. Functions return
``None`` for anything that cannot be normalized rather than raising.
"""

import hashlib
import re
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


_HASH_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_EMAIL_SPLIT_RE = re.compile(r"[,;\s]+")
_NON_DIGIT_RE = re.compile(r"\D+")
_NON_ALPHA_RE = re.compile(r"[^a-z]")
_OFFSET_RE = re.compile(r"^([+-])(\d{1,2})(?::?(\d{2}))?$")
_GMAIL_DOMAINS = {"gmail.com", "googlemail.com"}

PHONE_MIN_DIGITS = 8
PHONE_MAX_DIGITS = 15


def clean(value: Optional[object]) -> Optional[str]:
    """Trim to a non-empty string or None."""
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def looks_hashed(value: Optional[str]) -> bool:
    return bool(value) and bool(_HASH_RE.match(value.strip()))


def hash_normalized(value: Optional[str], normalizer: Callable[[str], Optional[str]]) -> Optional[str]:
    """SHA-256 of ``normalizer(value)``; values that are already a hash pass through."""
    if not value:
        return None
    if looks_hashed(value):
        return value.strip()
    normalized = normalizer(value)
    return sha256_hex(normalized) if normalized else None


# --- email -------------------------------------------------------------------

def extract_email_candidate(value: str) -> Optional[str]:
    for part in _EMAIL_SPLIT_RE.split(value):
        part = part.strip()
        if part and "@" in part:
            return part
    return None


def normalize_email_basic(value: Optional[str]) -> Optional[str]:
    """Lowercased first address in ``value``; the form stored and sent to the CRM."""
    if not value:
        return None
    candidate = extract_email_candidate(value.lower())
    if not candidate:
        return None
    parts = candidate.split("@")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None
    return candidate


def normalize_email(value: Optional[str]) -> Optional[str]:
    """Hash-matching form: Gmail addresses also lose dots and any ``+suffix``."""
    basic = normalize_email_basic(value)
    if not basic:
        return None
    local, domain = basic.split("@")
    if domain in _GMAIL_DOMAINS:
        local = local.split("+", 1)[0].replace(".", "")
        if not local:
            return None
    return f"{local}@{domain}"


def hash_email(value: Optional[str]) -> Optional[str]:
    return hash_normalized(value, normalize_email)


# --- phone -------------------------------------------------------------------

def normalize_country_code(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    digits = _NON_DIGIT_RE.sub("", value)
    return digits or None


def _in_envelope(digits: str) -> bool:
    return PHONE_MIN_DIGITS <= len(digits) <= PHONE_MAX_DIGITS


def normalize_phone_digits(value: Optional[str], default_country_code: Optional[str] = None) -> Optional[str]:
    """Country-code-qualified digits (no ``+``), or None outside 8-15 digits.

    A leading ``+`` means the number already carries its country code. Otherwise
    the configured default is prepended unless the number already starts with it
    (for country code 1 that only counts when the number has 11 digits).
    """
    trimmed = clean(value)
    if not trimmed:
        return None
    digits = _NON_DIGIT_RE.sub("", trimmed)
    if not digits:
        return None
    if re.sub(r"[^\d+]", "", trimmed).startswith("+"):
        return digits if _in_envelope(digits) else None

    cc = normalize_country_code(default_country_code)
    if not cc:
        return digits if _in_envelope(digits) else None
    if digits.startswith(cc) and _in_envelope(digits) and (cc != "1" or len(digits) == 11):
        return digits
    qualified = f"{cc}{digits}"
    return qualified if _in_envelope(qualified) else None


def normalize_phone_e164(value: Optional[str], default_country_code: Optional[str] = None) -> Optional[str]:
    digits = normalize_phone_digits(value, default_country_code)
    return f"+{digits}" if digits else None


def hash_phone(value: Optional[str], default_country_code: Optional[str] = None, *, e164: bool = True) -> Optional[str]:
    """Hash a phone number; ``e164=False`` hashes bare digits (Meta's form)."""
    normalizer = normalize_phone_e164 if e164 else normalize_phone_digits
    return hash_normalized(value, lambda v: normalizer(v, default_country_code))


def normalize_phone_loose(value: Optional[str]) -> Optional[str]:
    """Digits-only storage form for appointment snapshots."""
    if not value:
        return None
    digits = _NON_DIGIT_RE.sub("", value)
    return digits if len(digits) >= 7 else None


# --- names and address parts ---------------------------------------------------

def _letters(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    s = _NON_ALPHA_RE.sub("", value.strip().lower())
    return s or None


def normalize_name(value: Optional[str]) -> Optional[str]:
    return _letters(value)


def normalize_city(value: Optional[str]) -> Optional[str]:
    return _letters(value)


def normalize_state(value: Optional[str]) -> Optional[str]:
    s = _letters(value)
    return s if s and len(s) == 2 else None


def normalize_country(value: Optional[str]) -> Optional[str]:
    s = _letters(value)
    return s if s and len(s) == 2 else None


def normalize_zip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    digits = _NON_DIGIT_RE.sub("", value)
    return digits[:5] if len(digits) >= 5 else None


# --- time ----------------------------------------------------------------------

def to_unix_seconds(ts) -> int:
    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return int(ts.timestamp())
    return int(ts)


def parse_offset_minutes(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    s = value.strip().upper()
    if s in ("Z", "UTC"):
        return 0
    m = _OFFSET_RE.match(s)
    if not m:
        return None
    sign = -1 if m.group(1) == "-" else 1
    return sign * (int(m.group(2)) * 60 + int(m.group(3) or 0))


def offset_minutes_for_zone(ts: int, zone: Optional[str]) -> Optional[int]:
    if not zone:
        return None
    try:
        tz = ZoneInfo(zone)
    except (ZoneInfoNotFoundError, ValueError):
        return None
    offset = datetime.fromtimestamp(ts, tz).utcoffset()
    return int(offset.total_seconds() // 60) if offset is not None else None


def format_offset(offset_minutes: int) -> str:
    sign = "-" if offset_minutes < 0 else "+"
    hours, minutes = divmod(abs(offset_minutes), 60)
    return f"{sign}{hours:02d}:{minutes:02d}"


def format_offset_datetime(ts, zone: Optional[str] = None, offset_override: Optional[str] = None) -> str:
    """``YYYY-MM-DD HH:MM:SS+HH:MM`` in the override offset, else the zone, else UTC."""
    seconds = to_unix_seconds(ts)
    offset = parse_offset_minutes(offset_override)
    if offset is None:
        offset = offset_minutes_for_zone(seconds, zone)
    if offset is None:
        offset = 0
    local = datetime.fromtimestamp(seconds + offset * 60, timezone.utc)
    return local.strftime("%Y-%m-%d %H:%M:%S") + format_offset(offset)
