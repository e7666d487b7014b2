"""
Phone-number normalisation (E.164) and formatting utilities.
Numbers without a country code are assumed to be in the default region (US).
Uses the `phonenumbers` library.
"""

from __future__ import annotations

import re

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

# Default region for numbers without a country code
_DEFAULT_REGION = "US"

_NON_DIALABLE = re.compile(r"[^0-9+]")


def normalise_phone(raw: str | None, region: str = _DEFAULT_REGION) -> tuple[str, bool]:
    """
    Attempt to normalise a raw phone string to E.164.

    Returns
    -------
    (e164_string, is_possible)
        e164_string is the formatted number or the stripped raw string on failure.
        is_possible is True when the number has a plausible length for its region.
        Reserved ranges (e.g. 555 numbers) are accepted: providers hand them out
        for test lines and we only need a stable lookup key.
    """
    cleaned = (raw or "").strip()
    if not cleaned:
        return ("", False)

    if cleaned.startswith("00"):
        cleaned = "+" + cleaned[2:]

    try:
        parsed = phonenumbers.parse(cleaned, region)
    except NumberParseException:
        return (_NON_DIALABLE.sub("", cleaned), False)

    if not phonenumbers.is_possible_number(parsed):
        return (_NON_DIALABLE.sub("", cleaned), False)

    return (phonenumbers.format_number(parsed, PhoneNumberFormat.E164), True)


def lookup_key(raw: str | None) -> str:
    """Key used to match numbers across webhooks, caller memory and jobs."""
    e164, _ = normalise_phone(raw)
    return e164


def sanitize_extracted_phone(raw: str | None) -> str | None:
    """Keep an LLM-extracted phone only if it carries at least 10 digits."""
    if not raw or not isinstance(raw, str):
        return None
    digits = _NON_DIALABLE.sub("", raw)
    if sum(ch.isdigit() for ch in digits) < 10:
        return None
    e164, ok = normalise_phone(digits)
    return e164 if ok else digits


def format_for_display(e164: str) -> str:
    """Format an E.164 number into a human-readable national format."""
    try:
        parsed = phonenumbers.parse(e164, _DEFAULT_REGION)
        return phonenumbers.format_number(parsed, PhoneNumberFormat.NATIONAL)
    except NumberParseException:
        return e164
