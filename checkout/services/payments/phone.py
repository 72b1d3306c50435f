"""
Phone/channel normalization for Tanzanian mobile money.
Pure functions, no I/O.

Accepted input shapes (after stripping non-digits):
    0712345678      local, 10 digits
    712345678       bare subscriber number, 9 digits
    255712345678    international, 12 digits
    +255712345678   international with plus
"""
from __future__ import annotations

import re

from checkout.services.payments.config import get_country_calling_code
from checkout.services.payments.errors import InvalidPhoneFormat

SUBSCRIBER_DIGITS = 9

_NON_DIGITS = re.compile(r"\D")

# (alias substrings, channel code); first match wins
_CHANNEL_ALIASES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("vodacom", "m-pesa", "mpesa"), "vodacom"),
    (("tigo", "mixx"), "tigo"),
    (("airtel",), "airtel"),
    (("halotel", "halopesa"), "halotel"),
    (("ttcl", "t-pesa", "tpesa"), "ttcl"),
)


def _digits(raw: str | None) -> str:
    return _NON_DIGITS.sub("", str(raw or ""))


def normalize_local(raw: str | None) -> str:
    """Canonical local form 0XXXXXXXXX."""
    digits = _digits(raw)
    code = get_country_calling_code()
    if len(digits) == SUBSCRIBER_DIGITS + 1 and digits.startswith("0"):
        return digits
    if len(digits) == SUBSCRIBER_DIGITS:
        return f"0{digits}"
    if len(digits) == len(code) + SUBSCRIBER_DIGITS and digits.startswith(code):
        return f"0{digits[len(code):]}"
    raise InvalidPhoneFormat(
        "Invalid phone format. Use 0XXXXXXXXX",
        {"digits_count": len(digits)},
    )


def subscriber_number(raw: str | None) -> str:
    """Last 9 significant digits."""
    digits = _digits(raw)
    if len(digits) < SUBSCRIBER_DIGITS:
        raise InvalidPhoneFormat(
            "Invalid phone format: fewer than 9 digits",
            {"digits_count": len(digits)},
        )
    return digits[-SUBSCRIBER_DIGITS:]


def to_country_code(raw: str | None) -> str:
    """255XXXXXXXXX (no plus)."""
    return f"{get_country_calling_code()}{subscriber_number(raw)}"


def to_plus_country_code(raw: str | None) -> str:
    """+255XXXXXXXXX."""
    return f"+{to_country_code(raw)}"


def phone_variants(raw: str | None) -> list[tuple[str, str]]:
    """[(format_name, number)] in gateway attempt order."""
    return [
        ("local", normalize_local(raw)),
        ("country_code", to_country_code(raw)),
        ("plus_country_code", to_plus_country_code(raw)),
    ]


def map_provider_to_channel(provider: str | None) -> str | None:
    """Provider label -> gateway channel code; None means omit the channel hint."""
    label = (provider or "").strip().lower()
    if not label:
        return None
    for aliases, channel in _CHANNEL_ALIASES:
        if any(alias in label for alias in aliases):
            return channel
    return None


def mask_phone(raw: str | None) -> str:
    """0712***678: safe for logs and audit entries."""
    value = str(raw or "")
    if len(value) <= 7:
        return "***"
    return f"{value[:4]}***{value[-3:]}"
