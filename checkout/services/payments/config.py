"""
Payment tunables: typed wrappers over checkout.core.config.settings.
"""
from __future__ import annotations

from datetime import timedelta

from checkout.core.config import settings


def get_duplicate_window() -> timedelta:
    return timedelta(minutes=settings.duplicate_window_minutes)


def get_recovery_grace() -> timedelta:
    return timedelta(minutes=settings.recovery_grace_minutes)


def get_recovery_batch_size() -> int:
    return max(1, settings.recovery_batch_size)


def get_gateway_ok_statuses() -> set[str]:
    return settings.gateway_ok_statuses_set


def get_country_calling_code() -> str:
    return settings.country_calling_code


def get_webhook_url() -> str:
    return f"{settings.public_base_url.rstrip('/')}/payments/mobile/webhook"
