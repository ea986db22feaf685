"""Helpers for keeping caller PII out of logs."""

from __future__ import annotations


def redact_pii(value: str | None) -> str:
    """Mask PII for logging: show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]
