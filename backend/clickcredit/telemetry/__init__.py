"""
Telemetry Module
================

Error tracking for the attribution core.

Components:
- sentry.py: Error tracking for caught-and-degraded failures

Usage:
    from clickcredit.telemetry import init_sentry, capture_exception
"""

from clickcredit.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
