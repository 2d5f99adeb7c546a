"""
Telemetry Module
================

Observability for the conversion relay.

Components:
- sentry.py: Error tracking

Usage:
    from capi_bridge.telemetry import init_observability

    # Initialize on app creation
    init_observability()
"""

from capi_bridge.telemetry.sentry import (
    init_sentry,
    capture_exception,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization, e.g. {"sentry": False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
]
