"""Periodic health checks over in-flight work."""

from paystub.monitoring.stuck import StuckDetector

__all__ = ["StuckDetector"]
