"""Health monitoring for target groups."""

from .health import HealthMonitor, HealthStatus, HealthVerdict, breaches

__all__ = [
    'HealthMonitor',
    'HealthStatus',
    'HealthVerdict',
    'breaches',
]
