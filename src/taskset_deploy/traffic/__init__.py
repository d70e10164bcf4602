"""Traffic shifting between TaskSet target groups."""

from .shifter import TrafficShifter, next_weight

__all__ = [
    'TrafficShifter',
    'next_weight',
]
