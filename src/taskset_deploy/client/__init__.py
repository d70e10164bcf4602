"""Resource client module: typed platform calls with no deployment logic."""

from .base import (
    ResourceClient,
    TaskSetDescription,
    TargetHealth,
    MetricQuery,
    PRIMARY,
    ACTIVE,
    STEADY_STATE,
)
from .aws import AWSResourceClient

__all__ = [
    'ResourceClient',
    'TaskSetDescription',
    'TargetHealth',
    'MetricQuery',
    'PRIMARY',
    'ACTIVE',
    'STEADY_STATE',
    'AWSResourceClient',
]
