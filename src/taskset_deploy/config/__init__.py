"""Configuration management for taskset deployments."""

from .models import (
    DeploymentSettings,
    HealthThresholds,
    NetworkConfig,
    ProjectConfig,
    ServiceConfig,
)
from .parser import Config, ConfigValidationError
from .context import ServiceContext

__all__ = [
    "DeploymentSettings",
    "HealthThresholds",
    "NetworkConfig",
    "ProjectConfig",
    "ServiceConfig",
    "Config",
    "ConfigValidationError",
    "ServiceContext",
]
