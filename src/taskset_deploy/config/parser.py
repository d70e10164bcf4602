"""YAML configuration parser for taskset deployments."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from .models import DeploymentSettings, ProjectConfig, ServiceConfig


class ConfigValidationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


def _collect(errors: List[Dict], prefix: List[Any], exc: ValidationError) -> None:
    for error in exc.errors():
        errors.append({"loc": prefix + list(error["loc"]), "msg": error["msg"]})


class Config:
    """Configuration manager for taskset deployments.

    Expected layout::

        project: {name: trivia, region: us-east-1}
        defaults: {step_percent: 10, shift_interval: 300, ...}
        services:
          - name: trivia-backend
            listener_arn: ...
            load_balancer_arn: ...
            target_groups: [blue-arn, green-arn]
            deployment: {step_percent: 25}
    """

    def __init__(self, config_path: str):
        """Initialize configuration manager.

        Args:
            config_path: Path to taskset.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.defaults: DeploymentSettings = DeploymentSettings()
        self.services: Dict[str, ServiceConfig] = {}

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        return self.load_dict(self.data)

    def load_dict(self, data: Dict) -> "Config":
        """Validate and parse an already-loaded configuration mapping."""
        self.data = data
        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.project = ProjectConfig(**self.data["project"])
        self.defaults = DeploymentSettings(**self.data.get("defaults", {}))
        self.services = {}
        for service_data in self.data["services"]:
            service = ServiceConfig(**service_data)
            self.services[service.name] = service

        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: List[Dict] = []

        if not isinstance(self.data, dict):
            return [{"loc": [], "msg": "Configuration must be a mapping"}]

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        else:
            try:
                ProjectConfig(**self.data["project"])
            except ValidationError as e:
                _collect(errors, ["project"], e)

        defaults = None
        try:
            defaults = DeploymentSettings(**self.data.get("defaults", {}))
        except ValidationError as e:
            _collect(errors, ["defaults"], e)

        services = self.data.get("services")
        if not isinstance(services, list) or not services:
            errors.append({"loc": ["services"], "msg": "At least one service must be defined"})
            return errors

        seen = set()
        for i, service_data in enumerate(services):
            try:
                service = ServiceConfig(**service_data)
            except ValidationError as e:
                _collect(errors, ["services", i], e)
                continue
            except TypeError:
                errors.append({"loc": ["services", i], "msg": "Service must be a mapping"})
                continue

            if service.name in seen:
                errors.append({"loc": ["services", i, "name"],
                               "msg": f"Duplicate service name '{service.name}'"})
            seen.add(service.name)

            if defaults is not None and service.deployment:
                try:
                    defaults.with_overrides(service.deployment)
                except ValidationError as e:
                    _collect(errors, ["services", i, "deployment"], e)

        return errors

    def get_service(self, name: str) -> ServiceConfig:
        """Get a service configuration by name.

        Raises:
            KeyError: If the service is not configured
        """
        if name not in self.services:
            available = ", ".join(sorted(self.services)) or "none"
            raise KeyError(f"Service '{name}' not found in configuration (available: {available})")
        return self.services[name]

    def settings_for(self, name: str, overrides: Optional[Dict[str, Any]] = None) -> DeploymentSettings:
        """Effective settings: built-in defaults < project defaults < service < ``overrides``."""
        service = self.get_service(name)
        return self.defaults.with_overrides(service.deployment).with_overrides(overrides)
