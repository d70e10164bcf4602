"""Pydantic models for configuration schema."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


class HealthThresholds(BaseModel):
    """Health evaluation thresholds for a target group.

    Defaults mirror the UnHealthyHostCount and HTTPCode_Target_5XX_Count alarms
    provisioned next to the service.
    """

    evaluation_period: int = Field(300, ge=1, description="Metric period in seconds")
    unhealthy_host_threshold: float = Field(1.0, ge=0)
    unhealthy_host_periods: int = Field(2, ge=1, le=10)
    http_5xx_threshold: float = Field(1.0, ge=0)
    http_5xx_periods: int = Field(1, ge=1, le=10)
    alarm_names: List[str] = Field(
        default_factory=list, description="CloudWatch alarms that also gate the deployment"
    )


class DeploymentSettings(BaseModel):
    """Per-deployment tuning, with built-in defaults."""

    step_percent: int = Field(10, ge=1, le=100, description="Traffic moved per increment")
    shift_interval: float = Field(
        300.0, ge=0, description="Settle window after each increment in seconds"
    )
    steady_timeout: float = Field(600.0, gt=0, description="Max wait for the new TaskSet")
    poll_interval: float = Field(10.0, ge=0, description="Polling interval in seconds")
    drain_timeout: float = Field(60.0, ge=0, description="Max wait for connection draining")
    shift_max_retries: int = Field(3, ge=0, le=10)
    retry_base_delay: float = Field(1.0, ge=0)
    test_mode: bool = Field(False, description="Allow zero intervals and short settle windows")
    health: HealthThresholds = Field(default_factory=HealthThresholds)

    @model_validator(mode="after")
    def validate_windows(self):
        """A verdict is only trusted after one full evaluation period."""
        if self.test_mode:
            return self
        if self.shift_interval < self.health.evaluation_period:
            raise ValueError(
                f"shift_interval ({self.shift_interval}s) must be at least one evaluation "
                f"period ({self.health.evaluation_period}s)"
            )
        if self.poll_interval < 1:
            raise ValueError("poll_interval must be at least 1 second outside test mode")
        return self

    def with_overrides(self, overrides: Optional[Dict[str, Any]] = None) -> "DeploymentSettings":
        """Return a validated copy with ``overrides`` applied (health merged key by key)."""
        if not overrides:
            return self
        data = self.model_dump()
        for key, value in overrides.items():
            if value is None:
                continue
            if key == "health" and isinstance(value, dict):
                data["health"] = {**data["health"], **value}
            else:
                data[key] = value
        return DeploymentSettings.model_validate(data)


class NetworkConfig(BaseModel):
    """awsvpc network configuration for new TaskSets."""

    subnets: List[str] = Field(..., min_length=1)
    security_groups: List[str] = Field(default_factory=list)
    assign_public_ip: str = Field("DISABLED", pattern="^(ENABLED|DISABLED)$")


class ServiceConfig(BaseModel):
    """An ECS service using the EXTERNAL deployment controller."""

    name: str = Field(..., min_length=1, max_length=255)
    cluster: str = Field("default", min_length=1)
    listener_arn: str = Field(..., min_length=1)
    load_balancer_arn: str = Field(..., min_length=1)
    target_groups: List[str] = Field(
        ..., description="Blue and green target group ARNs, used alternately"
    )
    container_name: str = Field("web", min_length=1)
    container_port: int = Field(80, ge=1, le=65535)
    launch_type: str = Field("FARGATE", pattern="^(FARGATE|EC2|EXTERNAL)$")
    platform_version: Optional[str] = None
    scale_percent: float = Field(100.0, gt=0, le=100)
    network: Optional[NetworkConfig] = None
    deployment: Dict[str, Any] = Field(
        default_factory=dict, description="Overrides of the project deployment defaults"
    )

    @field_validator("target_groups")
    @classmethod
    def validate_target_groups(cls, v: List[str]) -> List[str]:
        """Exactly two distinct target groups are needed for blue/green."""
        if len(v) != 2:
            raise ValueError("Exactly two target groups (blue and green) are required")
        if v[0] == v[1]:
            raise ValueError("Blue and green target groups must be different")
        return v

    @model_validator(mode="after")
    def validate_network(self):
        """Fargate task sets need awsvpc networking."""
        if self.launch_type == "FARGATE" and self.network is None:
            raise ValueError("network configuration is required for the FARGATE launch type")
        return self


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")
    region: str = Field(..., pattern="^[a-z]{2}(-[a-z]+)+-[0-9]$")
