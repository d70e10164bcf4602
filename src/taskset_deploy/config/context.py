"""Per-service context passed through every component call."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .models import DeploymentSettings, NetworkConfig, ServiceConfig


@dataclass(frozen=True)
class ServiceContext:
    """Everything a component needs to act on one ECS service.

    Several services can be orchestrated by one process; nothing about a
    service lives in module-level state.
    """
    service: str
    cluster: str
    listener_arn: str
    load_balancer_arn: str
    target_groups: Tuple[str, str]
    container_name: str = "web"
    container_port: int = 80
    launch_type: str = "FARGATE"
    platform_version: Optional[str] = None
    scale_percent: float = 100.0
    network: Optional[NetworkConfig] = None
    settings: DeploymentSettings = field(default_factory=DeploymentSettings)

    @classmethod
    def from_config(cls, config: ServiceConfig, settings: DeploymentSettings) -> "ServiceContext":
        return cls(
            service=config.name,
            cluster=config.cluster,
            listener_arn=config.listener_arn,
            load_balancer_arn=config.load_balancer_arn,
            target_groups=(config.target_groups[0], config.target_groups[1]),
            container_name=config.container_name,
            container_port=config.container_port,
            launch_type=config.launch_type,
            platform_version=config.platform_version,
            scale_percent=config.scale_percent,
            network=config.network,
            settings=settings,
        )

    def with_settings(self, settings: DeploymentSettings) -> "ServiceContext":
        return replace(self, settings=settings)

    def other_target_group(self, target_group_arn: str) -> str:
        """The half of the blue/green pair not bound to ``target_group_arn``."""
        blue, green = self.target_groups
        if target_group_arn == blue:
            return green
        if target_group_arn == green:
            return blue
        raise ValueError(f"Target group {target_group_arn} is not part of service {self.service}")

    def network_configuration(self) -> Optional[Dict[str, Any]]:
        """ECS ``networkConfiguration`` payload, if awsvpc networking is configured."""
        if self.network is None:
            return None
        awsvpc: Dict[str, Any] = {
            'subnets': list(self.network.subnets),
            'assignPublicIp': self.network.assign_public_ip,
        }
        if self.network.security_groups:
            awsvpc['securityGroups'] = list(self.network.security_groups)
        return {'awsvpcConfiguration': awsvpc}

    def log_extra(self, **kwargs: Any) -> Dict[str, Any]:
        return {'service': self.service, **kwargs}

    def alarm_names(self) -> List[str]:
        return list(self.settings.health.alarm_names)
