"""Shared fixtures for the taskset-deploy test suite."""

import pytest

from taskset_deploy.config.context import ServiceContext
from taskset_deploy.config.models import DeploymentSettings, NetworkConfig
from taskset_deploy.orchestrator.orchestrator import DeploymentOrchestrator
from taskset_deploy.state.store import DeploymentStore

from tests.fakes import BLUE_TG, GREEN_TG, LISTENER_ARN, LOAD_BALANCER_ARN, FakePlatform


@pytest.fixture
def settings() -> DeploymentSettings:
    """Zero-wait settings: four increments of 25%, no settle window."""
    return DeploymentSettings(
        test_mode=True,
        step_percent=25,
        shift_interval=0,
        poll_interval=0,
        steady_timeout=1,
        drain_timeout=0,
        retry_base_delay=0,
    )


@pytest.fixture
def context(settings) -> ServiceContext:
    return ServiceContext(
        service="web",
        cluster="default",
        listener_arn=LISTENER_ARN,
        load_balancer_arn=LOAD_BALANCER_ARN,
        target_groups=(BLUE_TG, GREEN_TG),
        network=NetworkConfig(subnets=["subnet-0a1b2c3d"], security_groups=["sg-0123456789abcdef0"]),
        settings=settings,
    )


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def store(tmp_path) -> DeploymentStore:
    return DeploymentStore(str(tmp_path / ".taskset"))


@pytest.fixture
def orchestrator(platform, context) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(platform, {context.service: context})


@pytest.fixture
def config_data() -> dict:
    """A valid configuration mapping with one service."""
    return {
        "project": {"name": "trivia", "region": "us-east-1"},
        "defaults": {"step_percent": 10, "shift_interval": 300, "poll_interval": 10},
        "services": [
            {
                "name": "web",
                "listener_arn": LISTENER_ARN,
                "load_balancer_arn": LOAD_BALANCER_ARN,
                "target_groups": [BLUE_TG, GREEN_TG],
                "network": {"subnets": ["subnet-0a1b2c3d"]},
                "deployment": {"step_percent": 25},
            }
        ],
    }
