"""Resource client interface: the I/O boundary to the container platform."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from taskset_deploy.config.context import ServiceContext


# ECS TaskSet stability values
STEADY_STATE = "STEADY_STATE"

# ECS TaskSet status values
PRIMARY = "PRIMARY"
ACTIVE = "ACTIVE"


@dataclass
class TaskSetDescription:
    """Platform view of a TaskSet."""
    id: str
    arn: str
    task_definition: str
    status: str
    stability_status: str
    running_count: int = 0
    pending_count: int = 0
    computed_desired_count: int = 0
    target_group_arns: List[str] = field(default_factory=list)


@dataclass
class TargetHealth:
    """Health of a single target registered in a target group."""
    target_id: str
    state: str
    reason: Optional[str] = None


@dataclass
class MetricQuery:
    """One CloudWatch metric read against a target group."""
    metric_name: str
    statistic: str
    period: int
    periods: int


class ResourceClient(ABC):
    """Typed calls to the platform for task sets, listener weights and metrics.

    Implementations contain no deployment logic and raise the platform's own
    errors (botocore ``ClientError`` for AWS); translation into deployment
    errors happens in the components calling them.
    """

    # TaskSets

    @abstractmethod
    def describe_primary_task_set(self, context: ServiceContext) -> Optional[TaskSetDescription]:
        """Return the service's PRIMARY TaskSet, or None."""

    @abstractmethod
    def create_task_set(
        self,
        context: ServiceContext,
        task_definition: str,
        target_group_arn: str
    ) -> TaskSetDescription:
        """Create a TaskSet registered to ``target_group_arn``."""

    @abstractmethod
    def describe_task_set(self, context: ServiceContext, task_set_id: str) -> Optional[TaskSetDescription]:
        """Describe a TaskSet; None if it no longer exists."""

    @abstractmethod
    def update_primary_task_set(self, context: ServiceContext, task_set_id: str) -> None:
        """Designate ``task_set_id`` as the service's primary TaskSet."""

    @abstractmethod
    def update_task_set_scale(self, context: ServiceContext, task_set_id: str, percent: float) -> None:
        """Scale a TaskSet to ``percent`` of the service's desired count."""

    @abstractmethod
    def delete_task_set(self, context: ServiceContext, task_set_id: str) -> None:
        """Delete a TaskSet. ECS refuses unless it is scaled to 0."""

    # Listener

    @abstractmethod
    def describe_listener_weights(self, context: ServiceContext) -> Dict[str, int]:
        """Weights of the listener's forward action, keyed by target group ARN."""

    @abstractmethod
    def modify_listener_weights(
        self,
        context: ServiceContext,
        weights: Dict[str, int],
        expected: Optional[Dict[str, int]] = None
    ) -> None:
        """Replace the forward action weights.

        When ``expected`` is given the write only happens if the listener
        still holds exactly those weights; otherwise a conflicting-update
        error is raised.
        """

    # Target groups and metrics

    @abstractmethod
    def describe_target_health(self, context: ServiceContext, target_group_arn: str) -> List[TargetHealth]:
        """Health of every target registered in ``target_group_arn``."""

    @abstractmethod
    def get_metric_datapoints(
        self,
        context: ServiceContext,
        target_group_arn: str,
        query: MetricQuery,
        end_time: Optional[datetime] = None
    ) -> List[float]:
        """Datapoints for ``query`` over its window, oldest first."""

    @abstractmethod
    def describe_alarm_states(self, context: ServiceContext, alarm_names: List[str]) -> Dict[str, str]:
        """State value (OK, ALARM, INSUFFICIENT_DATA) of each named alarm."""
