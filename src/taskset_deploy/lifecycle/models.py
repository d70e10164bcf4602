"""TaskSet handle shared by the lifecycle manager, shifter and orchestrator."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class TaskSetStatus(Enum):
    """Stability status of a TaskSet within a deployment."""
    PROVISIONING = "PROVISIONING"
    STEADY = "STEADY"
    DRAINING = "DRAINING"
    RETIRED = "RETIRED"


@dataclass
class TaskSetHandle:
    """A versioned set of running tasks plus its share of listener traffic."""
    id: str
    arn: str
    task_definition: str
    target_group_arn: str
    weight: int = 0
    status: TaskSetStatus = TaskSetStatus.PROVISIONING
    primary: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'arn': self.arn,
            'task_definition': self.task_definition,
            'target_group_arn': self.target_group_arn,
            'weight': self.weight,
            'status': self.status.value,
            'primary': self.primary,
        }
