"""Deployment state, transitions and status snapshots."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from taskset_deploy.config.context import ServiceContext
from taskset_deploy.lifecycle.models import TaskSetHandle
from taskset_deploy.monitoring.health import HealthVerdict
from taskset_deploy.state.models import DeploymentRecord, TaskSetRecord, TransitionRecord
from taskset_deploy.utils.cancellation import CancellationToken


class DeploymentState(Enum):
    """States of a blue/green deployment."""
    INIT = "INIT"
    PROVISIONING_NEW = "PROVISIONING_NEW"
    AWAIT_STEADY = "AWAIT_STEADY"
    SHIFTING = "SHIFTING"
    MONITORING = "MONITORING"
    PROMOTING = "PROMOTING"
    RETIRING_OLD = "RETIRING_OLD"
    SUCCEEDED = "SUCCEEDED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({
    DeploymentState.SUCCEEDED,
    DeploymentState.ROLLED_BACK,
    DeploymentState.FAILED,
})

# Cancel requests are ignored here; the deployment runs to its outcome
UNCANCELLABLE_STATES = TERMINAL_STATES | {
    DeploymentState.RETIRING_OLD,
    DeploymentState.ROLLING_BACK,
}

EXIT_CODES = {
    DeploymentState.SUCCEEDED: 0,
    DeploymentState.FAILED: 1,
    DeploymentState.ROLLED_BACK: 2,
}
CONFLICT_EXIT_CODE = 3


def new_deployment_id() -> str:
    """Sortable, collision-resistant deployment id."""
    timestamp = datetime.utcnow().strftime("%Y%m%dT%H%M%S")
    return f"{timestamp}Z-{uuid.uuid4().hex[:6]}"


@dataclass
class StateTransition:
    """One edge taken through the state machine."""
    from_state: Optional[DeploymentState]
    to_state: DeploymentState
    at: datetime = field(default_factory=datetime.utcnow)
    cause: Optional[str] = None

    def to_record(self) -> TransitionRecord:
        return TransitionRecord(
            from_state=self.from_state.value if self.from_state else None,
            to_state=self.to_state.value,
            at=self.at,
            cause=self.cause,
        )


@dataclass
class DeploymentStatus:
    """Snapshot returned by ``get_status``."""
    id: str
    service: str
    state: DeploymentState
    weights: Optional[Tuple[int, int]]
    health_summary: Dict[str, str]
    cause: Optional[str] = None
    error_type: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    history: List[StateTransition] = field(default_factory=list)
    task_definition: Optional[str] = None
    old_task_set_id: Optional[str] = None
    new_task_set_id: Optional[str] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def exit_code(self) -> Optional[int]:
        return EXIT_CODES.get(self.state)

    @classmethod
    def from_record(cls, record: DeploymentRecord) -> "DeploymentStatus":
        """Rebuild a status from a stored record."""
        return cls(
            id=record.id,
            service=record.service,
            state=DeploymentState(record.state),
            weights=tuple(record.weights) if record.weights else None,
            health_summary=dict(record.health_summary),
            cause=record.cause,
            error_type=record.error_type,
            warnings=list(record.warnings),
            history=[
                StateTransition(
                    from_state=DeploymentState(t.from_state) if t.from_state else None,
                    to_state=DeploymentState(t.to_state),
                    at=t.at,
                    cause=t.cause,
                )
                for t in record.history
            ],
            task_definition=record.task_definition,
            old_task_set_id=record.old_task_set.id if record.old_task_set else None,
            new_task_set_id=record.new_task_set.id if record.new_task_set else None,
            created_at=record.created_at,
            finished_at=record.finished_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'service': self.service,
            'state': self.state.value,
            'weights': list(self.weights) if self.weights else None,
            'health_summary': self.health_summary,
            'cause': self.cause,
            'error_type': self.error_type,
            'warnings': self.warnings,
            'task_definition': self.task_definition,
            'old_task_set_id': self.old_task_set_id,
            'new_task_set_id': self.new_task_set_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'history': [
                {
                    'from': t.from_state.value if t.from_state else None,
                    'to': t.to_state.value,
                    'at': t.at.isoformat(),
                    'cause': t.cause,
                }
                for t in self.history
            ],
        }


@dataclass
class Deployment:
    """Mutable state of one deployment, owned by its worker thread."""
    id: str
    context: ServiceContext
    task_definition: str
    state: DeploymentState = DeploymentState.INIT
    old: Optional[TaskSetHandle] = None
    new: Optional[TaskSetHandle] = None
    history: List[StateTransition] = field(default_factory=list)
    schedule: Dict[str, Any] = field(default_factory=dict)
    last_verdicts: Dict[str, HealthVerdict] = field(default_factory=dict)
    traffic_shifted: bool = False
    cause: Optional[str] = None
    error_type: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    token: CancellationToken = field(default_factory=CancellationToken)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def service(self) -> str:
        return self.context.service

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def weights(self) -> Optional[Tuple[int, int]]:
        """Last known (old, new) listener weights."""
        if self.old is None:
            return None
        if self.new is None:
            return (self.old.weight, 0)
        return (self.old.weight, self.new.weight)

    def health_summary(self) -> Dict[str, str]:
        summary = {}
        for label, handle in (('old', self.old), ('new', self.new)):
            if handle is None:
                continue
            verdict = self.last_verdicts.get(handle.target_group_arn)
            summary[label] = verdict.summary() if verdict else "UNKNOWN"
        return summary

    def status(self) -> DeploymentStatus:
        return DeploymentStatus(
            id=self.id,
            service=self.service,
            state=self.state,
            weights=self.weights,
            health_summary=self.health_summary(),
            cause=self.cause,
            error_type=self.error_type,
            warnings=list(self.warnings),
            history=list(self.history),
            task_definition=self.task_definition,
            old_task_set_id=self.old.id if self.old else None,
            new_task_set_id=self.new.id if self.new else None,
            created_at=self.created_at,
            finished_at=self.finished_at,
        )

    def to_record(self) -> DeploymentRecord:
        return DeploymentRecord(
            id=self.id,
            service=self.service,
            cluster=self.context.cluster,
            task_definition=self.task_definition,
            state=self.state.value,
            old_task_set=TaskSetRecord(**self.old.to_dict()) if self.old else None,
            new_task_set=TaskSetRecord(**self.new.to_dict()) if self.new else None,
            weights=list(self.weights) if self.weights else None,
            schedule=dict(self.schedule),
            health_summary=self.health_summary(),
            cause=self.cause,
            error_type=self.error_type,
            warnings=list(self.warnings),
            history=[t.to_record() for t in self.history],
            created_at=self.created_at,
            updated_at=self.updated_at,
            finished_at=self.finished_at,
        )
