"""Persisted deployment records."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class TransitionRecord(BaseModel):
    """One state change of a deployment."""

    from_state: Optional[str] = Field(None, description="State left (None for creation)")
    to_state: str = Field(..., description="State entered")
    at: datetime = Field(default_factory=datetime.utcnow)
    cause: Optional[str] = Field(None, description="Why the transition happened, if not routine")


class TaskSetRecord(BaseModel):
    """Snapshot of a TaskSet handle."""

    id: str
    arn: str
    task_definition: str
    target_group_arn: str
    weight: int = Field(0, ge=0, le=100)
    status: str
    primary: bool = False


class DeploymentRecord(BaseModel):
    """Everything ``get-status`` reports about a deployment."""

    id: str = Field(..., description="Deployment ID")
    service: str = Field(..., description="ECS service name")
    cluster: str = Field(..., description="ECS cluster")
    task_definition: str = Field(..., description="Task definition being rolled out")
    state: str = Field(..., description="Current DeploymentState value")
    old_task_set: Optional[TaskSetRecord] = None
    new_task_set: Optional[TaskSetRecord] = None
    weights: Optional[List[int]] = Field(None, description="[old, new] listener weights")
    schedule: Dict[str, Any] = Field(default_factory=dict, description="Shift schedule")
    health_summary: Dict[str, str] = Field(default_factory=dict)
    cause: Optional[str] = Field(None, description="Cause of a non-success outcome")
    error_type: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    history: List[TransitionRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in ("SUCCEEDED", "ROLLED_BACK", "FAILED")
