"""Deployment record persistence."""

from .models import DeploymentRecord, TaskSetRecord, TransitionRecord
from .store import DeploymentStore, ServiceLock, StoreError

__all__ = [
    "DeploymentRecord",
    "TaskSetRecord",
    "TransitionRecord",
    "DeploymentStore",
    "ServiceLock",
    "StoreError",
]
