"""TaskSet lifecycle management."""

from .models import TaskSetHandle, TaskSetStatus
from .manager import TaskSetLifecycleManager

__all__ = [
    'TaskSetHandle',
    'TaskSetStatus',
    'TaskSetLifecycleManager',
]
