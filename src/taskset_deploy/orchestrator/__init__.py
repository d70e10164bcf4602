"""Deployment orchestration: the blue/green state machine and its operator surface."""

from .models import (
    CONFLICT_EXIT_CODE,
    EXIT_CODES,
    TERMINAL_STATES,
    UNCANCELLABLE_STATES,
    Deployment,
    DeploymentState,
    DeploymentStatus,
    StateTransition,
)
from .state_machine import TRANSITIONS, DeploymentStateMachine, InvalidTransitionError
from .orchestrator import DeploymentOrchestrator

__all__ = [
    'CONFLICT_EXIT_CODE',
    'EXIT_CODES',
    'TERMINAL_STATES',
    'UNCANCELLABLE_STATES',
    'Deployment',
    'DeploymentState',
    'DeploymentStatus',
    'StateTransition',
    'TRANSITIONS',
    'DeploymentStateMachine',
    'InvalidTransitionError',
    'DeploymentOrchestrator',
]
