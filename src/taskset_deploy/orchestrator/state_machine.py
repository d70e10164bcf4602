"""Explicit state machine driving one blue/green deployment.

Each state has a handler that performs the action leaving that state and
returns the next state together with an optional cause. The transition table
below is the only authority on which edges exist.
"""

import time
from contextlib import closing
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Optional, Tuple, Union

from taskset_deploy.lifecycle.manager import TaskSetLifecycleManager
from taskset_deploy.monitoring.health import HealthMonitor
from taskset_deploy.orchestrator.models import (
    Deployment,
    DeploymentState,
    StateTransition,
    UNCANCELLABLE_STATES,
)
from taskset_deploy.traffic.shifter import TrafficShifter
from taskset_deploy.utils.errors import (
    DeploymentCancelled,
    DeploymentError,
    ErrorContext,
    ProvisionError,
    RetireError,
    RollbackError,
    ShiftError,
    UnhealthyError,
    error_handler,
)
from taskset_deploy.utils.logging import get_logger

logger = get_logger(__name__)

S = DeploymentState

TRANSITIONS: Dict[DeploymentState, FrozenSet[DeploymentState]] = {
    S.INIT: frozenset({S.PROVISIONING_NEW, S.ROLLING_BACK, S.FAILED}),
    S.PROVISIONING_NEW: frozenset({S.AWAIT_STEADY, S.ROLLING_BACK, S.FAILED}),
    S.AWAIT_STEADY: frozenset({S.SHIFTING, S.ROLLING_BACK, S.FAILED}),
    S.SHIFTING: frozenset({S.MONITORING, S.ROLLING_BACK, S.FAILED}),
    S.MONITORING: frozenset({S.SHIFTING, S.PROMOTING, S.ROLLING_BACK, S.FAILED}),
    S.PROMOTING: frozenset({S.RETIRING_OLD, S.ROLLING_BACK, S.FAILED}),
    S.RETIRING_OLD: frozenset({S.SUCCEEDED, S.FAILED}),
    S.ROLLING_BACK: frozenset({S.ROLLED_BACK, S.FAILED}),
    S.SUCCEEDED: frozenset(),
    S.ROLLED_BACK: frozenset(),
    S.FAILED: frozenset(),
}

Cause = Union[str, Exception, None]
HandlerResult = Tuple[DeploymentState, Cause]
TransitionCallback = Callable[[Deployment, StateTransition], None]


class InvalidTransitionError(Exception):
    """Raised when a handler asks for an edge missing from the transition table."""

    pass


class DeploymentStateMachine:
    """Runs a deployment from ``INIT`` to a terminal state."""

    def __init__(
        self,
        lifecycle: TaskSetLifecycleManager,
        shifter: TrafficShifter,
        monitor: HealthMonitor,
        on_transition: Optional[TransitionCallback] = None
    ):
        """Initialize state machine.

        Args:
            lifecycle: TaskSet lifecycle manager
            shifter: Traffic shifter, the only listener writer
            monitor: Health monitor
            on_transition: Called after every transition (persistence, progress)
        """
        self.lifecycle = lifecycle
        self.shifter = shifter
        self.monitor = monitor
        self.on_transition = on_transition
        self._handlers: Dict[DeploymentState, Callable[[Deployment], HandlerResult]] = {
            S.INIT: self._provision,
            S.PROVISIONING_NEW: self._await_steady,
            S.AWAIT_STEADY: self._start_shifting,
            S.SHIFTING: self._shift,
            S.MONITORING: self._monitor,
            S.PROMOTING: self._promote,
            S.RETIRING_OLD: self._retire_old,
            S.ROLLING_BACK: self._roll_back,
        }

    def run(self, deployment: Deployment) -> Deployment:
        """Drive ``deployment`` until it is terminal."""
        if not deployment.history:
            self._record(deployment, StateTransition(from_state=None, to_state=deployment.state))

        while not deployment.is_terminal:
            state = deployment.state

            if state not in UNCANCELLABLE_STATES and deployment.token.cancelled:
                self.transition(deployment, S.ROLLING_BACK, DeploymentCancelled(deployment.token.reason))
                continue

            handler = self._handlers[state]
            try:
                next_state, cause = handler(deployment)
            except DeploymentCancelled as e:
                next_state = S.FAILED if state in UNCANCELLABLE_STATES else S.ROLLING_BACK
                cause = e
            except Exception as e:
                logger.exception(
                    f"Unexpected error in state {state.value}: {e}",
                    extra=deployment.context.log_extra(deployment_id=deployment.id, state=state.value)
                )
                next_state, cause = S.FAILED, e

            self.transition(deployment, next_state, cause)

        return deployment

    def transition(self, deployment: Deployment, to_state: DeploymentState, cause: Cause = None) -> StateTransition:
        """Move ``deployment`` along one edge of the transition table.

        Raises:
            InvalidTransitionError: If the edge does not exist
        """
        from_state = deployment.state
        if to_state not in TRANSITIONS[from_state]:
            raise InvalidTransitionError(f"Illegal transition {from_state.value} -> {to_state.value}")

        cause_text = None
        if isinstance(cause, Exception):
            cause_text = self._describe(cause)
            if to_state in (S.ROLLING_BACK, S.FAILED):
                deployment.error_type = type(cause).__name__
            if isinstance(cause, DeploymentError):
                cause.context.deployment_id = deployment.id
                error_handler.log_error(cause)
        elif cause:
            cause_text = cause

        if to_state in (S.ROLLING_BACK, S.FAILED) and cause_text:
            deployment.cause = cause_text

        deployment.state = to_state
        deployment.updated_at = datetime.utcnow()
        if deployment.is_terminal:
            deployment.finished_at = deployment.updated_at

        transition = StateTransition(from_state=from_state, to_state=to_state, cause=cause_text)
        self._record(deployment, transition)
        return transition

    def _record(self, deployment: Deployment, transition: StateTransition) -> None:
        deployment.history.append(transition)
        message = (
            f"{transition.from_state.value} -> {transition.to_state.value}"
            if transition.from_state else f"Deployment created in {transition.to_state.value}"
        )
        if transition.cause:
            message += f" ({transition.cause})"
        logger.info(
            message,
            extra=deployment.context.log_extra(deployment_id=deployment.id, state=transition.to_state.value)
        )

        if self.on_transition:
            try:
                self.on_transition(deployment, transition)
            except Exception as e:
                logger.warning(
                    f"Transition callback failed: {e}",
                    extra=deployment.context.log_extra(deployment_id=deployment.id)
                )

    @staticmethod
    def _describe(error: Exception) -> str:
        if isinstance(error, DeploymentCancelled):
            return f"Cancelled: {error}"
        if isinstance(error, DeploymentError):
            return error.message
        return f"{type(error).__name__}: {error}"

    # State handlers

    def _provision(self, deployment: Deployment) -> HandlerResult:
        ctx = deployment.context
        try:
            deployment.old = self.lifecycle.current_primary(ctx)
            target_group = ctx.other_target_group(deployment.old.target_group_arn)
            self.shifter.attach(ctx, deployment.old, target_group)
            deployment.new = self.lifecycle.create(ctx, deployment.task_definition, target_group)
        except (ProvisionError, ShiftError) as e:
            return S.FAILED, e
        return S.PROVISIONING_NEW, None

    def _await_steady(self, deployment: Deployment) -> HandlerResult:
        try:
            self.lifecycle.await_steady(deployment.context, deployment.new, token=deployment.token)
        except (TimeoutError, ProvisionError) as e:
            return S.ROLLING_BACK, e
        return S.AWAIT_STEADY, None

    def _start_shifting(self, deployment: Deployment) -> HandlerResult:
        settings = deployment.context.settings
        deployment.schedule = {
            'target_weight': 100,
            'step_percent': settings.step_percent,
            'shift_interval': settings.shift_interval,
            'increments': -(-100 // settings.step_percent),
        }
        logger.info(
            f"Shifting to {deployment.new.id} in steps of {settings.step_percent}% "
            f"every {settings.shift_interval:.0f}s",
            extra=deployment.context.log_extra(deployment_id=deployment.id)
        )
        return S.SHIFTING, None

    def _shift(self, deployment: Deployment) -> HandlerResult:
        deployment.traffic_shifted = True
        try:
            self.shifter.step(
                deployment.context,
                deployment.old,
                deployment.new,
                deployment.schedule.get('target_weight', 100),
                deployment.context.settings.step_percent,
            )
        except ShiftError as e:
            return S.ROLLING_BACK, e
        return S.MONITORING, None

    def _monitor(self, deployment: Deployment) -> HandlerResult:
        ctx = deployment.context
        settings = ctx.settings
        target_groups = [deployment.old.target_group_arn, deployment.new.target_group_arn]
        interval = settings.poll_interval or settings.shift_interval
        started = time.monotonic()

        rounds = self.monitor.watch_all(ctx, target_groups, interval, deployment.token)
        with closing(rounds):
            for verdicts in rounds:
                deployment.last_verdicts.update(verdicts)
                unhealthy = [v for v in verdicts.values() if not v.healthy]
                if unhealthy:
                    reasons = "; ".join(f"{v.target_group_arn}: {v.reason}" for v in unhealthy)
                    return S.ROLLING_BACK, UnhealthyError(
                        f"Health check failed at weights {deployment.weights}: {reasons}",
                        context=ErrorContext(service=ctx.service, operation='monitor'),
                    )
                if time.monotonic() - started >= settings.shift_interval:
                    break
            else:
                raise DeploymentCancelled(deployment.token.reason)

        if deployment.new.weight >= deployment.schedule.get('target_weight', 100):
            return S.PROMOTING, None
        return S.SHIFTING, None

    def _promote(self, deployment: Deployment) -> HandlerResult:
        try:
            self.lifecycle.promote(deployment.context, deployment.new)
        except ProvisionError as e:
            return S.ROLLING_BACK, e
        deployment.old.primary = False
        return S.RETIRING_OLD, None

    def _retire_old(self, deployment: Deployment) -> HandlerResult:
        try:
            self.lifecycle.retire(deployment.context, deployment.old)
        except RetireError as e:
            e.context.deployment_id = deployment.id
            error_handler.log_error(e)
            deployment.warnings.append(e.message)
        return S.SUCCEEDED, None

    def _roll_back(self, deployment: Deployment) -> HandlerResult:
        ctx = deployment.context
        old, new = deployment.old, deployment.new
        if new is None:
            return S.ROLLED_BACK, None

        try:
            if deployment.traffic_shifted:
                # Single step back: speed over gradualness
                self.shifter.step(ctx, old, new, 0, 100)
            if new.primary:
                self.lifecycle.promote(ctx, old)
                new.primary = False
            self.lifecycle.retire(ctx, new)
        except Exception as e:
            reason = f" while rolling back from: {deployment.cause}" if deployment.cause else ""
            return S.FAILED, RollbackError(
                f"Rollback failed: {self._describe(e)}{reason}",
                context=ErrorContext(service=ctx.service, deployment_id=deployment.id, operation='rollback'),
                cause=e,
                suggestions=[
                    'Inspect the listener weights and TaskSets of the service',
                    f'Restore 100% traffic to {old.target_group_arn if old else "the previous target group"}',
                    f'Delete TaskSet {new.id} once it receives no traffic',
                ],
            )

        return S.ROLLED_BACK, None
