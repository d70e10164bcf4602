"""Listener weight shifting between the old and new TaskSet target groups."""

import threading
from typing import Dict, Optional, Tuple

from taskset_deploy.client.base import ResourceClient
from taskset_deploy.config.context import ServiceContext
from taskset_deploy.lifecycle.models import TaskSetHandle
from taskset_deploy.utils.cancellation import CancellationToken
from taskset_deploy.utils.errors import (
    DeploymentCancelled,
    ErrorContext,
    ErrorHandler,
    ShiftError,
    error_handler,
)
from taskset_deploy.utils.logging import get_logger
from taskset_deploy.utils.retry import CONFLICT_ERROR_CODES, TRANSIENT_ERROR_CODES, RetryStrategy

logger = get_logger(__name__)

Weights = Tuple[int, int]


def next_weight(current: int, target: int, step: int) -> int:
    """Move ``current`` toward ``target`` by ``step``, never overshooting."""
    if current < target:
        return min(current + step, target)
    if current > target:
        return max(current - step, target)
    return current


class TrafficShifter:
    """Sole writer of the listener's weight pair.

    Each increment is one optimistic transaction: read the weights, check
    they sum to 100, compute the next pair, write it conditioned on the read
    value, then read back and check again. Conflicting writes are retried
    with exponential backoff up to ``shift_max_retries`` times.
    """

    def __init__(self, client: ResourceClient, handler: Optional[ErrorHandler] = None):
        """Initialize traffic shifter.

        Args:
            client: Platform resource client
            handler: Error translator (defaults to the shared handler)
        """
        self.client = client
        self.handler = handler or error_handler
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _listener_lock(self, listener_arn: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(listener_arn, threading.Lock())

    def current_weights(self, context: ServiceContext, old: TaskSetHandle, new: TaskSetHandle) -> Weights:
        """Read the (old, new) weight pair.

        Raises:
            ShiftError: If the listener cannot be read or breaks the invariant
        """
        try:
            weights = self.client.describe_listener_weights(context)
        except Exception as e:
            raise self.handler.translate(
                e, ShiftError, "Failed to read listener weights", self._error_context(context)
            ) from e
        return self._pair(context, weights, old, new)

    def step(
        self,
        context: ServiceContext,
        old: TaskSetHandle,
        new: TaskSetHandle,
        target_weight_for_new: int,
        step: int
    ) -> Weights:
        """Apply one increment toward ``target_weight_for_new`` and return the new pair.

        Raises:
            ShiftError: If the update is rejected or retries are exhausted
            ValueError: If target or step are out of range
        """
        if not 0 <= target_weight_for_new <= 100:
            raise ValueError(f"Target weight must be between 0 and 100, got {target_weight_for_new}")
        if not 1 <= step <= 100:
            raise ValueError(f"Step must be between 1 and 100, got {step}")

        strategy = self._retry_strategy(context)

        with self._listener_lock(context.listener_arn):
            try:
                return strategy.execute_with_retry(
                    self._transaction, context, old, new, target_weight_for_new, step
                )
            except ShiftError:
                raise
            except Exception as e:
                raise self.handler.translate(
                    e, ShiftError, "Listener weight update rejected", self._error_context(context)
                ) from e

    def shift(
        self,
        context: ServiceContext,
        old: TaskSetHandle,
        new: TaskSetHandle,
        target_weight_for_new: int,
        step: int,
        interval: float = 0.0,
        token: Optional[CancellationToken] = None
    ) -> Weights:
        """Repeat ``step`` until the target is reached, pausing ``interval`` between increments."""
        token = token or CancellationToken()
        while True:
            weights = self.step(context, old, new, target_weight_for_new, step)
            if weights[1] == target_weight_for_new:
                return weights
            if token.wait(interval):
                raise DeploymentCancelled(token.reason)

    def attach(self, context: ServiceContext, old: TaskSetHandle, target_group_arn: str) -> Dict[str, int]:
        """Add ``target_group_arn`` to the listener's forward action at weight 0.

        ECS only registers a TaskSet behind a target group the load balancer
        already forwards to. A listener that already lists the target group is
        left untouched.

        Raises:
            ShiftError: If the listener cannot be read, breaks the invariant or rejects the write
        """
        strategy = self._retry_strategy(context)

        with self._listener_lock(context.listener_arn):
            try:
                return strategy.execute_with_retry(self._attach, context, old, target_group_arn)
            except ShiftError:
                raise
            except Exception as e:
                raise self.handler.translate(
                    e, ShiftError, f"Failed to attach {target_group_arn} to the listener",
                    self._error_context(context)
                ) from e

    def _attach(self, context: ServiceContext, old: TaskSetHandle, target_group_arn: str) -> Dict[str, int]:
        current = self.client.describe_listener_weights(context)
        old_weight, idle_weight = self._split(context, current, old.target_group_arn, target_group_arn)
        if target_group_arn in current:
            return current

        desired = {old.target_group_arn: old_weight, target_group_arn: idle_weight}
        self.client.modify_listener_weights(context, desired, expected=current)

        applied = self.client.describe_listener_weights(context)
        if applied.get(target_group_arn) != 0:
            raise ShiftError(
                f"Listener holds {applied} after attaching {target_group_arn} at weight 0",
                context=self._error_context(context),
            )
        logger.info(f"Attached {target_group_arn} to the listener at weight 0", extra=context.log_extra())
        return applied

    def _transaction(
        self,
        context: ServiceContext,
        old: TaskSetHandle,
        new: TaskSetHandle,
        target: int,
        step: int
    ) -> Weights:
        current = self.client.describe_listener_weights(context)
        old_weight, new_weight = self._pair(context, current, old, new)

        desired_new = next_weight(new_weight, target, step)
        if desired_new == new_weight:
            old.weight, new.weight = old_weight, new_weight
            return old_weight, new_weight

        desired = {old.target_group_arn: 100 - desired_new, new.target_group_arn: desired_new}
        self.client.modify_listener_weights(context, desired, expected=current)

        applied = self._pair(context, self.client.describe_listener_weights(context), old, new)
        if applied != (100 - desired_new, desired_new):
            raise ShiftError(
                f"Listener holds {applied} after writing {(100 - desired_new, desired_new)}",
                context=self._error_context(context),
            )

        old.weight, new.weight = applied
        logger.info(
            f"Shifted traffic {old_weight}/{new_weight} -> {applied[0]}/{applied[1]} "
            f"(old {old.id} / new {new.id})",
            extra=context.log_extra()
        )
        return applied

    def _pair(
        self,
        context: ServiceContext,
        weights: Dict[str, int],
        old: TaskSetHandle,
        new: TaskSetHandle
    ) -> Weights:
        return self._split(context, weights, old.target_group_arn, new.target_group_arn)

    def _split(self, context: ServiceContext, weights: Dict[str, int], old_arn: str, new_arn: str) -> Weights:
        old_weight = weights.get(old_arn, 0)
        new_weight = weights.get(new_arn, 0)
        strays = {arn: weight for arn, weight in weights.items() if arn not in (old_arn, new_arn) and weight}
        if strays or old_weight + new_weight != 100:
            raise ShiftError(
                f"Listener weights {weights} do not split 100 between {old_arn} and {new_arn}",
                context=self._error_context(context),
                suggestions=['Restore the listener forward action to the service target groups'],
            )
        return old_weight, new_weight

    @staticmethod
    def _retry_strategy(context: ServiceContext) -> RetryStrategy:
        return RetryStrategy(
            max_retries=context.settings.shift_max_retries,
            base_delay=context.settings.retry_base_delay,
            max_delay=10.0,
            retryable_error_codes=CONFLICT_ERROR_CODES | TRANSIENT_ERROR_CODES,
        )

    @staticmethod
    def _error_context(context: ServiceContext) -> ErrorContext:
        return ErrorContext(
            service=context.service,
            operation='shift',
            additional_info={'listener_arn': context.listener_arn},
        )
