"""TaskSet lifecycle: create at zero traffic, wait for steady state, promote, retire."""

import time
from typing import Optional

from botocore.exceptions import ClientError

from taskset_deploy.client.base import ResourceClient, STEADY_STATE, TaskSetDescription
from taskset_deploy.config.context import ServiceContext
from taskset_deploy.lifecycle.models import TaskSetHandle, TaskSetStatus
from taskset_deploy.utils.cancellation import CancellationToken
from taskset_deploy.utils.errors import (
    DeploymentCancelled,
    DeploymentTimeoutError,
    ErrorContext,
    ErrorHandler,
    ProvisionError,
    RetireError,
    error_handler,
)
from taskset_deploy.utils.logging import get_logger

logger = get_logger(__name__)

GONE_ERROR_CODES = {'TaskSetNotFoundException'}


class TaskSetLifecycleManager:
    """Manages TaskSets of a service through one deployment."""

    def __init__(self, client: ResourceClient, handler: Optional[ErrorHandler] = None):
        """Initialize lifecycle manager.

        Args:
            client: Platform resource client
            handler: Error translator (defaults to the shared handler)
        """
        self.client = client
        self.handler = handler or error_handler

    def current_primary(self, context: ServiceContext) -> TaskSetHandle:
        """Return a handle on the TaskSet currently serving the service.

        Raises:
            ProvisionError: If the service has no usable primary TaskSet
        """
        try:
            description = self.client.describe_primary_task_set(context)
        except Exception as e:
            raise self.handler.translate(
                e, ProvisionError, f"Failed to describe service {context.service}",
                ErrorContext(service=context.service, operation='describe_primary_task_set')
            ) from e

        if description is None:
            raise ProvisionError(
                f"Service {context.service} has no PRIMARY TaskSet",
                context=ErrorContext(service=context.service, operation='describe_primary_task_set'),
                suggestions=['Create the initial TaskSet and PrimaryTaskSet with the service template'],
            )

        target_group_arn = next(
            (arn for arn in description.target_group_arns if arn in context.target_groups), None
        )
        if target_group_arn is None:
            raise ProvisionError(
                f"Primary TaskSet {description.id} is not registered to either configured target group",
                context=ErrorContext(service=context.service, task_set_id=description.id),
            )

        return TaskSetHandle(
            id=description.id,
            arn=description.arn,
            task_definition=description.task_definition,
            target_group_arn=target_group_arn,
            weight=100,
            status=TaskSetStatus.STEADY,
            primary=True,
        )

    def create(self, context: ServiceContext, task_definition: str, target_group_arn: str) -> TaskSetHandle:
        """Register a new TaskSet behind ``target_group_arn`` at traffic weight 0.

        Raises:
            ProvisionError: If the platform rejects the TaskSet
        """
        try:
            description = self.client.create_task_set(context, task_definition, target_group_arn)
        except Exception as e:
            raise self.handler.translate(
                e, ProvisionError, f"Failed to create TaskSet for {task_definition}",
                ErrorContext(service=context.service, operation='create_task_set')
            ) from e

        logger.info(
            f"TaskSet {description.id} provisioning behind {target_group_arn}",
            extra=context.log_extra(task_set_id=description.id)
        )
        return TaskSetHandle(
            id=description.id,
            arn=description.arn,
            task_definition=task_definition,
            target_group_arn=target_group_arn,
            weight=0,
            status=TaskSetStatus.PROVISIONING,
        )

    def await_steady(
        self,
        context: ServiceContext,
        handle: TaskSetHandle,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None
    ) -> TaskSetHandle:
        """Poll until every task is running and every target passes health checks.

        Raises:
            DeploymentTimeoutError: If the TaskSet is not steady within ``timeout``
            ProvisionError: If the TaskSet disappears or cannot be described
            DeploymentCancelled: If ``token`` is cancelled while waiting
        """
        timeout = context.settings.steady_timeout if timeout is None else timeout
        token = token or CancellationToken()
        interval = context.settings.poll_interval
        started = time.monotonic()
        deadline = started + timeout

        while True:
            if self._is_steady(context, handle):
                handle.status = TaskSetStatus.STEADY
                logger.info(
                    f"TaskSet {handle.id} reached steady state in {time.monotonic() - started:.1f}s",
                    extra=context.log_extra(task_set_id=handle.id)
                )
                return handle

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DeploymentTimeoutError(
                    f"TaskSet {handle.id} did not reach steady state within {timeout:.0f}s",
                    context=ErrorContext(service=context.service, task_set_id=handle.id,
                                         operation='await_steady'),
                    suggestions=[
                        'Check the ECS service events for placement or image pull failures',
                        'Check the container health check and target group health check path',
                    ],
                )

            if token.wait(min(interval, remaining)):
                raise DeploymentCancelled(token.reason)

    def _is_steady(self, context: ServiceContext, handle: TaskSetHandle) -> bool:
        try:
            description = self.client.describe_task_set(context, handle.id)
            if description is None:
                raise ProvisionError(
                    f"TaskSet {handle.id} disappeared while provisioning",
                    context=ErrorContext(service=context.service, task_set_id=handle.id),
                )
            if not self._tasks_running(description):
                logger.debug(
                    f"TaskSet {handle.id}: {description.stability_status}, "
                    f"{description.running_count}/{description.computed_desired_count} running",
                    extra=context.log_extra(task_set_id=handle.id)
                )
                return False
            if description.computed_desired_count == 0:
                return True

            targets = self.client.describe_target_health(context, handle.target_group_arn)
        except ProvisionError:
            raise
        except Exception as e:
            raise self.handler.translate(
                e, ProvisionError, f"Failed to check TaskSet {handle.id}",
                ErrorContext(service=context.service, task_set_id=handle.id, operation='await_steady')
            ) from e

        return bool(targets) and all(target.state == 'healthy' for target in targets)

    @staticmethod
    def _tasks_running(description: TaskSetDescription) -> bool:
        return (
            description.stability_status == STEADY_STATE
            and description.pending_count == 0
            and description.running_count >= description.computed_desired_count
        )

    def promote(self, context: ServiceContext, handle: TaskSetHandle) -> None:
        """Make ``handle`` the primary TaskSet. Calling it again is a no-op.

        Raises:
            ProvisionError: If the platform rejects the promotion
        """
        if handle.primary:
            logger.debug(f"TaskSet {handle.id} is already primary",
                         extra=context.log_extra(task_set_id=handle.id))
            return

        try:
            self.client.update_primary_task_set(context, handle.id)
        except Exception as e:
            raise self.handler.translate(
                e, ProvisionError, f"Failed to promote TaskSet {handle.id}",
                ErrorContext(service=context.service, task_set_id=handle.id, operation='promote')
            ) from e

        handle.primary = True
        logger.info(f"TaskSet {handle.id} promoted to primary",
                    extra=context.log_extra(task_set_id=handle.id))

    def retire(self, context: ServiceContext, handle: TaskSetHandle) -> None:
        """Scale a TaskSet to 0, wait for its targets to drain, then delete it.

        Its traffic weight must already be 0. Retirement is not cancellable:
        it runs on both the success and the rollback path.

        Raises:
            RetireError: If the platform rejects the scale-down or the deletion
        """
        if handle.status == TaskSetStatus.RETIRED:
            return

        try:
            self.client.update_task_set_scale(context, handle.id, 0)
        except Exception as e:
            if self._is_gone(e):
                self._mark_retired(context, handle, already_deleted=True)
                return
            raise self.handler.translate(
                e, RetireError, f"Failed to scale down TaskSet {handle.id}",
                ErrorContext(service=context.service, task_set_id=handle.id, operation='retire')
            ) from e

        handle.status = TaskSetStatus.DRAINING
        self._wait_for_drain(context, handle)

        try:
            self.client.delete_task_set(context, handle.id)
        except Exception as e:
            if not self._is_gone(e):
                raise self.handler.translate(
                    e, RetireError, f"Failed to delete TaskSet {handle.id}",
                    ErrorContext(service=context.service, task_set_id=handle.id, operation='retire')
                ) from e
            self._mark_retired(context, handle, already_deleted=True)
            return

        self._mark_retired(context, handle)

    def _mark_retired(self, context: ServiceContext, handle: TaskSetHandle, already_deleted: bool = False) -> None:
        handle.status = TaskSetStatus.RETIRED
        handle.primary = False
        if already_deleted:
            logger.info(f"TaskSet {handle.id} was already deleted",
                        extra=context.log_extra(task_set_id=handle.id))
        else:
            logger.info(f"TaskSet {handle.id} retired", extra=context.log_extra(task_set_id=handle.id))

    @staticmethod
    def _is_gone(error: Exception) -> bool:
        return (
            isinstance(error, ClientError)
            and error.response.get('Error', {}).get('Code') in GONE_ERROR_CODES
        )

    def _wait_for_drain(self, context: ServiceContext, handle: TaskSetHandle) -> None:
        """Wait (bounded by drain_timeout) until the TaskSet has no tasks and no draining targets."""
        deadline = time.monotonic() + context.settings.drain_timeout

        while True:
            try:
                description = self.client.describe_task_set(context, handle.id)
                targets = self.client.describe_target_health(context, handle.target_group_arn)
            except Exception as e:
                raise self.handler.translate(
                    e, RetireError, f"Failed to read TaskSet state while draining {handle.id}",
                    ErrorContext(service=context.service, task_set_id=handle.id, operation='retire')
                ) from e

            tasks = 0 if description is None else description.running_count + description.pending_count
            draining = [t.target_id for t in targets if t.state == 'draining']
            if not tasks and not draining:
                return

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    f"TaskSet {handle.id} still has {tasks} task(s) and {len(draining)} draining target(s) "
                    f"after {context.settings.drain_timeout:.0f}s; deleting it anyway",
                    extra=context.log_extra(task_set_id=handle.id)
                )
                return

            time.sleep(min(context.settings.poll_interval, remaining))
