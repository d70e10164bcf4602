"""Operator-facing orchestrator: submit, wait, status and cancel deployments."""

import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import ValidationError

from taskset_deploy.client.base import ResourceClient
from taskset_deploy.config.context import ServiceContext
from taskset_deploy.config.parser import Config
from taskset_deploy.lifecycle.manager import TaskSetLifecycleManager
from taskset_deploy.monitoring.health import HealthMonitor
from taskset_deploy.orchestrator.models import (
    Deployment,
    DeploymentState,
    DeploymentStatus,
    StateTransition,
    UNCANCELLABLE_STATES,
    new_deployment_id,
)
from taskset_deploy.orchestrator.state_machine import DeploymentStateMachine
from taskset_deploy.state.store import DeploymentStore, ServiceLock
from taskset_deploy.traffic.shifter import TrafficShifter
from taskset_deploy.utils.cancellation import CancellationToken
from taskset_deploy.utils.errors import (
    ConfigurationError,
    ConflictError,
    DeploymentNotFoundError,
    DeploymentTimeoutError,
    ErrorContext,
)
from taskset_deploy.utils.logging import get_logger

logger = get_logger(__name__)

TransitionListener = Callable[[DeploymentStatus, StateTransition], None]


class DeploymentOrchestrator:
    """Runs at most one deployment per service, each on its own worker thread."""

    def __init__(
        self,
        client: ResourceClient,
        services: Dict[str, ServiceContext],
        store: Optional[DeploymentStore] = None,
        max_health_workers: int = 4,
        listeners: Optional[List[TransitionListener]] = None,
        retain_finished: int = 100
    ):
        """Initialize deployment orchestrator.

        Args:
            client: Platform resource client
            services: Service contexts by service name
            store: Optional deployment store for persistence, cross-process
                locking and cancellation
            max_health_workers: Bound on parallel health reads
            listeners: Callbacks invoked with a status snapshot after every transition
            retain_finished: Finished deployments kept in memory; older ones are
                only available through the store
        """
        self.client = client
        self.services = dict(services)
        self.store = store
        self.listeners: List[TransitionListener] = list(listeners or [])

        self.lifecycle = TaskSetLifecycleManager(client)
        self.shifter = TrafficShifter(client)
        self.monitor = HealthMonitor(client, max_workers=max_health_workers)
        self.state_machine = DeploymentStateMachine(
            self.lifecycle, self.shifter, self.monitor, on_transition=self._on_transition
        )

        self._lock = threading.Lock()
        self._active: Dict[str, str] = {}
        self._deployments: Dict[str, Deployment] = {}
        self._done: Dict[str, threading.Event] = {}
        self._service_locks: Dict[str, ServiceLock] = {}
        self._finished: Deque[str] = deque()
        self.retain_finished = retain_finished

    @classmethod
    def from_config(
        cls,
        config: Config,
        client: ResourceClient,
        store: Optional[DeploymentStore] = None,
        **kwargs: Any
    ) -> "DeploymentOrchestrator":
        """Build an orchestrator for every service in a loaded configuration."""
        services = {
            name: ServiceContext.from_config(service, config.settings_for(name))
            for name, service in config.services.items()
        }
        return cls(client, services, store=store, **kwargs)

    def add_listener(self, listener: TransitionListener) -> None:
        self.listeners.append(listener)

    def submit(
        self,
        service_name: str,
        task_definition: str,
        overrides: Optional[Dict[str, Any]] = None
    ) -> str:
        """Start a deployment of ``task_definition`` to ``service_name``.

        Args:
            service_name: Configured service name
            task_definition: Task definition ARN or family:revision
            overrides: Per-deployment setting overrides

        Returns:
            Deployment ID

        Raises:
            ConflictError: If the service already has a deployment in flight
            ConfigurationError: If the service is unknown or overrides are invalid
        """
        if service_name not in self.services:
            raise ConfigurationError(
                f"Service '{service_name}' is not configured",
                context=ErrorContext(service=service_name, operation='submit'),
                suggestions=[f"Configured services: {', '.join(sorted(self.services)) or 'none'}"],
            )
        if not task_definition:
            raise ConfigurationError("A task definition is required",
                                     context=ErrorContext(service=service_name, operation='submit'))

        context = self.services[service_name]
        if overrides:
            try:
                context = context.with_settings(context.settings.with_overrides(overrides))
            except ValidationError as e:
                raise ConfigurationError(
                    f"Invalid deployment overrides: {e}",
                    context=ErrorContext(service=service_name, operation='submit'),
                ) from e

        with self._lock:
            active_id = self._active.get(service_name)
            if active_id is not None:
                raise ConflictError(
                    f"Service {service_name} already has a deployment in progress ({active_id})",
                    context=ErrorContext(service=service_name, deployment_id=active_id, operation='submit'),
                    suggestions=['Wait for the running deployment to finish or cancel it'],
                )

            service_lock = self.store.lock_service(service_name) if self.store else None

            deployment_id = new_deployment_id()
            token = CancellationToken(external_check=self._store_check(deployment_id))
            deployment = Deployment(
                id=deployment_id,
                context=context,
                task_definition=task_definition,
                token=token,
            )
            self._active[service_name] = deployment_id
            self._deployments[deployment_id] = deployment
            self._done[deployment_id] = threading.Event()
            if service_lock is not None:
                self._service_locks[deployment_id] = service_lock

        logger.info(
            f"Submitted deployment of {task_definition}",
            extra=context.log_extra(deployment_id=deployment_id)
        )

        worker = threading.Thread(
            target=self._execute,
            args=(deployment,),
            name=f"deploy-{service_name}",
            daemon=True,
        )
        worker.start()
        return deployment_id

    def run(
        self,
        service_name: str,
        task_definition: str,
        overrides: Optional[Dict[str, Any]] = None
    ) -> Deployment:
        """Submit a deployment and block until it is terminal."""
        deployment_id = self.submit(service_name, task_definition, overrides)
        return self.wait(deployment_id)

    def wait(self, deployment_id: str, timeout: Optional[float] = None) -> Deployment:
        """Block until a deployment started by this orchestrator is terminal.

        Raises:
            DeploymentNotFoundError: If the deployment was not started here
            DeploymentTimeoutError: If it is still running after ``timeout``
        """
        with self._lock:
            deployment = self._deployments.get(deployment_id)
            done = self._done.get(deployment_id)
        if deployment is None or done is None:
            raise DeploymentNotFoundError(
                f"Deployment {deployment_id} is not running in this process",
                context=ErrorContext(deployment_id=deployment_id),
            )

        if not done.wait(timeout):
            raise DeploymentTimeoutError(
                f"Deployment {deployment_id} still {deployment.state.value} after {timeout}s",
                context=ErrorContext(service=deployment.service, deployment_id=deployment_id),
            )
        return deployment

    def get_status(self, deployment_id: str) -> DeploymentStatus:
        """Current state, weights and health of a deployment.

        Raises:
            DeploymentNotFoundError: If the deployment is unknown
        """
        deployment = self._get_local(deployment_id)
        if deployment is not None:
            return deployment.status()

        if self.store is not None:
            return DeploymentStatus.from_record(self.store.load(deployment_id))

        raise DeploymentNotFoundError(
            f"Deployment not found: {deployment_id}",
            context=ErrorContext(deployment_id=deployment_id),
        )

    def cancel(self, deployment_id: str, reason: str = "cancelled by operator") -> bool:
        """Request rollback of an in-flight deployment.

        Returns:
            False if the deployment is already committed, rolling back or finished

        Raises:
            DeploymentNotFoundError: If the deployment is unknown
        """
        deployment = self._get_local(deployment_id)
        if deployment is not None:
            if deployment.state in UNCANCELLABLE_STATES:
                logger.info(
                    f"Ignoring cancel in state {deployment.state.value}",
                    extra=deployment.context.log_extra(deployment_id=deployment_id)
                )
                return False
            deployment.token.cancel(reason)
            logger.warning(f"Cancel requested: {reason}",
                           extra=deployment.context.log_extra(deployment_id=deployment_id))
            return True

        if self.store is None:
            raise DeploymentNotFoundError(
                f"Deployment not found: {deployment_id}",
                context=ErrorContext(deployment_id=deployment_id),
            )

        record = self.store.load(deployment_id)
        if DeploymentState(record.state) in UNCANCELLABLE_STATES:
            return False
        return self.store.request_cancel(deployment_id)

    def active_deployment(self, service_name: str) -> Optional[str]:
        """ID of the in-flight deployment of ``service_name`` in this process, if any."""
        with self._lock:
            return self._active.get(service_name)

    def _get_local(self, deployment_id: str) -> Optional[Deployment]:
        with self._lock:
            return self._deployments.get(deployment_id)

    def _store_check(self, deployment_id: str) -> Optional[Callable[[], bool]]:
        if self.store is None:
            return None
        store = self.store
        return lambda: store.cancel_requested(deployment_id)

    def _execute(self, deployment: Deployment) -> None:
        try:
            self.state_machine.run(deployment)
        except Exception as e:
            logger.exception(
                f"Deployment aborted: {e}",
                extra=deployment.context.log_extra(deployment_id=deployment.id)
            )
            if not deployment.is_terminal:
                deployment.cause = f"{type(e).__name__}: {e}"
                deployment.error_type = type(e).__name__
                deployment.state = DeploymentState.FAILED
                try:
                    self._persist(deployment)
                except Exception as persist_error:
                    logger.error(f"Failed to persist failed deployment: {persist_error}",
                                 extra=deployment.context.log_extra(deployment_id=deployment.id))
        finally:
            self._finish(deployment)

    def _finish(self, deployment: Deployment) -> None:
        if self.store is not None:
            try:
                self.store.archive(deployment.id)
            except Exception as e:
                logger.warning(f"Failed to archive deployment record: {e}",
                               extra=deployment.context.log_extra(deployment_id=deployment.id))

        with self._lock:
            if self._active.get(deployment.service) == deployment.id:
                del self._active[deployment.service]
            service_lock = self._service_locks.pop(deployment.id, None)
            done = self._done[deployment.id]
            self._finished.append(deployment.id)
            while len(self._finished) > self.retain_finished:
                evicted = self._finished.popleft()
                self._deployments.pop(evicted, None)
                self._done.pop(evicted, None)
        if service_lock is not None:
            service_lock.release()

        logger.info(
            f"Deployment finished: {deployment.state.value}",
            extra=deployment.context.log_extra(deployment_id=deployment.id, state=deployment.state.value)
        )
        done.set()

    def _persist(self, deployment: Deployment) -> None:
        if self.store is not None:
            self.store.save(deployment.to_record())

    def _on_transition(self, deployment: Deployment, transition: StateTransition) -> None:
        self._persist(deployment)
        if not self.listeners:
            return

        status = deployment.status()
        for listener in self.listeners:
            try:
                listener(status, transition)
            except Exception as e:
                logger.warning(f"Transition listener failed: {e}",
                               extra=deployment.context.log_extra(deployment_id=deployment.id))
