"""File-backed store for deployment records, cancel requests and service locks."""

import fcntl
import json
import os
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from taskset_deploy.state.models import DeploymentRecord
from taskset_deploy.utils.errors import ConflictError, DeploymentNotFoundError, ErrorContext
from taskset_deploy.utils.logging import get_logger

logger = get_logger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")


class StoreError(Exception):
    """Base exception for deployment store errors."""

    pass


class ServiceLock:
    """Exclusive per-service lock held for the lifetime of a deployment."""

    def __init__(self, service: str, path: Path, fd: int):
        self.service = service
        self.path = path
        self._fd: Optional[int] = fd

    @property
    def held(self) -> bool:
        return self._fd is not None

    def release(self) -> None:
        """Release the lock. Safe to call more than once."""
        if self._fd is not None:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
                os.close(self._fd)
            finally:
                self._fd = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class DeploymentStore:
    """Keeps one JSON document per deployment under ``root``.

    Layout::

        <root>/deployments/<id>.json    in-flight and recently finished
        <root>/deployments/<id>.cancel  cancel request marker
        <root>/archive/<id>.json        finished deployments
        <root>/locks/<service>.lock     per-service deployment lock
    """

    def __init__(self, root: str = ".taskset"):
        """
        Initialize DeploymentStore.

        Args:
            root: Directory holding the store
        """
        self.root = Path(root)
        self.deployments_dir = self.root / "deployments"
        self.archive_dir = self.root / "archive"
        self.locks_dir = self.root / "locks"

    def _record_path(self, deployment_id: str) -> Path:
        return self.deployments_dir / f"{deployment_id}.json"

    def _archive_path(self, deployment_id: str) -> Path:
        return self.archive_dir / f"{deployment_id}.json"

    def _cancel_path(self, deployment_id: str) -> Path:
        return self.deployments_dir / f"{deployment_id}.cancel"

    def save(self, record: DeploymentRecord) -> None:
        """
        Write a record atomically.

        Raises:
            StoreError: If the record cannot be written
        """
        self.deployments_dir.mkdir(parents=True, exist_ok=True)
        path = self._record_path(record.id)

        try:
            temp_path = path.with_suffix(".tmp")
            with open(temp_path, "w") as f:
                f.write(record.model_dump_json(indent=2))
            temp_path.replace(path)
        except OSError as e:
            raise StoreError(f"Failed to save deployment {record.id}: {e}")

    def load(self, deployment_id: str) -> DeploymentRecord:
        """
        Load a record, in flight or archived.

        Raises:
            DeploymentNotFoundError: If no record exists
            StoreError: If the record is corrupted
        """
        for path in (self._record_path(deployment_id), self._archive_path(deployment_id)):
            if path.exists():
                return self._read(path)

        raise DeploymentNotFoundError(
            f"Deployment not found: {deployment_id}",
            context=ErrorContext(deployment_id=deployment_id),
        )

    def exists(self, deployment_id: str) -> bool:
        return self._record_path(deployment_id).exists() or self._archive_path(deployment_id).exists()

    def list(
        self,
        service: Optional[str] = None,
        include_archived: bool = True,
        limit: Optional[int] = None
    ) -> List[DeploymentRecord]:
        """
        List records, newest first.

        Args:
            service: Only return deployments of this service
            include_archived: Include finished, archived deployments
            limit: Maximum number of records

        Returns:
            List of deployment records
        """
        directories = [self.deployments_dir]
        if include_archived:
            directories.append(self.archive_dir)

        records = []
        for directory in directories:
            if not directory.exists():
                continue
            for path in directory.glob("*.json"):
                try:
                    record = self._read(path)
                except StoreError as e:
                    logger.warning(f"Skipping unreadable deployment record {path.name}: {e}")
                    continue
                if service is None or record.service == service:
                    records.append(record)

        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit] if limit else records

    def active(self, service: str) -> Optional[DeploymentRecord]:
        """The non-terminal deployment of ``service`` recorded in the store, if any."""
        for record in self.list(service=service, include_archived=False):
            if not record.is_terminal:
                return record
        return None

    def archive(self, deployment_id: str) -> None:
        """Move a finished deployment out of the in-flight directory."""
        source = self._record_path(deployment_id)
        if not source.exists():
            return

        self.archive_dir.mkdir(parents=True, exist_ok=True)
        try:
            source.replace(self._archive_path(deployment_id))
        except OSError as e:
            raise StoreError(f"Failed to archive deployment {deployment_id}: {e}")
        self._cancel_path(deployment_id).unlink(missing_ok=True)
        logger.debug(f"Archived deployment {deployment_id}", extra={'deployment_id': deployment_id})

    def prune(self, keep: int = 100, older_than_days: Optional[int] = None) -> int:
        """
        Delete archived records beyond the newest ``keep``.

        Args:
            keep: Number of archived records to keep regardless of age
            older_than_days: Only delete records older than this many days

        Returns:
            Number of records deleted
        """
        cutoff = None
        if older_than_days is not None:
            cutoff = datetime.utcnow() - timedelta(days=older_than_days)

        archived = [r for r in self.list(include_archived=True) if self._archive_path(r.id).exists()]
        deleted = 0
        for record in archived[keep:]:
            if cutoff is not None and record.created_at > cutoff:
                continue
            self._archive_path(record.id).unlink(missing_ok=True)
            deleted += 1

        if deleted:
            logger.info(f"Pruned {deleted} archived deployment record(s)")
        return deleted

    def request_cancel(self, deployment_id: str) -> bool:
        """
        Ask the process running ``deployment_id`` to cancel it.

        Returns:
            False if the deployment is already finished

        Raises:
            DeploymentNotFoundError: If no record exists
        """
        record = self.load(deployment_id)
        if record.is_terminal:
            return False

        self._cancel_path(deployment_id).touch()
        logger.info(f"Cancel requested for {deployment_id}", extra={'deployment_id': deployment_id})
        return True

    def cancel_requested(self, deployment_id: str) -> bool:
        return self._cancel_path(deployment_id).exists()

    def lock_service(self, service: str) -> ServiceLock:
        """
        Take the exclusive deployment lock of ``service`` without blocking.

        Raises:
            ConflictError: If another deployment of the service holds the lock
        """
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self.locks_dir / f"{_SAFE_NAME.sub('_', service)}.lock"

        fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            active = self.active(service)
            detail = f" ({active.id})" if active else ""
            raise ConflictError(
                f"Service {service} already has a deployment in progress{detail}",
                context=ErrorContext(service=service, deployment_id=active.id if active else None),
                suggestions=[
                    'Wait for the running deployment to finish',
                    f'Or cancel it with: taskset cancel {active.id if active else "<id>"}',
                ],
            )

        return ServiceLock(service, lock_path, fd)

    @staticmethod
    def _read(path: Path) -> DeploymentRecord:
        try:
            with open(path, "r") as f:
                return DeploymentRecord.model_validate(json.load(f))
        except json.JSONDecodeError as e:
            raise StoreError(f"Failed to parse deployment record {path}: {e}")
        except ValidationError as e:
            raise StoreError(f"Invalid deployment record {path}: {e}")
        except OSError as e:
            raise StoreError(f"Failed to read deployment record {path}: {e}")
