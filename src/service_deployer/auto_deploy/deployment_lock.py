"""DeploymentLock - exclusive lease preventing overlapping scheduled runs."""

from datetime import datetime
from pathlib import Path
from typing import IO, Optional
import fcntl
import json
import logging
import os

import psutil

from service_deployer.correlation import get_correlation_id
from service_deployer.logging_utils import format_error_log

logger = logging.getLogger(__name__)


class DeploymentLock:
    """File lock held for the whole duration of a deployment run.

    The kernel drops a flock when its holder dies, so a crashed run never
    blocks the next one. The holder's pid and start time are written into
    the file for diagnostics and stale-lease detection.
    """

    def __init__(self, lock_file: Path, stale_after_seconds: int = 6 * 3600):
        """Initialize DeploymentLock.

        Args:
            lock_file: Path of the lock file
            stale_after_seconds: Age after which a held lease is reported as stuck
        """
        self.lock_file = lock_file
        self.stale_after_seconds = stale_after_seconds
        self._handle: Optional[IO[str]] = None

    @property
    def is_held(self) -> bool:
        return self._handle is not None

    def read_holder(self) -> Optional[dict]:
        """Return the metadata written by the last holder, if readable."""
        try:
            content = self.lock_file.read_text()
        except OSError:
            return None
        if not content.strip():
            return None
        try:
            holder = json.loads(content)
        except json.JSONDecodeError:
            return None
        return holder if isinstance(holder, dict) else None

    def acquire(self) -> bool:
        """Try to take the lease without blocking.

        Returns:
            True if acquired, False if another run holds it
        """
        if self._handle is not None:
            return True

        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_file, "a+")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            self._report_contention()
            return False
        except OSError:
            handle.close()
            raise

        previous = self.read_holder()
        if previous and previous.get("pid") != os.getpid():
            pid = previous.get("pid")
            if isinstance(pid, int) and not psutil.pid_exists(pid):
                logger.warning(
                    format_error_log(
                        "DEPLOY-LOCK-002",
                        "Recovered stale deployment lease from a run that did not finish",
                        pid=pid,
                        started_at=previous.get("started_at"),
                    ),
                    extra={"correlation_id": get_correlation_id()},
                )

        handle.seek(0)
        handle.truncate()
        json.dump(
            {
                "pid": os.getpid(),
                "started_at": datetime.now().isoformat(),
                "correlation_id": get_correlation_id(),
            },
            handle,
        )
        handle.flush()
        self._handle = handle
        logger.debug(
            f"Deployment lock acquired: {self.lock_file}",
            extra={"correlation_id": get_correlation_id()},
        )
        return True

    def _report_contention(self) -> None:
        holder = self.read_holder() or {}
        pid = holder.get("pid")
        started_at = holder.get("started_at")
        logger.warning(
            format_error_log(
                "DEPLOY-LOCK-001",
                "Another deployment run holds the lock",
                pid=pid,
                started_at=started_at,
            ),
            extra={"correlation_id": get_correlation_id()},
        )
        if not started_at:
            return
        try:
            age = (datetime.now() - datetime.fromisoformat(started_at)).total_seconds()
        except (TypeError, ValueError):
            return
        if age > self.stale_after_seconds:
            logger.error(
                format_error_log(
                    "DEPLOY-LOCK-003",
                    f"Deployment run has held the lock for {int(age)}s and looks stuck",
                    pid=pid,
                ),
                extra={"correlation_id": get_correlation_id()},
            )

    def release(self) -> None:
        """Release the lease. Safe to call when not held."""
        if self._handle is None:
            return
        try:
            self._handle.seek(0)
            self._handle.truncate()
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        logger.debug(
            f"Deployment lock released: {self.lock_file}",
            extra={"correlation_id": get_correlation_id()},
        )

    def __enter__(self) -> "DeploymentLock":
        if not self.acquire():
            raise BlockingIOError(f"Deployment lock busy: {self.lock_file}")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
