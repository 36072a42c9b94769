"""DeploymentOrchestrator - state machine for one scheduled deployment run.

Idle -> Syncing -> Deciding -> Building -> Stopping -> Rotating -> Starting -> Done,
with Aborted reachable from any phase. Build and test failures happen
before the running instance is touched; failures from Stopping onwards leave
the service down unless rollback_on_failure is enabled.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, TYPE_CHECKING
import json
import logging
import shlex

from service_deployer import __version__
from service_deployer.auto_deploy.deployment_rotator import RotationResult, today_stamp
from service_deployer.auto_deploy.errors import (
    BuildError,
    DeployError,
    RotateError,
    SessionError,
)
from service_deployer.correlation import get_correlation_id
from service_deployer.logging_utils import format_error_log

if TYPE_CHECKING:
    from .build_runner import BuildRunner
    from .deployment_lock import DeploymentLock
    from .deployment_rotator import DeploymentRotator
    from .revision_tracker import RevisionComparison, RevisionTracker
    from .session_supervisor import SessionSupervisor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_LOCKED = 75  # EX_TEMPFAIL: another run is in progress

# Lines of build output echoed into the log on failure
BUILD_OUTPUT_TAIL_LINES = 40


class Phase(Enum):
    """Orchestrator state machine phases."""

    IDLE = "idle"
    SYNCING = "syncing"
    DECIDING = "deciding"
    BUILDING = "building"
    STOPPING = "stopping"
    ROTATING = "rotating"
    STARTING = "starting"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class RunResult:
    """Outcome of one orchestration run."""

    phase: Phase
    exit_code: int
    comparison: Optional["RevisionComparison"] = None
    rotation: Optional[RotationResult] = None
    error: Optional[BaseException] = None
    failed_phase: Optional[Phase] = None
    recovered: bool = False

    @property
    def deployed(self) -> bool:
        return self.phase == Phase.DONE and self.rotation is not None


class DeploymentOrchestrator:
    """Sequences tracker, build runner, session supervisor and rotator."""

    def __init__(
        self,
        staging_path: Path,
        production_path: Path,
        backup_root: Path,
        session_name: str,
        service_workdir: Optional[str] = None,
        service_command: Optional[str] = None,
        rollback_on_failure: bool = False,
        status_file: Optional[Path] = None,
    ):
        """Initialize DeploymentOrchestrator.

        Args:
            staging_path: Staging tree (pulled and built)
            production_path: Production slot
            backup_root: Directory holding dated backups
            session_name: Reserved screen session name
            service_workdir: Working directory relative to production
                (default: the artifact's directory)
            service_command: Command typed into the session
                (default: ./<artifact name>)
            rollback_on_failure: Restore the newest backup when a failure
                happens after the old instance was stopped
            status_file: JSON file receiving the outcome of each run
        """
        self.staging_path = staging_path
        self.production_path = production_path
        self.backup_root = backup_root
        self.session_name = session_name
        self.service_workdir = service_workdir
        self.service_command = service_command
        self.rollback_on_failure = rollback_on_failure
        self.status_file = status_file
        self.current_phase = Phase.IDLE

        # Components injected for testing (must be set before calling run)
        self.revision_tracker: Optional["RevisionTracker"] = None
        self.build_runner: Optional["BuildRunner"] = None
        self.session_supervisor: Optional["SessionSupervisor"] = None
        self.deployment_rotator: Optional["DeploymentRotator"] = None
        self.deployment_lock: Optional["DeploymentLock"] = None

    def transition_to(self, new_phase: Phase) -> None:
        """Transition to a new phase.

        Args:
            new_phase: Target phase to transition to
        """
        logger.info(
            f"State transition: {self.current_phase.value} -> {new_phase.value}",
            extra={"correlation_id": get_correlation_id()},
        )
        self.current_phase = new_phase

    def startup_command(self, artifact_relpath: Path) -> Tuple[Path, str]:
        """Working directory and command line for the promoted artifact.

        Both point into the production tree, never into staging or a backup.
        """
        artifact = self.production_path / artifact_relpath
        if self.service_workdir:
            workdir = self.production_path / self.service_workdir
        else:
            workdir = artifact.parent

        if self.service_command:
            command = self.service_command
        elif workdir == artifact.parent:
            command = f"./{shlex.quote(artifact.name)}"
        else:
            command = shlex.quote(str(artifact))
        return workdir, command

    def run(self) -> RunResult:
        """Execute one deployment run.

        Returns:
            RunResult; exit_code is 0 for Done (including no-op runs),
            1 for Aborted and 75 when another run holds the lock
        """
        assert (
            self.revision_tracker is not None
        ), "revision_tracker must be set before calling run()"
        assert (
            self.build_runner is not None
        ), "build_runner must be set before calling run()"
        assert (
            self.session_supervisor is not None
        ), "session_supervisor must be set before calling run()"
        assert (
            self.deployment_rotator is not None
        ), "deployment_rotator must be set before calling run()"

        self.current_phase = Phase.IDLE
        logger.info(
            f"*** Deployment started at {datetime.now():%Y-%m-%d %H:%M:%S}",
            extra={"correlation_id": get_correlation_id()},
        )

        if self.deployment_lock is not None and not self.deployment_lock.acquire():
            logger.warning(
                format_error_log(
                    "DEPLOY-LOCK-004", "Another deployment in progress, skipping"
                ),
                extra={"correlation_id": get_correlation_id()},
            )
            return RunResult(phase=Phase.IDLE, exit_code=EXIT_LOCKED)

        try:
            result = self._run_phases()
        finally:
            if self.deployment_lock is not None:
                self.deployment_lock.release()

        self._write_status_file(result)
        logger.info(
            f"*** Deployment finished at {datetime.now():%Y-%m-%d %H:%M:%S} "
            f"({result.phase.value}, exit code {result.exit_code})",
            extra={"correlation_id": get_correlation_id()},
        )
        return result

    def _run_phases(self) -> RunResult:
        assert self.revision_tracker is not None
        assert self.build_runner is not None
        assert self.session_supervisor is not None
        assert self.deployment_rotator is not None

        comparison = None
        rotation = None
        try:
            self.transition_to(Phase.SYNCING)
            comparison = self.revision_tracker.sync_and_compare()

            self.transition_to(Phase.DECIDING)
            if not comparison.changed:
                logger.info(
                    "No changes detected. No need for new deployment.",
                    extra={"correlation_id": get_correlation_id()},
                )
                self.transition_to(Phase.DONE)
                return RunResult(
                    phase=Phase.DONE, exit_code=EXIT_OK, comparison=comparison
                )
            logger.info(
                f"Changes detected: {comparison.production_id} -> {comparison.staged_id}",
                extra={"correlation_id": get_correlation_id()},
            )

            self.transition_to(Phase.BUILDING)
            artifacts = self.build_runner.build(self.staging_path)

            self.transition_to(Phase.STOPPING)
            self.session_supervisor.terminate(self.session_name)

            self.transition_to(Phase.ROTATING)
            rotation = self.deployment_rotator.rotate(
                self.staging_path,
                self.production_path,
                self.backup_root,
                today_stamp(),
            )
            logger.info(
                f"Previous production kept as {rotation.backup_path}",
                extra={"correlation_id": get_correlation_id()},
            )

            self.transition_to(Phase.STARTING)
            workdir, command = self.startup_command(artifacts.relative_paths()[0])
            self.session_supervisor.start(self.session_name, workdir, command)

            self.transition_to(Phase.DONE)
            logger.info(
                f"Deployment of {comparison.staged_id} completed",
                extra={"correlation_id": get_correlation_id()},
            )
            return RunResult(
                phase=Phase.DONE,
                exit_code=EXIT_OK,
                comparison=comparison,
                rotation=rotation,
            )

        except DeployError as e:
            failed_phase = self.current_phase
            self._log_failure(e, failed_phase)
            recovered = self._recover(e, failed_phase)
            self.transition_to(Phase.ABORTED)
            return RunResult(
                phase=Phase.ABORTED,
                exit_code=EXIT_ABORTED,
                comparison=comparison,
                rotation=rotation,
                error=e,
                failed_phase=failed_phase,
                recovered=recovered,
            )

        except Exception as e:
            failed_phase = self.current_phase
            logger.exception(
                f"Unexpected error during {failed_phase.value}: {e}",
                extra={"correlation_id": get_correlation_id()},
            )
            self.transition_to(Phase.ABORTED)
            return RunResult(
                phase=Phase.ABORTED,
                exit_code=EXIT_ABORTED,
                comparison=comparison,
                rotation=rotation,
                error=e,
                failed_phase=failed_phase,
            )

    def _log_failure(self, error: DeployError, phase: Phase) -> None:
        logger.error(
            format_error_log(
                error.error_code,
                f"Deployment aborted during {phase.value}: {error}",
                error_type=type(error).__name__,
            ),
            extra={"correlation_id": get_correlation_id()},
        )
        if isinstance(error, BuildError) and error.output:
            tail = error.output.strip().splitlines()[-BUILD_OUTPUT_TAIL_LINES:]
            logger.error(
                "Build output (last lines):\n" + "\n".join(tail),
                extra={"correlation_id": get_correlation_id()},
            )
        if phase in (Phase.BUILDING, Phase.SYNCING, Phase.DECIDING):
            logger.info(
                "Running instance and production directory left untouched",
                extra={"correlation_id": get_correlation_id()},
            )
        elif phase == Phase.STOPPING:
            logger.warning(
                f"Session '{self.session_name}' was not stopped; "
                "the running instance and production directory are left in place",
                extra={"correlation_id": get_correlation_id()},
            )
        elif not self.rollback_on_failure:
            logger.error(
                format_error_log(
                    "DEPLOY-GENERAL-002",
                    "Service may be down until the next successful run or operator intervention",
                ),
                extra={"correlation_id": get_correlation_id()},
            )

    def _recover(self, error: DeployError, phase: Phase) -> bool:
        """Bring the previous production copy back up after a late failure.

        Only active with rollback_on_failure; the original error is still
        reported as the run's outcome.

        Returns:
            True if the service was restarted from a known-good copy
        """
        if not self.rollback_on_failure or phase not in (
            Phase.ROTATING,
            Phase.STARTING,
        ):
            return False

        assert self.build_runner is not None
        assert self.session_supervisor is not None
        assert self.deployment_rotator is not None

        restore_backup = phase == Phase.STARTING or (
            isinstance(error, RotateError) and error.production_moved
        )
        if not restore_backup and not self.production_path.is_dir():
            logger.error(
                format_error_log(
                    "DEPLOY-GENERAL-003",
                    f"Recovery skipped: {self.production_path} does not exist, "
                    "operator intervention required",
                    error_type=type(error).__name__,
                ),
                extra={"correlation_id": get_correlation_id()},
            )
            return False

        logger.warning(
            "Attempting recovery: "
            + (
                "restoring newest backup"
                if restore_backup
                else "restarting untouched production"
            ),
            extra={"correlation_id": get_correlation_id()},
        )
        try:
            if restore_backup:
                restored = self.deployment_rotator.restore_latest_backup(
                    self.production_path, self.backup_root
                )
                logger.info(
                    f"Restored {restored} to {self.production_path}",
                    extra={"correlation_id": get_correlation_id()},
                )
            artifact_relpath = Path(self.build_runner.artifact_paths[0])
            artifact = self.production_path / artifact_relpath
            if not artifact.is_file():
                raise RotateError(
                    f"Artifact {artifact} missing from production", artifact
                )
            self.session_supervisor.terminate(self.session_name)
            workdir, command = self.startup_command(artifact_relpath)
            self.session_supervisor.start(self.session_name, workdir, command)
        except DeployError as e:
            logger.error(
                format_error_log(
                    "DEPLOY-GENERAL-003",
                    f"Recovery failed: {e}",
                    error_type=type(e).__name__,
                ),
                extra={"correlation_id": get_correlation_id()},
            )
            return False

        logger.warning(
            "Recovery succeeded: service restarted from the previous production copy",
            extra={"correlation_id": get_correlation_id()},
        )
        return True

    def _write_status_file(self, result: RunResult) -> None:
        """Record the outcome of the run; failures here never change the outcome."""
        if self.status_file is None:
            return
        try:
            comparison = result.comparison
            status_data = {
                "status": "success" if result.exit_code == EXIT_OK else "failed",
                "phase": result.phase.value,
                "failed_phase": (
                    result.failed_phase.value if result.failed_phase else None
                ),
                "deployed": result.deployed,
                "recovered": result.recovered,
                "staged_id": comparison.staged_id if comparison else None,
                "production_id": comparison.production_id if comparison else None,
                "backup_path": (
                    str(result.rotation.backup_path) if result.rotation else None
                ),
                "error": str(result.error) if result.error else None,
                "error_type": type(result.error).__name__ if result.error else None,
                "correlation_id": get_correlation_id(),
                "version": __version__,
                "timestamp": datetime.now().isoformat(),
            }

            self.status_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.status_file, "w") as f:
                json.dump(status_data, f, indent=2)

        except Exception as e:
            logger.warning(
                f"Could not write status file: {e}",
                extra={"correlation_id": get_correlation_id()},
            )


def read_status_file(status_file: Path) -> Optional[dict]:
    """Read the outcome of the last run.

    Returns:
        Status dict, or None if the file doesn't exist or is corrupted
    """
    try:
        if not status_file.exists():
            return None
        with open(status_file, "r") as f:
            return json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        logger.warning(
            f"Could not read status file: {e}",
            extra={"correlation_id": get_correlation_id()},
        )
        return None
