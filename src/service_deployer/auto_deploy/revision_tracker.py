"""RevisionTracker - staging sync and staged/production revision comparison."""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
import logging
import subprocess

from service_deployer.auto_deploy.errors import SyncError
from service_deployer.correlation import get_correlation_id
from service_deployer.logging_utils import format_error_log

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RevisionComparison:
    """Outcome of one sync-and-compare pass.

    production_id is None when no production tree exists yet.
    """

    staged_id: str
    production_id: Optional[str]
    changed: bool


class RevisionTracker:
    """Pulls the staging tree and compares its HEAD with production's HEAD.

    Only the staging tree is ever modified; production is read-only here.
    """

    def __init__(
        self,
        staging_path: Path,
        production_path: Path,
        remote: Optional[str] = None,
        branch: Optional[str] = None,
        git_binary: str = "git",
    ):
        """Initialize RevisionTracker.

        Args:
            staging_path: Working copy pulled from upstream
            production_path: Promoted copy whose HEAD is compared
            remote: Remote to pull from (default: the branch's upstream)
            branch: Branch to pull (requires remote)
            git_binary: git executable
        """
        self.staging_path = staging_path
        self.production_path = production_path
        self.remote = remote
        self.branch = branch
        self.git_binary = git_binary

    def _pull_command(self) -> List[str]:
        command = [self.git_binary, "pull", "--ff-only"]
        if self.remote:
            command.append(self.remote)
            if self.branch:
                command.append(self.branch)
        elif self.branch:
            command.extend(["origin", self.branch])
        return command

    def sync(self) -> None:
        """Fast-forward the staging tree to its upstream.

        Raises:
            SyncError: Staging missing, remote unreachable, or the pull
                cannot fast-forward (local conflicting state)
        """
        if not self.staging_path.is_dir():
            raise SyncError(f"Staging tree not found: {self.staging_path}")

        command = self._pull_command()
        logger.info(
            f"Pulling latest revision into staging: {' '.join(command)}",
            extra={"correlation_id": get_correlation_id()},
        )
        try:
            result = subprocess.run(
                command,
                cwd=self.staging_path,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as e:
            raise SyncError(f"Could not run git pull: {e}") from e

        output = (result.stdout or "").strip()
        if result.returncode != 0:
            raise SyncError(
                f"git pull failed with exit code {result.returncode}: {output}",
                output=output,
            )

        logger.info(
            f"Git pull successful: {output}",
            extra={"correlation_id": get_correlation_id()},
        )

    def read_revision(self, tree: Path) -> str:
        """Return the HEAD commit of a tree.

        Raises:
            SyncError: If git cannot resolve HEAD in the tree
        """
        try:
            result = subprocess.run(
                [self.git_binary, "rev-parse", "HEAD"],
                cwd=tree,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise SyncError(f"Could not read revision of {tree}: {e}") from e

        if result.returncode != 0:
            raise SyncError(
                f"git rev-parse HEAD failed in {tree}: {result.stderr.strip()}",
                output=result.stderr,
            )
        return result.stdout.strip()

    def read_production_revision(self) -> Optional[str]:
        """Return production's HEAD, or None if there is no production tree."""
        if not self.production_path.exists():
            logger.warning(
                format_error_log(
                    "DEPLOY-SYNC-002",
                    f"Production tree not found: {self.production_path}",
                ),
                extra={"correlation_id": get_correlation_id()},
            )
            return None
        return self.read_revision(self.production_path)

    def sync_and_compare(self) -> RevisionComparison:
        """Sync staging, then compare staged and production revisions.

        Returns:
            RevisionComparison; changed is True iff the identifiers differ
            (exact, case-sensitive string comparison)

        Raises:
            SyncError: If the pull or a revision read fails
        """
        self.sync()
        staged_id = self.read_revision(self.staging_path)
        production_id = self.read_production_revision()

        logger.info(
            f"Staging commit: {staged_id}",
            extra={"correlation_id": get_correlation_id()},
        )
        logger.info(
            f"Production commit: {production_id}",
            extra={"correlation_id": get_correlation_id()},
        )

        return RevisionComparison(
            staged_id=staged_id,
            production_id=production_id,
            changed=staged_id != production_id,
        )
