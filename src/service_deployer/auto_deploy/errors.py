"""Exception taxonomy for the auto-deploy pipeline.

Each exception carries the error code used when it is logged, so the
orchestrator can report any failure in one place with a stable code.
"""

from pathlib import Path
from typing import Optional


class DeployError(Exception):
    """Base exception for every failure that aborts a deployment run."""

    error_code = "DEPLOY-GENERAL-001"


class SyncError(DeployError):
    """
    Raised when the staging tree cannot be synchronized with its upstream.

    Covers an unreachable remote, a non fast-forward pull and a staging tree
    with conflicting local state. Never auto-resolved.
    """

    error_code = "DEPLOY-SYNC-001"

    def __init__(self, message: str, output: str = "") -> None:
        self.output = output
        super().__init__(message)


class BuildError(DeployError):
    """Raised when the build command fails or produces no artifact."""

    error_code = "DEPLOY-BUILD-001"

    def __init__(
        self, message: str, output: str = "", returncode: Optional[int] = None
    ) -> None:
        self.output = output
        self.returncode = returncode
        super().__init__(message)


class TestError(BuildError):
    """Raised when the optional test step rejects the staged build."""

    __test__ = False  # keep pytest from collecting this class
    error_code = "DEPLOY-BUILD-002"


class SessionError(DeployError):
    """Base exception for persistent-session failures."""

    error_code = "DEPLOY-SESSION-001"

    def __init__(self, message: str, session_name: str) -> None:
        self.session_name = session_name
        super().__init__(message)


class SessionFindAmbiguous(SessionError):
    """Raised when more than one session carries the reserved name."""

    error_code = "DEPLOY-SESSION-002"

    def __init__(self, session_name: str, pids: list) -> None:
        self.pids = pids
        super().__init__(
            f"{len(pids)} sessions named '{session_name}' found (pids: "
            f"{', '.join(str(p) for p in pids)})",
            session_name,
        )


class SessionCreateError(SessionError):
    """Raised when a new session cannot be created under the reserved name."""

    error_code = "DEPLOY-SESSION-003"


class SessionStillRunning(SessionError):
    """Raised when the old session could not be confirmed gone."""

    error_code = "DEPLOY-SESSION-004"


class SessionNotReady(SessionError):
    """Raised when a created session does not accept input within the timeout."""

    error_code = "DEPLOY-SESSION-005"


class SessionStartError(SessionError):
    """Raised when the startup command cannot be injected into the session."""

    error_code = "DEPLOY-SESSION-006"


class RotateError(DeployError):
    """Base exception for directory rotation failures.

    production_moved tells whether the old production tree had already
    been moved to its backup when the failure happened.
    """

    error_code = "DEPLOY-ROTATE-001"

    def __init__(
        self,
        message: str,
        path: Optional[Path] = None,
        production_moved: bool = False,
    ) -> None:
        self.path = path
        self.production_moved = production_moved
        super().__init__(message)


class StagingMissing(RotateError):
    """Raised when the staging tree to promote does not exist."""

    error_code = "DEPLOY-ROTATE-002"


class ProductionMissing(RotateError):
    """
    Raised when there is no production directory to back up.

    Indicates an inconsistent state left behind by an earlier run; requires
    operator intervention.
    """

    error_code = "DEPLOY-ROTATE-003"


class CopyFailed(RotateError):
    """Raised when copying a tree fails (space, permissions, I/O)."""

    error_code = "DEPLOY-ROTATE-004"
