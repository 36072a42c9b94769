"""SessionSupervisor - GNU screen session hosting the long-running service.

The service process is owned by the screen session, not by the deployer:
once the startup command is injected the deployer may exit and the service
keeps running detached.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional
import logging
import re
import shlex
import subprocess
import time

from service_deployer.auto_deploy.errors import (
    SessionCreateError,
    SessionFindAmbiguous,
    SessionNotReady,
    SessionStartError,
    SessionStillRunning,
)
from service_deployer.correlation import get_correlation_id
from service_deployer.logging_utils import format_error_log

logger = logging.getLogger(__name__)

# "\t12345.myservice\t(10/17/2026 06:50:01 AM)\t(Detached)"
_SESSION_LINE = re.compile(r"^\s*(?P<pid>\d+)\.(?P<name>\S+)\s+(?P<rest>.*)$")
_PAREN_GROUP = re.compile(r"\(([^()]*)\)")


class SessionState(Enum):
    """Observed state of a named session."""

    ABSENT = "absent"
    DETACHED = "detached"
    ATTACHED = "attached"
    DEAD = "dead"


@dataclass(frozen=True)
class SessionInfo:
    """One entry of the screen session listing."""

    pid: int
    name: str
    state: SessionState

    @property
    def target(self) -> str:
        """Unambiguous -S argument for this session."""
        return f"{self.pid}.{self.name}"


def parse_session_listing(output: str) -> List[SessionInfo]:
    """Parse `screen -ls` output into session entries."""
    sessions = []
    for line in output.splitlines():
        match = _SESSION_LINE.match(line)
        if not match:
            continue
        groups = _PAREN_GROUP.findall(match.group("rest"))
        status = groups[-1].lower() if groups else ""
        if "dead" in status:
            state = SessionState.DEAD
        elif "detached" in status:
            state = SessionState.DETACHED
        elif "attached" in status:
            state = SessionState.ATTACHED
        else:
            continue
        sessions.append(
            SessionInfo(
                pid=int(match.group("pid")), name=match.group("name"), state=state
            )
        )
    return sessions


class SessionSupervisor:
    """Locates, terminates, creates and feeds named screen sessions."""

    def __init__(
        self,
        screen_binary: str = "screen",
        terminate_timeout: float = 10.0,
        ready_timeout: float = 10.0,
        poll_interval: float = 0.2,
        shell_settle_delay: float = 0.5,
    ):
        """Initialize SessionSupervisor.

        Args:
            screen_binary: screen executable
            terminate_timeout: Seconds to wait for a quit session to disappear
            ready_timeout: Seconds to wait for a new session to accept commands
            poll_interval: Seconds between session status queries
            shell_settle_delay: Pause after readiness so the shell can show its prompt
        """
        self.screen_binary = screen_binary
        self.terminate_timeout = terminate_timeout
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self.shell_settle_delay = shell_settle_delay

    def _screen(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.screen_binary, *args],
            capture_output=True,
            text=True,
        )

    def list_sessions(self) -> List[SessionInfo]:
        """List all sessions known to the screen host.

        The exit status of `screen -ls` is not meaningful (it is non-zero
        whenever sessions exist on many versions), so only output is parsed.
        """
        result = self._screen("-ls")
        return parse_session_listing((result.stdout or "") + (result.stderr or ""))

    def find(self, name: str) -> Optional[SessionInfo]:
        """Find the live session with exactly this name.

        Returns:
            The matching session, or None when absent

        Raises:
            SessionFindAmbiguous: More than one live session has the name
        """
        matches = [s for s in self.list_sessions() if s.name == name]
        dead = [s for s in matches if s.state == SessionState.DEAD]
        if dead:
            logger.warning(
                f"Ignoring {len(dead)} dead session socket(s) named '{name}' "
                f"(clean up with '{self.screen_binary} -wipe')",
                extra={"correlation_id": get_correlation_id()},
            )
        live = [s for s in matches if s.state != SessionState.DEAD]

        if len(live) > 1:
            raise SessionFindAmbiguous(name, [s.pid for s in live])
        return live[0] if live else None

    def terminate(self, name: str) -> None:
        """Quit the detached session with this name.

        Idempotent: an absent session is a no-op. An attached session is
        left alone since an operator is watching it, which means the old
        instance cannot be confirmed gone.

        Raises:
            SessionFindAmbiguous: More than one session has the name
            SessionStillRunning: The session is attached or did not go away
        """
        session = self.find(name)
        if session is None:
            logger.info(
                f"No existing session '{name}', nothing to terminate",
                extra={"correlation_id": get_correlation_id()},
            )
            return

        if session.state == SessionState.ATTACHED:
            raise SessionStillRunning(
                f"Session '{session.target}' is attached to a terminal; "
                "refusing to kill a session an operator is watching",
                name,
            )

        logger.info(
            f"Killing existing session '{session.target}'",
            extra={"correlation_id": get_correlation_id()},
        )
        result = self._screen("-S", session.target, "-X", "quit")
        if result.returncode != 0:
            logger.warning(
                format_error_log(
                    "DEPLOY-SESSION-007",
                    f"screen quit returned {result.returncode}: {result.stderr.strip()}",
                ),
                extra={"correlation_id": get_correlation_id()},
            )

        deadline = time.monotonic() + self.terminate_timeout
        while True:
            if self.find(name) is None:
                logger.info(
                    f"Session '{session.target}' terminated",
                    extra={"correlation_id": get_correlation_id()},
                )
                return
            if time.monotonic() >= deadline:
                raise SessionStillRunning(
                    f"Session '{session.target}' still present "
                    f"{self.terminate_timeout}s after quit",
                    name,
                )
            time.sleep(self.poll_interval)

    def create(self, name: str) -> SessionInfo:
        """Create a new detached session under the reserved name.

        Raises:
            SessionCreateError: A session with the name exists or screen failed
        """
        existing = self.find(name)
        if existing is not None:
            raise SessionCreateError(
                f"Session '{existing.target}' already exists; terminate it first",
                name,
            )

        logger.info(
            f"Starting new session '{name}'",
            extra={"correlation_id": get_correlation_id()},
        )
        result = self._screen("-dmS", name)
        if result.returncode != 0:
            raise SessionCreateError(
                f"screen -dmS {name} failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}",
                name,
            )
        return SessionInfo(pid=0, name=name, state=SessionState.DETACHED)

    def wait_until_ready(self, name: str) -> SessionInfo:
        """Wait until the session is listed and accepts commands.

        Raises:
            SessionNotReady: The session did not become ready in time
        """
        deadline = time.monotonic() + self.ready_timeout
        while True:
            session = self.find(name)
            if session is not None and session.state == SessionState.DETACHED:
                probe = self._screen("-S", session.target, "-X", "select", ".")
                if probe.returncode == 0:
                    logger.info(
                        f"Session '{session.target}' is ready",
                        extra={"correlation_id": get_correlation_id()},
                    )
                    if self.shell_settle_delay:
                        time.sleep(self.shell_settle_delay)
                    return session
            if time.monotonic() >= deadline:
                raise SessionNotReady(
                    f"Session '{name}' not ready after {self.ready_timeout}s", name
                )
            time.sleep(self.poll_interval)

    def start_command(self, name: str, workdir: Path, command_line: str) -> None:
        """Type a directory change and the service command into the session.

        Returns as soon as the input is delivered; the service keeps running
        inside the session.

        Raises:
            SessionStartError: The input could not be delivered
        """
        keystrokes = f"cd {shlex.quote(str(workdir))}\n{command_line}\n"
        logger.info(
            f"Sending startup command to session '{name}': cd {workdir} && {command_line}",
            extra={"correlation_id": get_correlation_id()},
        )
        # -p 0: a never-attached session has no current window for -X stuff
        result = self._screen("-S", name, "-p", "0", "-X", "stuff", keystrokes)
        if result.returncode != 0:
            raise SessionStartError(
                f"Could not send startup command to session '{name}' "
                f"(exit code {result.returncode}): {result.stderr.strip()}",
                name,
            )

    def start(self, name: str, workdir: Path, command_line: str) -> SessionInfo:
        """Create the session, wait for it, and launch the service in it."""
        self.create(name)
        session = self.wait_until_ready(name)
        self.start_command(session.target, workdir, command_line)
        return session
