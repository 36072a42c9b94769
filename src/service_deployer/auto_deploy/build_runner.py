"""BuildRunner - release build of the staged tree with an optional test gate."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
import logging
import subprocess

from service_deployer.auto_deploy.errors import BuildError, TestError
from service_deployer.correlation import get_correlation_id

logger = logging.getLogger(__name__)


@dataclass
class ArtifactSet:
    """Executables produced by a successful build, as absolute paths in the tree."""

    tree: Path
    executables: List[Path] = field(default_factory=list)

    def relative_paths(self) -> List[Path]:
        return [path.relative_to(self.tree) for path in self.executables]


class BuildRunner:
    """Runs the build command (and the test command, if enabled) in a tree."""

    def __init__(
        self,
        build_command: List[str],
        build_subdir: str,
        artifact_paths: List[str],
        test_command: Optional[List[str]] = None,
        build_timeout: Optional[int] = None,
        test_timeout: Optional[int] = None,
    ):
        """Initialize BuildRunner.

        Args:
            build_command: Release build command, e.g. cargo build --release
            build_subdir: Directory (relative to the tree) the commands run in
            artifact_paths: Expected executables, relative to the tree root
            test_command: Test command gating promotion; None disables the step
            build_timeout: Seconds before the build is abandoned (None: no limit)
            test_timeout: Seconds before the tests are abandoned (None: no limit)
        """
        if not artifact_paths:
            raise ValueError("At least one artifact path is required")
        self.build_command = list(build_command)
        self.build_subdir = build_subdir
        self.artifact_paths = list(artifact_paths)
        self.test_command = list(test_command) if test_command else None
        self.build_timeout = build_timeout
        self.test_timeout = test_timeout

    def _run(
        self, command: List[str], cwd: Path, timeout: Optional[int]
    ) -> subprocess.CompletedProcess:
        """Run a command with stdout and stderr combined into one stream."""
        return subprocess.run(
            command,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
        )

    def build(self, staged_tree: Path) -> ArtifactSet:
        """Build the staged tree in release mode.

        Args:
            staged_tree: Root of the staging tree

        Returns:
            ArtifactSet with the produced executables

        Raises:
            BuildError: Non-zero build status, timeout, or a missing artifact
            TestError: The enabled test step failed
        """
        workdir = staged_tree / self.build_subdir
        if not workdir.is_dir():
            raise BuildError(f"Build directory not found: {workdir}")

        logger.info(
            f"Compiling in release mode: {' '.join(self.build_command)} (in {workdir})",
            extra={"correlation_id": get_correlation_id()},
        )
        try:
            result = self._run(self.build_command, workdir, self.build_timeout)
        except subprocess.TimeoutExpired as e:
            raise BuildError(
                f"Build timed out after {self.build_timeout}s",
                output=_decode(e.output),
            ) from e
        except OSError as e:
            raise BuildError(f"Could not run build command: {e}") from e

        if result.returncode != 0:
            raise BuildError(
                f"Build failed with exit code {result.returncode}",
                output=result.stdout or "",
                returncode=result.returncode,
            )
        logger.info(
            "Build successful", extra={"correlation_id": get_correlation_id()}
        )

        executables = [staged_tree / rel for rel in self.artifact_paths]
        missing = [str(path) for path in executables if not path.is_file()]
        if missing:
            raise BuildError(
                f"Build succeeded but artifacts are missing: {', '.join(missing)}",
                output=result.stdout or "",
                returncode=result.returncode,
            )

        self.run_tests(staged_tree)

        return ArtifactSet(tree=staged_tree, executables=executables)

    def run_tests(self, staged_tree: Path) -> None:
        """Run the test step when enabled; a no-op while disabled.

        Raises:
            TestError: Non-zero test status or timeout
        """
        if not self.test_command:
            logger.info(
                "Test step disabled, skipping",
                extra={"correlation_id": get_correlation_id()},
            )
            return

        workdir = staged_tree / self.build_subdir
        logger.info(
            f"Running tests: {' '.join(self.test_command)}",
            extra={"correlation_id": get_correlation_id()},
        )
        try:
            result = self._run(self.test_command, workdir, self.test_timeout)
        except subprocess.TimeoutExpired as e:
            raise TestError(
                f"Tests timed out after {self.test_timeout}s",
                output=_decode(e.output),
            ) from e
        except OSError as e:
            raise TestError(f"Could not run test command: {e}") from e

        if result.returncode != 0:
            raise TestError(
                f"Tests failed with exit code {result.returncode}",
                output=result.stdout or "",
                returncode=result.returncode,
            )
        logger.info("Tests passed", extra={"correlation_id": get_correlation_id()})


def _decode(output) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode(errors="replace")
    return output
