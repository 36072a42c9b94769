#!/usr/bin/env python3
"""Auto-deploy entry point - executes one deployment run.

Meant to be triggered once a day by cron, e.g.:

    50 6 * * * svcdeploy-run >> ~/deploy/deploy.log 2>&1
"""

import logging
import sys
from typing import Optional

from service_deployer.auto_deploy.build_runner import BuildRunner
from service_deployer.auto_deploy.deployment_lock import DeploymentLock
from service_deployer.auto_deploy.deployment_rotator import DeploymentRotator
from service_deployer.auto_deploy.orchestrator import (
    EXIT_ABORTED,
    DeploymentOrchestrator,
)
from service_deployer.auto_deploy.revision_tracker import RevisionTracker
from service_deployer.auto_deploy.session_supervisor import SessionSupervisor
from service_deployer.correlation import get_correlation_id, set_correlation_id
from service_deployer.logging_utils import configure_logging
from service_deployer.utils.config_manager import (
    DeployerConfig,
    DeployerConfigManager,
)

logger = logging.getLogger(__name__)


def build_orchestrator(config: DeployerConfig) -> DeploymentOrchestrator:
    """Wire an orchestrator and its components from configuration."""
    assert config.build_config is not None  # Guaranteed by __post_init__
    assert config.session_config is not None  # Guaranteed by __post_init__

    orchestrator = DeploymentOrchestrator(
        staging_path=config.staging_path,
        production_path=config.production_path,
        backup_root=config.backup_root,
        session_name=config.session_name,
        service_workdir=config.session_config.service_workdir,
        service_command=config.session_config.service_command,
        rollback_on_failure=config.rollback_on_failure,
        status_file=config.status_file,
    )

    orchestrator.revision_tracker = RevisionTracker(
        staging_path=config.staging_path,
        production_path=config.production_path,
        remote=config.remote,
        branch=config.branch,
        git_binary=config.git_binary,
    )
    orchestrator.build_runner = BuildRunner(
        build_command=config.build_config.build_command,
        build_subdir=config.build_subdir,
        artifact_paths=config.artifact_paths,
        test_command=config.build_config.test_command,
        build_timeout=config.build_config.build_timeout_seconds,
        test_timeout=config.build_config.test_timeout_seconds,
    )
    orchestrator.session_supervisor = SessionSupervisor(
        screen_binary=config.session_config.screen_binary,
        terminate_timeout=config.session_config.terminate_timeout_seconds,
        ready_timeout=config.session_config.ready_timeout_seconds,
        poll_interval=config.session_config.poll_interval_seconds,
        shell_settle_delay=config.session_config.shell_settle_delay_seconds,
    )
    orchestrator.deployment_rotator = DeploymentRotator()
    orchestrator.deployment_lock = DeploymentLock(
        lock_file=config.lock_file,
        stale_after_seconds=config.stale_lock_seconds,
    )
    return orchestrator


def run_deployment(config_dir: Optional[str] = None) -> int:
    """Load configuration, run one deployment and return its exit code."""
    config = DeployerConfigManager(config_dir).get_config()
    configure_logging(config.log_level)

    logger.info(
        f"Deploying service '{config.service_name}' under {config.root_path}",
        extra={"correlation_id": get_correlation_id()},
    )
    result = build_orchestrator(config).run()
    return result.exit_code


def main():
    """Execute one deployment run and exit with its status."""
    set_correlation_id()
    try:
        sys.exit(run_deployment())
    except ValueError as e:
        configure_logging()
        logger.error(
            f"Invalid configuration: {e}",
            extra={"correlation_id": get_correlation_id()},
        )
        sys.exit(EXIT_ABORTED)
    except Exception as e:
        configure_logging()
        logger.exception(
            f"Deployment run failed: {e}",
            extra={"correlation_id": get_correlation_id()},
        )
        sys.exit(EXIT_ABORTED)


if __name__ == "__main__":
    main()
