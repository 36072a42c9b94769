"""
Deployer Configuration Management.

Handles configuration creation, validation, environment variable overrides,
and persistence for the service deployer. The deployment layout itself is a
fixed three-slot layout under one root directory:

    <root>/staging          continuously pulled working copy
    <root>/prod             currently promoted copy
    <root>/prod_<YYYYMMDD>  dated backups of earlier production copies
"""

import json
import logging
import os
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import List, Optional

ENV_PREFIX = "SVCDEPLOY_"
DEFAULT_CONFIG_DIR = Path.home() / ".service-deployer"


@dataclass
class BuildConfig:
    """Build and test commands run against the staging tree."""

    # Relative to the tree root; defaults to src/<service_name>
    build_subdir: Optional[str] = None
    build_command: List[str] = field(
        default_factory=lambda: ["cargo", "build", "--release"]
    )
    # Test phase is disabled by policy; set a command to gate promotion on it
    test_command: Optional[List[str]] = None
    # Relative to the tree root; defaults to src/<svc>/target/release/<svc>
    artifact_paths: Optional[List[str]] = None
    # None means no timeout
    build_timeout_seconds: Optional[int] = None
    test_timeout_seconds: Optional[int] = None


@dataclass
class SessionConfig:
    """GNU screen session hosting the running service."""

    # Defaults to the service name
    session_name: Optional[str] = None
    screen_binary: str = "screen"
    terminate_timeout_seconds: float = 10.0
    ready_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 0.2
    shell_settle_delay_seconds: float = 0.5
    # Relative to the production root; defaults to the artifact's directory
    service_workdir: Optional[str] = None
    # Defaults to ./<artifact file name>
    service_command: Optional[str] = None


@dataclass
class DnsRecordEntry:
    """One A record kept in sync with the WAN IP."""

    domain: str
    zone_id: str
    record_id: str


@dataclass
class DnsConfig:
    """Dynamic DNS updater settings (Cloudflare API)."""

    api_base_url: str = "https://api.cloudflare.com/client/v4"
    ip_probe_url: str = "https://api.ipify.org"
    # Either api_token (Bearer) or api_email + api_key (global key)
    api_token: str = ""
    api_email: str = ""
    api_key: str = ""
    records: List[DnsRecordEntry] = field(default_factory=list)
    ttl: int = 120
    proxied: bool = False
    request_timeout_seconds: int = 15


@dataclass
class CertConfig:
    """Certificate renewal check settings (certbot)."""

    threshold_days: int = 35
    certbot_binary: str = "certbot"
    use_sudo: bool = True
    live_dir: str = "/etc/letsencrypt/live"
    # Renewed files are copied to <dest_root>/<cert name>/; empty disables copying
    dest_root: str = ""
    owner: str = ""
    group: str = ""
    file_names: List[str] = field(
        default_factory=lambda: ["fullchain.pem", "privkey.pem"]
    )


@dataclass
class DeployerConfig:
    """
    Deployer configuration data structure.

    Contains the deployment layout, source control, logging and recovery
    settings plus the nested build, session, DNS and certificate sections.
    """

    config_dir: str
    root_dir: str = str(Path.home() / "deploy")
    staging_dirname: str = "staging"
    production_dirname: str = "prod"
    service_name: str = "service"
    git_binary: str = "git"
    remote: Optional[str] = None
    branch: Optional[str] = None
    log_level: str = "INFO"
    rollback_on_failure: bool = False
    stale_lock_seconds: int = 6 * 3600
    build_config: Optional[BuildConfig] = None
    session_config: Optional[SessionConfig] = None
    dns_config: Optional[DnsConfig] = None
    cert_config: Optional[CertConfig] = None

    def __post_init__(self):
        """Initialize nested config objects if not provided."""
        if self.build_config is None:
            self.build_config = BuildConfig()
        if self.session_config is None:
            self.session_config = SessionConfig()
        if self.dns_config is None:
            self.dns_config = DnsConfig()
        if self.cert_config is None:
            self.cert_config = CertConfig()

    @property
    def root_path(self) -> Path:
        return Path(self.root_dir).expanduser()

    @property
    def staging_path(self) -> Path:
        return self.root_path / self.staging_dirname

    @property
    def production_path(self) -> Path:
        return self.root_path / self.production_dirname

    @property
    def backup_root(self) -> Path:
        """Dated backups live next to the production directory."""
        return self.root_path

    @property
    def lock_file(self) -> Path:
        return self.root_path / ".deploy.lock"

    @property
    def status_file(self) -> Path:
        return self.root_path / ".deploy-status.json"

    @property
    def session_name(self) -> str:
        assert self.session_config is not None  # Guaranteed by __post_init__
        return self.session_config.session_name or self.service_name

    @property
    def build_subdir(self) -> str:
        assert self.build_config is not None  # Guaranteed by __post_init__
        return self.build_config.build_subdir or f"src/{self.service_name}"

    @property
    def artifact_paths(self) -> List[str]:
        assert self.build_config is not None  # Guaranteed by __post_init__
        if self.build_config.artifact_paths:
            return list(self.build_config.artifact_paths)
        return [f"{self.build_subdir}/target/release/{self.service_name}"]


class DeployerConfigManager:
    """
    Manages service deployer configuration.

    Handles configuration creation, validation, file persistence and
    environment variable overrides.
    """

    def __init__(self, config_dir_path: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            config_dir_path: Path to config directory (defaults to SVCDEPLOY_DATA_DIR
                env var or ~/.service-deployer)
        """
        if config_dir_path:
            self.config_dir = Path(config_dir_path)
        else:
            default_dir = os.environ.get(
                f"{ENV_PREFIX}DATA_DIR", str(DEFAULT_CONFIG_DIR)
            )
            self.config_dir = Path(default_dir)

        self.config_file_path = self.config_dir / "config.json"

    def create_default_config(self) -> DeployerConfig:
        """
        Create default configuration.

        Returns:
            DeployerConfig with default values
        """
        return DeployerConfig(config_dir=str(self.config_dir))

    def save_config(self, config: DeployerConfig) -> None:
        """
        Save configuration to file.

        Args:
            config: DeployerConfig object to save
        """
        self.config_dir.mkdir(parents=True, exist_ok=True)

        config_dict = asdict(config)

        with open(self.config_file_path, "w") as f:
            json.dump(config_dict, f, indent=2)

    def load_config(self) -> Optional[DeployerConfig]:
        """
        Load configuration from file.

        Returns:
            DeployerConfig if file exists and is valid, None otherwise

        Raises:
            ValueError: If configuration file is malformed
        """
        if not self.config_file_path.exists():
            return None

        try:
            with open(self.config_file_path, "r") as f:
                config_dict = json.load(f)

            if "config_dir" not in config_dict:
                config_dict["config_dir"] = str(self.config_dir)

            if isinstance(config_dict.get("build_config"), dict):
                config_dict["build_config"] = BuildConfig(
                    **config_dict["build_config"]
                )

            if isinstance(config_dict.get("session_config"), dict):
                config_dict["session_config"] = SessionConfig(
                    **config_dict["session_config"]
                )

            if isinstance(config_dict.get("dns_config"), dict):
                dns_dict = dict(config_dict["dns_config"])
                dns_dict["records"] = [
                    DnsRecordEntry(**record) if isinstance(record, dict) else record
                    for record in dns_dict.get("records", [])
                ]
                config_dict["dns_config"] = DnsConfig(**dns_dict)

            if isinstance(config_dict.get("cert_config"), dict):
                config_dict["cert_config"] = CertConfig(**config_dict["cert_config"])

            return DeployerConfig(**config_dict)

        except (json.JSONDecodeError, TypeError) as e:
            raise ValueError(
                f"Invalid configuration file {self.config_file_path}: {e}"
            ) from e

    def apply_env_overrides(self, config: DeployerConfig) -> DeployerConfig:
        """
        Apply environment variable overrides to configuration.

        Supported environment variables:
        - SVCDEPLOY_ROOT: Override deployment root directory
        - SVCDEPLOY_SERVICE_NAME: Override service name
        - SVCDEPLOY_SESSION_NAME: Override screen session name
        - SVCDEPLOY_BRANCH: Override branch pulled into staging
        - SVCDEPLOY_LOG_LEVEL: Override log level
        - SVCDEPLOY_ROLLBACK_ON_FAILURE: Enable recovery from the newest backup
        - SVCDEPLOY_CLOUDFLARE_API_TOKEN / _API_KEY / _EMAIL: DNS credentials

        Args:
            config: Base configuration to apply overrides to

        Returns:
            Updated configuration with environment overrides
        """
        if root_env := os.environ.get(f"{ENV_PREFIX}ROOT"):
            config.root_dir = root_env

        if service_env := os.environ.get(f"{ENV_PREFIX}SERVICE_NAME"):
            config.service_name = service_env

        assert config.session_config is not None  # Guaranteed by __post_init__
        if session_env := os.environ.get(f"{ENV_PREFIX}SESSION_NAME"):
            config.session_config.session_name = session_env

        if branch_env := os.environ.get(f"{ENV_PREFIX}BRANCH"):
            config.branch = branch_env

        if log_level_env := os.environ.get(f"{ENV_PREFIX}LOG_LEVEL"):
            config.log_level = log_level_env.upper()

        if rollback_env := os.environ.get(f"{ENV_PREFIX}ROLLBACK_ON_FAILURE"):
            config.rollback_on_failure = rollback_env.lower() in ("true", "1", "yes")

        if stale_env := os.environ.get(f"{ENV_PREFIX}STALE_LOCK_SECONDS"):
            try:
                config.stale_lock_seconds = int(stale_env)
            except ValueError:
                logging.warning(
                    f"Invalid {ENV_PREFIX}STALE_LOCK_SECONDS environment variable value "
                    f"'{stale_env}'. Using default {config.stale_lock_seconds} seconds"
                )

        assert config.dns_config is not None  # Guaranteed by __post_init__
        if token_env := os.environ.get(f"{ENV_PREFIX}CLOUDFLARE_API_TOKEN"):
            config.dns_config.api_token = token_env
        if key_env := os.environ.get(f"{ENV_PREFIX}CLOUDFLARE_API_KEY"):
            config.dns_config.api_key = key_env
        if email_env := os.environ.get(f"{ENV_PREFIX}CLOUDFLARE_EMAIL"):
            config.dns_config.api_email = email_env

        return config

    def validate_config(self, config: DeployerConfig) -> None:
        """
        Validate configuration settings.

        Args:
            config: Configuration to validate

        Raises:
            ValueError: If any configuration value is invalid
        """
        if not config.service_name.strip():
            raise ValueError("service_name must not be empty")

        if config.staging_dirname == config.production_dirname:
            raise ValueError(
                f"staging_dirname and production_dirname must differ, both are "
                f"'{config.staging_dirname}'"
            )

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if config.log_level.upper() not in valid_log_levels:
            raise ValueError(
                f"Log level must be one of {valid_log_levels}, got {config.log_level}"
            )

        if config.stale_lock_seconds <= 0:
            raise ValueError(
                f"stale_lock_seconds must be greater than 0, got {config.stale_lock_seconds}"
            )

        assert config.build_config is not None  # Guaranteed by __post_init__
        if not config.build_config.build_command:
            raise ValueError("build_command must not be empty")
        for name in ("build_timeout_seconds", "test_timeout_seconds"):
            value = getattr(config.build_config, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be greater than 0, got {value}")

        assert config.session_config is not None  # Guaranteed by __post_init__
        for name in (
            "terminate_timeout_seconds",
            "ready_timeout_seconds",
            "poll_interval_seconds",
        ):
            value = getattr(config.session_config, name)
            if value <= 0:
                raise ValueError(f"{name} must be greater than 0, got {value}")
        if config.session_config.shell_settle_delay_seconds < 0:
            raise ValueError(
                "shell_settle_delay_seconds must not be negative, got "
                f"{config.session_config.shell_settle_delay_seconds}"
            )

        assert config.cert_config is not None  # Guaranteed by __post_init__
        if config.cert_config.threshold_days < 0:
            raise ValueError(
                f"threshold_days must not be negative, got {config.cert_config.threshold_days}"
            )

    def get_config(self) -> DeployerConfig:
        """
        Load the effective configuration.

        Reads the config file (defaults when absent), applies environment
        overrides and validates the result.

        Returns:
            Validated DeployerConfig

        Raises:
            ValueError: If the file is malformed or a value is invalid
        """
        config = self.load_config() or self.create_default_config()
        config = self.apply_env_overrides(config)
        self.validate_config(config)
        return config
