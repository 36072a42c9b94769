"""Operator CLI for the service deployer.

Provides the deployment run, status inspection and the scheduled DNS and
certificate jobs as click commands.
"""

import json
import sys
from datetime import datetime
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from service_deployer import __version__
from service_deployer.correlation import set_correlation_id
from service_deployer.logging_utils import configure_logging
from service_deployer.utils.config_manager import DeployerConfig, DeployerConfigManager

console = Console()


def _format_status_color(status: str) -> str:
    """Get color for a run or job status."""
    status_lower = status.lower()
    if status_lower in ("success", "updated", "renewed", "done", "detached"):
        return "green"
    elif status_lower in ("failed", "aborted", "error"):
        return "red"
    elif status_lower in ("unchanged", "attached"):
        return "yellow"
    return "white"


def _load_config(ctx: click.Context) -> DeployerConfig:
    manager = DeployerConfigManager(ctx.obj.get("config_dir"))
    try:
        config = manager.get_config()
    except ValueError as e:
        raise click.ClickException(str(e))
    configure_logging(config.log_level)
    set_correlation_id()
    return config


@click.group("svcdeploy")
@click.option(
    "--config",
    "config_dir",
    type=click.Path(file_okay=False),
    envvar="SVCDEPLOY_DATA_DIR",
    help="Directory holding config.json (default: ~/.service-deployer)",
)
@click.version_option(__version__, prog_name="svcdeploy")
@click.pass_context
def cli(ctx: click.Context, config_dir: Optional[str]):
    """Build, rotate and restart a single long-running service."""
    ctx.ensure_object(dict)
    ctx.obj["config_dir"] = config_dir


@cli.command("deploy")
@click.pass_context
def deploy_command(ctx: click.Context):
    """Run one deployment (same as svcdeploy-run)."""
    from service_deployer.auto_deploy.run_once import build_orchestrator

    config = _load_config(ctx)
    result = build_orchestrator(config).run()
    sys.exit(result.exit_code)


@cli.command("status")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def status_command(ctx: click.Context, json_output: bool):
    """Show the last run outcome and the dated backups."""
    from service_deployer.auto_deploy.deployment_rotator import (
        list_backups,
        list_failed,
    )
    from service_deployer.auto_deploy.orchestrator import read_status_file

    config = _load_config(ctx)
    status = read_status_file(config.status_file)
    backups = list_backups(config.backup_root, config.production_dirname)
    failed = list_failed(config.backup_root, config.production_dirname)

    if json_output:
        click.echo(
            json.dumps(
                {
                    "last_run": status,
                    "backups": [str(b) for b in backups],
                    "failed": [str(f) for f in failed],
                },
                indent=2,
            )
        )
        return

    if status is None:
        console.print("[dim]No deployment run recorded yet[/dim]")
    else:
        table = Table(title=f"Last deployment run - {config.service_name}")
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        for key in (
            "status",
            "phase",
            "failed_phase",
            "staged_id",
            "production_id",
            "backup_path",
            "error",
            "timestamp",
        ):
            value = status.get(key)
            if value is None:
                continue
            if key == "status":
                color = _format_status_color(str(value))
                table.add_row(key, f"[{color}]{value}[/{color}]")
            else:
                table.add_row(key, str(value))
        console.print(table)

    backup_table = Table(title=f"Backups in {config.backup_root}")
    backup_table.add_column("Directory", style="blue")
    backup_table.add_column("Modified", style="dim")
    for backup in backups:
        modified = datetime.fromtimestamp(backup.stat().st_mtime)
        backup_table.add_row(backup.name, f"{modified:%Y-%m-%d %H:%M}")
    if backups:
        console.print(backup_table)
    else:
        console.print("[dim]No dated backups found[/dim]")

    for tree in failed:
        console.print(
            f"[yellow]Failed production tree kept for inspection: {tree.name}[/yellow]"
        )


@cli.command("sessions")
@click.pass_context
def sessions_command(ctx: click.Context):
    """List screen sessions carrying the service's session name."""
    from service_deployer.auto_deploy.session_supervisor import SessionSupervisor

    config = _load_config(ctx)
    assert config.session_config is not None  # Guaranteed by __post_init__
    supervisor = SessionSupervisor(screen_binary=config.session_config.screen_binary)
    sessions = [s for s in supervisor.list_sessions() if s.name == config.session_name]

    if not sessions:
        console.print(f"[dim]No session named '{config.session_name}'[/dim]")
        return

    table = Table(title=f"Sessions - {config.session_name}")
    table.add_column("PID", style="cyan")
    table.add_column("Name")
    table.add_column("State", justify="center")
    for session in sessions:
        color = _format_status_color(session.state.value)
        table.add_row(
            str(session.pid), session.name, f"[{color}]{session.state.value}[/{color}]"
        )
    console.print(table)


@cli.command("dns-update")
@click.pass_context
def dns_update_command(ctx: click.Context):
    """Point the configured DNS A records at the current WAN IP."""
    from service_deployer.jobs.dns_updater import STATUS_FAILED, DnsUpdater
    from service_deployer.jobs.errors import DnsProbeError

    config = _load_config(ctx)
    assert config.dns_config is not None  # Guaranteed by __post_init__
    if not config.dns_config.records:
        console.print("[yellow]No DNS records configured[/yellow]")
        return

    try:
        results = DnsUpdater(config.dns_config).run()
    except DnsProbeError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    table = Table(title="DNS update")
    table.add_column("Domain", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("IP")
    table.add_column("Message", style="dim")
    for result in results:
        color = _format_status_color(result.status)
        table.add_row(
            result.domain,
            f"[{color}]{result.status}[/{color}]",
            result.ip,
            result.message,
        )
    console.print(table)

    if any(result.status == STATUS_FAILED for result in results):
        sys.exit(1)


@cli.command("cert-renew")
@click.pass_context
def cert_renew_command(ctx: click.Context):
    """Renew certificates that are close to expiry."""
    from service_deployer.jobs.cert_renewer import CertRenewer
    from service_deployer.jobs.errors import CertParseError

    config = _load_config(ctx)
    assert config.cert_config is not None  # Guaranteed by __post_init__

    try:
        statuses = CertRenewer(config.cert_config).run()
    except CertParseError as e:
        console.print(f"[red]Error: {e}[/red]")
        if e.output:
            console.print(f"[dim]Certbot output: {e.output}[/dim]")
        sys.exit(1)

    table = Table(title=f"Certificates (renewal threshold {config.cert_config.threshold_days} days)")
    table.add_column("Certificate", style="cyan")
    table.add_column("Domains")
    table.add_column("Days valid", justify="right")
    table.add_column("Result", justify="center")
    for status in statuses:
        if status.error:
            outcome = "error"
        elif status.renewed:
            outcome = "renewed"
        else:
            outcome = "unchanged"
        color = _format_status_color(outcome)
        days = str(status.days_valid)
        if status.days_valid_after is not None:
            days = f"{status.days_valid} -> {status.days_valid_after}"
        table.add_row(
            status.name,
            " ".join(status.domains),
            days,
            f"[{color}]{outcome}[/{color}]",
        )
    console.print(table)

    if any(status.error for status in statuses):
        sys.exit(1)


@cli.command("init-config")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
@click.pass_context
def init_config_command(ctx: click.Context, force: bool):
    """Write a default config.json."""
    manager = DeployerConfigManager(ctx.obj.get("config_dir"))
    if manager.config_file_path.exists() and not force:
        raise click.ClickException(
            f"{manager.config_file_path} already exists (use --force to overwrite)"
        )
    manager.save_config(manager.create_default_config())
    console.print(f"[green]Wrote {manager.config_file_path}[/green]")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
