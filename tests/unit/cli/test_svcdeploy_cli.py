"""Tests for the svcdeploy operator CLI."""

from unittest.mock import Mock, patch
import json

import pytest
from click.testing import CliRunner

from service_deployer.cli import cli
from service_deployer.auto_deploy.session_supervisor import SessionInfo, SessionState
from service_deployer.jobs.cert_renewer import CertStatus
from service_deployer.jobs.dns_updater import DnsUpdateResult
from service_deployer.utils.config_manager import DeployerConfigManager, DnsRecordEntry


@pytest.fixture
def runner():
    """Create a Click test runner."""
    return CliRunner()


@pytest.fixture
def config_dir(tmp_path):
    """Config directory whose deployment root lives under tmp_path."""
    manager = DeployerConfigManager(str(tmp_path / "cfg"))
    config = manager.create_default_config()
    config.root_dir = str(tmp_path / "deploy")
    config.service_name = "relay"
    manager.save_config(config)
    return str(tmp_path / "cfg")


class TestInitConfig:
    def test_writes_default_config(self, runner, tmp_path):
        target = tmp_path / "new"

        result = runner.invoke(cli, ["--config", str(target), "init-config"])

        assert result.exit_code == 0
        data = json.loads((target / "config.json").read_text())
        assert data["production_dirname"] == "prod"
        assert data["rollback_on_failure"] is False

    def test_refuses_to_overwrite(self, runner, config_dir):
        result = runner.invoke(cli, ["--config", config_dir, "init-config"])

        assert result.exit_code != 0
        assert "already exists" in result.output

    def test_force_overwrites(self, runner, config_dir):
        result = runner.invoke(cli, ["--config", config_dir, "init-config", "--force"])

        assert result.exit_code == 0


class TestDeployCommand:
    @patch("service_deployer.auto_deploy.run_once.build_orchestrator")
    def test_exit_code_passed_through(self, mock_build, runner, config_dir):
        mock_build.return_value.run.return_value = Mock(exit_code=75)

        result = runner.invoke(cli, ["--config", config_dir, "deploy"])

        assert result.exit_code == 75
        assert mock_build.call_args[0][0].service_name == "relay"

    def test_invalid_config_reported(self, runner, tmp_path):
        (tmp_path / "bad").mkdir()
        (tmp_path / "bad" / "config.json").write_text("{")

        result = runner.invoke(cli, ["--config", str(tmp_path / "bad"), "deploy"])

        assert result.exit_code != 0
        assert "Invalid configuration file" in result.output


class TestStatusCommand:
    def test_no_runs_yet(self, runner, config_dir):
        result = runner.invoke(cli, ["--config", config_dir, "status"])

        assert result.exit_code == 0
        assert "No deployment run recorded yet" in result.output

    def test_json_output(self, runner, config_dir, tmp_path):
        deploy_root = tmp_path / "deploy"
        (deploy_root / "prod_20261016").mkdir(parents=True)
        (deploy_root / ".deploy-status.json").write_text(
            json.dumps({"status": "success", "phase": "done", "staged_id": "A1"})
        )

        result = runner.invoke(cli, ["--config", config_dir, "status", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["last_run"]["staged_id"] == "A1"
        assert data["backups"] == [str(deploy_root / "prod_20261016")]

    def test_table_output(self, runner, config_dir, tmp_path):
        deploy_root = tmp_path / "deploy"
        (deploy_root / "prod_20261016").mkdir(parents=True)
        (deploy_root / ".deploy-status.json").write_text(
            json.dumps({"status": "failed", "phase": "aborted", "failed_phase": "building"})
        )

        result = runner.invoke(cli, ["--config", config_dir, "status"])

        assert result.exit_code == 0
        assert "building" in result.output
        assert "prod_20261016" in result.output

    def test_failed_trees_listed(self, runner, config_dir, tmp_path):
        deploy_root = tmp_path / "deploy"
        (deploy_root / "prod_failed_20261017").mkdir(parents=True)

        result = runner.invoke(cli, ["--config", config_dir, "status"])
        json_result = runner.invoke(cli, ["--config", config_dir, "status", "--json"])

        assert "prod_failed_20261017" in result.output
        assert json.loads(json_result.output)["failed"] == [
            str(deploy_root / "prod_failed_20261017")
        ]


class TestSessionsCommand:
    @patch("service_deployer.auto_deploy.session_supervisor.SessionSupervisor.list_sessions")
    def test_lists_matching_sessions(self, mock_list, runner, config_dir):
        mock_list.return_value = [
            SessionInfo(4242, "relay", SessionState.DETACHED),
            SessionInfo(5151, "other", SessionState.DETACHED),
        ]

        result = runner.invoke(cli, ["--config", config_dir, "sessions"])

        assert result.exit_code == 0
        assert "4242" in result.output
        assert "5151" not in result.output

    @patch("service_deployer.auto_deploy.session_supervisor.SessionSupervisor.list_sessions")
    def test_no_sessions(self, mock_list, runner, config_dir):
        mock_list.return_value = []

        result = runner.invoke(cli, ["--config", config_dir, "sessions"])

        assert "No session named 'relay'" in result.output


class TestJobCommands:
    def test_dns_update_without_records(self, runner, config_dir):
        result = runner.invoke(cli, ["--config", config_dir, "dns-update"])

        assert result.exit_code == 0
        assert "No DNS records configured" in result.output

    @patch("service_deployer.jobs.dns_updater.DnsUpdater.run")
    def test_dns_update_failure_exits_non_zero(self, mock_run, runner, config_dir):
        manager = DeployerConfigManager(config_dir)
        config = manager.load_config()
        config.dns_config.records = [
            DnsRecordEntry(domain="example.com", zone_id="z1", record_id="r1")
        ]
        manager.save_config(config)
        mock_run.return_value = [
            DnsUpdateResult(domain="example.com", status="failed", ip="203.0.113.7")
        ]

        result = runner.invoke(cli, ["--config", config_dir, "dns-update"])

        assert result.exit_code == 1
        assert "example.com" in result.output

    @patch("service_deployer.jobs.cert_renewer.CertRenewer.run")
    def test_cert_renew_table(self, mock_run, runner, config_dir):
        mock_run.return_value = [
            CertStatus(name="example.com", domains=["example.com"], days_valid=80),
            CertStatus(
                name="api.example.com",
                domains=["api.example.com"],
                days_valid=12,
                renewed=True,
                days_valid_after=89,
            ),
        ]

        result = runner.invoke(cli, ["--config", config_dir, "cert-renew"])

        assert result.exit_code == 0
        assert "renewed" in result.output
        assert "12 -> 89" in result.output
