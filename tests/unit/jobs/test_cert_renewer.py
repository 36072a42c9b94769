"""Unit tests for CertRenewer - per-certificate renewal check."""

from unittest.mock import Mock, patch
import os
import shutil
import stat

import pytest

from service_deployer.jobs.cert_renewer import CertRenewer, parse_certificates
from service_deployer.jobs.errors import CertParseError
from service_deployer.utils.config_manager import CertConfig


def _certificates_output(*certs):
    """Render `certbot certificates` output for (name, domains, days) tuples."""
    lines = [
        "Saving debug log to /var/log/letsencrypt/letsencrypt.log",
        "",
        "- - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - -",
        "Found the following certs:",
    ]
    for name, domains, days in certs:
        validity = f"(VALID: {days} days)" if days is not None else "(INVALID: EXPIRED)"
        lines += [
            f"  Certificate Name: {name}",
            "    Serial Number: 4a1b2c3d",
            "    Key Type: ECDSA",
            f"    Domains: {domains}",
            f"    Expiry Date: 2026-11-20 06:00:00+00:00 {validity}",
            f"    Certificate Path: /etc/letsencrypt/live/{name}/fullchain.pem",
            f"    Private Key Path: /etc/letsencrypt/live/{name}/privkey.pem",
        ]
    lines.append(
        "- - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - -"
    )
    return "\n".join(lines) + "\n"


def _completed(stdout="", returncode=0, stderr=""):
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestParseCertificates:
    """Test parsing of certbot certificates output."""

    def test_each_certificate_parsed_separately(self):
        output = _certificates_output(
            ("example.com", "example.com www.example.com", 80),
            ("api.example.com", "api.example.com", 12),
        )

        statuses = parse_certificates(output)

        assert [(s.name, s.days_valid) for s in statuses] == [
            ("example.com", 80),
            ("api.example.com", 12),
        ]
        assert statuses[0].domains == ["example.com", "www.example.com"]

    def test_single_day(self):
        output = _certificates_output(("example.com", "example.com", 1)).replace(
            "1 days", "1 day"
        )

        assert parse_certificates(output)[0].days_valid == 1

    def test_invalid_certificate_counts_as_zero(self):
        statuses = parse_certificates(_certificates_output(("old.example.com", "old.example.com", None)))

        assert statuses[0].days_valid == 0

    def test_no_certificates(self):
        assert parse_certificates("No certificates found.\n") == []


class TestCertRenewerRun:
    """Test CertRenewer.run()."""

    @pytest.fixture
    def config(self, tmp_path):
        live = tmp_path / "live"
        for name in ("example.com", "api.example.com"):
            (live / name).mkdir(parents=True)
            (live / name / "fullchain.pem").write_text(f"chain {name}")
            (live / name / "privkey.pem").write_text(f"key {name}")
        return CertConfig(
            use_sudo=False,
            live_dir=str(live),
            dest_root=str(tmp_path / "certs"),
        )

    @patch("subprocess.run")
    def test_nothing_due(self, mock_run, config):
        mock_run.return_value = _completed(
            _certificates_output(("example.com", "example.com", 80))
        )

        statuses = CertRenewer(config).run()

        assert statuses[0].renewed is False
        assert mock_run.call_count == 1
        assert mock_run.call_args[0][0] == ["certbot", "certificates"]

    @patch("subprocess.run")
    def test_only_expiring_certificate_renewed(self, mock_run, config, tmp_path):
        """Certificates are judged individually, not as one co-expiring group."""
        mock_run.side_effect = [
            _completed(
                _certificates_output(
                    ("example.com", "example.com", 80),
                    ("api.example.com", "api.example.com", 12),
                )
            ),
            _completed(),
            _completed(
                _certificates_output(
                    ("example.com", "example.com", 80),
                    ("api.example.com", "api.example.com", 89),
                )
            ),
        ]

        statuses = CertRenewer(config).run()

        renew_call = mock_run.call_args_list[1][0][0]
        assert renew_call == [
            "certbot",
            "renew",
            "--cert-name",
            "api.example.com",
            "--quiet",
        ]
        by_name = {s.name: s for s in statuses}
        assert by_name["example.com"].renewed is False
        assert by_name["api.example.com"].renewed is True
        assert by_name["api.example.com"].days_valid_after == 89

        dest = tmp_path / "certs" / "api.example.com" / "privkey.pem"
        assert dest.read_text() == "key api.example.com"
        assert stat.S_IMODE(os.stat(dest).st_mode) == 0o600
        assert not (tmp_path / "certs" / "example.com").exists()

    @patch("subprocess.run")
    def test_key_is_private_before_contents_are_written(self, mock_run, config, tmp_path):
        """An existing world-readable copy is tightened before the new key lands."""
        dest = tmp_path / "certs" / "example.com" / "privkey.pem"
        dest.parent.mkdir(parents=True)
        dest.write_text("old key")
        os.chmod(dest, 0o644)
        mock_run.side_effect = [
            _completed(_certificates_output(("example.com", "example.com", 3))),
            _completed(),
            _completed(_certificates_output(("example.com", "example.com", 90))),
        ]
        modes_at_write = []
        real_copyfileobj = shutil.copyfileobj

        def recording_copyfileobj(src, dst, *args, **kwargs):
            modes_at_write.append(stat.S_IMODE(os.fstat(dst.fileno()).st_mode))
            return real_copyfileobj(src, dst, *args, **kwargs)

        with patch("shutil.copyfileobj", side_effect=recording_copyfileobj):
            CertRenewer(config).run()

        assert modes_at_write
        assert set(modes_at_write) == {0o600}
        assert dest.read_text() == "key example.com"

    @patch("subprocess.run")
    def test_threshold_is_inclusive(self, mock_run, config):
        mock_run.side_effect = [
            _completed(_certificates_output(("example.com", "example.com", 35))),
            _completed(),
            _completed(_certificates_output(("example.com", "example.com", 90))),
        ]

        statuses = CertRenewer(config).run()

        assert statuses[0].renewed is True

    @patch("subprocess.run")
    def test_renew_failure_recorded_per_certificate(self, mock_run, config):
        mock_run.side_effect = [
            _completed(
                _certificates_output(
                    ("example.com", "example.com", 3),
                    ("api.example.com", "api.example.com", 12),
                )
            ),
            _completed(returncode=1, stderr="Challenge failed"),
            _completed(),
            _completed(
                _certificates_output(
                    ("example.com", "example.com", 3),
                    ("api.example.com", "api.example.com", 89),
                )
            ),
        ]

        statuses = CertRenewer(config).run()

        by_name = {s.name: s for s in statuses}
        assert "Challenge failed" in by_name["example.com"].error
        assert by_name["api.example.com"].renewed is True
        assert by_name["api.example.com"].error is None

    @patch("subprocess.run")
    def test_unparsable_output_raises(self, mock_run, config):
        mock_run.return_value = _completed("something unexpected", returncode=1)

        with pytest.raises(CertParseError) as exc_info:
            CertRenewer(config).run()

        assert "something unexpected" in exc_info.value.output

    @patch("subprocess.run")
    def test_sudo_prefix(self, mock_run, config):
        config.use_sudo = True
        mock_run.return_value = _completed(
            _certificates_output(("example.com", "example.com", 80))
        )

        CertRenewer(config).run()

        assert mock_run.call_args[0][0] == ["sudo", "certbot", "certificates"]
