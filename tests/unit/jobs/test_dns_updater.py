"""Unit tests for DnsUpdater - Cloudflare A record reconciliation."""

from unittest.mock import Mock

import pytest
import requests

from service_deployer.jobs.dns_updater import (
    STATUS_FAILED,
    STATUS_UNCHANGED,
    STATUS_UPDATED,
    DnsUpdater,
)
from service_deployer.jobs.errors import DnsProbeError
from service_deployer.utils.config_manager import DnsConfig, DnsRecordEntry

RECORD_URL = "https://api.cloudflare.com/client/v4/zones/z1/dns_records/r1"


def _response(status_code=200, json_data=None, text=""):
    response = Mock(status_code=status_code, text=text)
    if json_data is None:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = json_data
    return response


def _record(content):
    return {
        "success": True,
        "errors": [],
        "result": {"id": "r1", "name": "example.com", "type": "A", "content": content},
    }


@pytest.fixture
def config():
    return DnsConfig(
        api_token="cf-token",
        records=[DnsRecordEntry(domain="example.com", zone_id="z1", record_id="r1")],
    )


@pytest.fixture
def session():
    session = Mock(spec=requests.Session)
    session.get.side_effect = lambda url, **kwargs: (
        _response(text="203.0.113.7\n")
        if "ipify" in url
        else _response(json_data=_record("198.51.100.1"))
    )
    session.put.return_value = _response(json_data=_record("203.0.113.7"))
    return session


class TestDnsUpdaterWanIp:
    """Test WAN IP probing."""

    def test_probe_strips_whitespace(self, config, session):
        assert DnsUpdater(config, session).get_wan_ip() == "203.0.113.7"

    def test_empty_probe_raises(self, config):
        session = Mock()
        session.get.return_value = _response(text="")

        with pytest.raises(DnsProbeError):
            DnsUpdater(config, session).get_wan_ip()

    def test_probe_connection_error_raises(self, config):
        session = Mock()
        session.get.side_effect = requests.exceptions.ConnectionError("offline")

        with pytest.raises(DnsProbeError, match="offline"):
            DnsUpdater(config, session).run()

    def test_probe_http_error_raises(self, config):
        session = Mock()
        session.get.return_value = _response(status_code=503, text="busy")

        with pytest.raises(DnsProbeError, match="503"):
            DnsUpdater(config, session).get_wan_ip()


class TestDnsUpdaterUpdate:
    """Test per-record reconciliation."""

    def test_changed_ip_is_written(self, config, session):
        results = DnsUpdater(config, session).run()

        assert len(results) == 1
        assert results[0].status == STATUS_UPDATED
        assert results[0].previous_ip == "198.51.100.1"
        session.put.assert_called_once()
        args, kwargs = session.put.call_args
        assert args[0] == RECORD_URL
        assert kwargs["json"] == {
            "type": "A",
            "name": "example.com",
            "content": "203.0.113.7",
            "ttl": 120,
            "proxied": False,
        }
        assert kwargs["headers"]["Authorization"] == "Bearer cf-token"

    def test_unchanged_ip_is_not_written(self, config, session):
        session.get.side_effect = lambda url, **kwargs: (
            _response(text="203.0.113.7")
            if "ipify" in url
            else _response(json_data=_record("203.0.113.7"))
        )

        results = DnsUpdater(config, session).run()

        assert results[0].status == STATUS_UNCHANGED
        session.put.assert_not_called()

    def test_api_rejection_is_failed(self, config, session):
        session.put.return_value = _response(
            status_code=400,
            json_data={
                "success": False,
                "errors": [{"code": 9005, "message": "Content for A record is invalid"}],
            },
        )

        results = DnsUpdater(config, session).run()

        assert results[0].status == STATUS_FAILED
        assert "9005" in results[0].message

    def test_non_json_response_is_failed(self, config, session):
        session.put.return_value = _response(status_code=502, text="Bad Gateway")

        results = DnsUpdater(config, session).run()

        assert results[0].status == STATUS_FAILED
        assert "Bad Gateway" in results[0].message

    def test_one_failing_domain_does_not_stop_others(self, config, session):
        config.records.append(
            DnsRecordEntry(domain="www.example.com", zone_id="z1", record_id="r2")
        )
        session.put.side_effect = [
            requests.exceptions.Timeout("timed out"),
            _response(json_data=_record("203.0.113.7")),
        ]

        results = DnsUpdater(config, session).run()

        assert [r.status for r in results] == [STATUS_FAILED, STATUS_UPDATED]

    def test_global_key_credentials(self, session):
        config = DnsConfig(
            api_email="ops@example.com",
            api_key="global-key",
            records=[DnsRecordEntry(domain="example.com", zone_id="z1", record_id="r1")],
        )

        DnsUpdater(config, session).run()

        headers = session.put.call_args[1]["headers"]
        assert headers["X-Auth-Email"] == "ops@example.com"
        assert headers["X-Auth-Key"] == "global-key"
        assert "Authorization" not in headers

    def test_secrets_not_logged_on_failure(self, config, session, caplog):
        session.put.return_value = _response(
            json_data={"success": False, "errors": [{"code": 10000, "message": "Authentication error"}]}
        )

        DnsUpdater(config, session).run()

        assert "DNS-API-002" in caplog.text
        assert "cf-token" not in caplog.text
