"""Shared fixtures for service-deployer tests."""

import logging
import os

import pytest

from service_deployer.correlation import clear_correlation_id


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Drop handlers installed by configure_logging() and the run's correlation ID."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if getattr(handler, "_service_deployer", False):
            root.removeHandler(handler)
    root.setLevel(level)
    clear_correlation_id()


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep tests away from the real ~/.service-deployer and SVCDEPLOY_* settings."""
    for key in list(os.environ):
        if key.startswith("SVCDEPLOY_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("SVCDEPLOY_DATA_DIR", str(tmp_path / "config"))
