"""Service deployer - scheduled build, rotate and restart of a single long-running service."""

__version__ = "1.0.0"
