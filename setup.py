"""
Setup script for service-deployer.

Project metadata, dependencies and entry points live in pyproject.toml.
This file only exists so that legacy editable installs keep working.

Installation:
    pip install -e .[test]
"""

from setuptools import setup

# Use pyproject.toml for main configuration
setup()
