"""
Analytics Stack Deployer
========================

Interactive deployment and teardown of a self-hosted web analytics stack.

Features:
- Docker Compose generation for Umami, Grafana, Loki, Promtail, Prometheus and Uptime Kuma
- Optional OpenReplay session replay as a separate compose project
- Domain (automatic HTTPS), direct IP and tunnel access modes through Caddy
- Fresh secrets on every run, written to owner-only env files
- Complete teardown of containers, volumes, networks and generated files

License: MIT
"""

__version__ = "1.0.0"
__author__ = "Analytics Stack Deployer"

from .config import AccessMode, DeploymentSettings, SecretBundle, StackConfig
from .core import AnalyticsStackDeployer, run_deploy
from .teardown import StackTeardown, run_cleanup

__all__ = [
    "AccessMode",
    "AnalyticsStackDeployer",
    "DeploymentSettings",
    "SecretBundle",
    "StackConfig",
    "StackTeardown",
    "run_cleanup",
    "run_deploy",
]
