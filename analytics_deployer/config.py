"""
Configuration management for the Analytics Stack Deployer.

Handles:
- Stack-wide defaults (project names, timezone, retention, ports)
- Access mode selection
- Secrets generation
- The immutable settings object passed to every renderer
"""

import os
import re
import secrets
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import Optional, Dict, List, Any, Tuple
from enum import Enum
import logging
import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class AccessMode(Enum):
    """How the stack is reached from outside the host."""
    DOMAIN = "domain"     # Caddy with automatic HTTPS per hostname
    IP = "ip"             # Caddy on <address>:<port>, no certificates
    TUNNEL = "tunnel"     # Loopback ports only, external tunnel agent in front


ACCESS_MODE_CHOICES = {
    "1": AccessMode.DOMAIN,
    "2": AccessMode.IP,
    "3": AccessMode.TUNNEL,
}

DEFAULT_ACCESS_MODE = AccessMode.IP

DEFAULT_IP_DETECT_URLS = [
    "https://api.ipify.org",
    "https://ifconfig.me/ip",
    "https://icanhazip.com",
]

CONFIG_FILENAME = "analytics-stack.yaml"

SECRET_BYTES = 16

_DURATION = re.compile(r"^\d+(ms|s|m|h|d|w|y)$")


def parse_access_mode(choice: Optional[str]) -> Tuple[AccessMode, bool]:
    """
    Map a menu answer to an access mode.

    Returns the mode and whether the answer was recognised. Anything that is
    not one of the menu numbers falls back to direct-address mode.
    """
    answer = (choice or "").strip()
    if answer in ACCESS_MODE_CHOICES:
        return ACCESS_MODE_CHOICES[answer], True
    return DEFAULT_ACCESS_MODE, False


def generate_secret(nbytes: int = SECRET_BYTES) -> str:
    """Generate a hex-encoded secret from the OS CSPRNG."""
    return secrets.token_hex(nbytes)


@dataclass(frozen=True)
class ExposedService:
    """A service reachable by the operator through the proxy, override or tunnel."""
    key: str
    label: str
    container: str
    internal_port: int
    host_port: int
    subdomain: str
    substack: bool = False

    @property
    def upstream(self) -> str:
        return f"{self.container}:{self.internal_port}"


# key -> (label, container, internal port, subdomain, part of sub-stack)
_EXPOSED_SERVICES = {
    "grafana": ("Grafana", "grafana", 3000, "grafana", False),
    "umami": ("Umami", "umami", 3000, "umami", False),
    "uptime-kuma": ("Uptime Kuma", "uptime-kuma", 3001, "uptime", False),
    "openreplay": ("OpenReplay", "openreplay-web", 8080, "openreplay", True),
}

DEFAULT_HOST_PORTS = {
    "grafana": 3000,
    "umami": 8081,
    "uptime-kuma": 3001,
    "openreplay": 8082,
}


@dataclass
class StackConfig:
    """Deployment defaults for the analytics stack."""

    project_name: str = "analytics-stack"
    openreplay_project_name: str = "openreplay"
    base_dir: Path = field(default_factory=Path.cwd)

    timezone: str = "America/Los_Angeles"
    grafana_admin_user: str = "admin"
    umami_db_user: str = "umami"
    umami_db_name: str = "umami"
    openreplay_db_user: str = "openreplay"
    loki_retention_period: str = "168h"

    compose_command: List[str] = field(default_factory=lambda: ["docker-compose"])
    ip_detect_urls: List[str] = field(default_factory=lambda: list(DEFAULT_IP_DETECT_URLS))
    ip_detect_timeout: float = 5.0
    host_ports: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_HOST_PORTS))

    def __post_init__(self):
        self.base_dir = Path(self.base_dir)
        unknown = set(self.host_ports) - set(_EXPOSED_SERVICES)
        if unknown:
            raise ConfigurationError(f"Unknown service(s) in host_ports: {', '.join(sorted(unknown))}")
        ports = dict(DEFAULT_HOST_PORTS)
        ports.update(self.host_ports)
        self.host_ports = ports
        if not self.compose_command:
            raise ConfigurationError("compose_command must not be empty")
        if not _DURATION.match(self.loki_retention_period):
            raise ConfigurationError(f"Invalid loki_retention_period: {self.loki_retention_period!r}")

    # === Paths ===

    @property
    def env_path(self) -> Path:
        return self.base_dir / ".env"

    @property
    def manifest_path(self) -> Path:
        return self.base_dir / "docker-compose.yml"

    @property
    def override_path(self) -> Path:
        return self.base_dir / "docker-compose.override.yml"

    @property
    def caddyfile_path(self) -> Path:
        return self.base_dir / "caddy" / "Caddyfile"

    @property
    def openreplay_dir(self) -> Path:
        return self.base_dir / "openreplay"

    @property
    def openreplay_manifest_path(self) -> Path:
        return self.openreplay_dir / "docker-compose.openreplay.yml"

    @property
    def openreplay_env_path(self) -> Path:
        return self.openreplay_dir / ".env.openreplay"

    # === Services ===

    def exposed_services(self, include_openreplay: bool = False) -> List[ExposedService]:
        """Services the operator reaches directly, in display order."""
        services = []
        for key, (label, container, internal, subdomain, substack) in _EXPOSED_SERVICES.items():
            if substack and not include_openreplay:
                continue
            services.append(ExposedService(
                key=key,
                label=label,
                container=container,
                internal_port=internal,
                host_port=self.host_ports[key],
                subdomain=subdomain,
                substack=substack,
            ))
        return services

    def exposed_service(self, key: str) -> ExposedService:
        for svc in self.exposed_services(include_openreplay=True):
            if svc.key == key:
                return svc
        raise KeyError(key)

    @property
    def required_executables(self) -> List[str]:
        """Executables that must be on PATH before anything is touched."""
        names = ["docker"]
        if self.compose_command[0] not in names:
            names.append(self.compose_command[0])
        return names

    def validate(self) -> List[str]:
        """Validate configuration and return list of issues."""
        issues = []

        used_ports: Dict[int, str] = {}
        for svc in self.exposed_services(include_openreplay=True):
            if not 0 < svc.host_port < 65536:
                issues.append(f"Invalid port {svc.host_port} for {svc.key}")
            if svc.host_port in (80, 443):
                issues.append(f"{svc.key} uses port {svc.host_port}, which is reserved for Caddy")
            if svc.host_port in used_ports:
                issues.append(
                    f"Port conflict: {svc.key} and {used_ports[svc.host_port]} "
                    f"both use port {svc.host_port}"
                )
            used_ports[svc.host_port] = svc.key

        if self.project_name == self.openreplay_project_name:
            issues.append("project_name and openreplay_project_name must differ")

        return issues

    # === Persistence ===

    @classmethod
    def load(cls, path: Path, base_dir: Optional[Path] = None) -> "StackConfig":
        """Load configuration from YAML file."""
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping at the top level")

        known = {f.name: f for f in fields(cls) if f.name != "base_dir"}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown configuration key: {key}")
                continue
            kwargs[key] = _coerce(key, value)

        return cls(base_dir=base_dir or path.parent, **kwargs)

    @classmethod
    def from_environment(cls, base_dir: Optional[Path] = None) -> "StackConfig":
        """
        Build the configuration for a run.

        Code defaults, then ``analytics-stack.yaml`` in the working directory,
        then ``ANALYTICS_TZ`` and ``ANALYTICS_IP_DETECT_URLS``.
        """
        base_dir = Path(base_dir) if base_dir else Path.cwd()
        config_path = base_dir / CONFIG_FILENAME
        if config_path.exists():
            logger.info(f"Loading configuration from {config_path}")
            config = cls.load(config_path, base_dir=base_dir)
        else:
            config = cls(base_dir=base_dir)

        tz = os.environ.get("ANALYTICS_TZ")
        if tz:
            config.timezone = tz

        urls = os.environ.get("ANALYTICS_IP_DETECT_URLS")
        if urls:
            config.ip_detect_urls = [u.strip() for u in urls.split(",") if u.strip()]

        return config


_LIST_KEYS = ("compose_command", "ip_detect_urls")


def _coerce(key: str, value: Any) -> Any:
    """Check a YAML value against the type the config field expects."""
    if key in _LIST_KEYS:
        if isinstance(value, str):
            return value.split()
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigurationError(f"{key} must be a list of strings")
        return value
    if key == "host_ports":
        if not isinstance(value, dict):
            raise ConfigurationError("host_ports must be a mapping of service to port")
        try:
            return {str(k): int(v) for k, v in value.items()}
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"host_ports values must be integers: {e}") from e
    if key == "ip_detect_timeout":
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"ip_detect_timeout must be a number: {e}") from e
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ConfigurationError(f"{key} must be a string")
    return str(value)


# === Per-run values ===

_CORE_SECRET_SLOTS = (
    "grafana_admin_password",
    "umami_app_secret",
    "umami_db_password",
)

_OPENREPLAY_SECRET_SLOTS = (
    "openreplay_db_password",
    "openreplay_minio_access_key",
    "openreplay_minio_secret_key",
    "openreplay_jwt_secret",
)


@dataclass(frozen=True)
class SecretBundle:
    """One fresh credential per slot. Values are kept out of repr()."""
    grafana_admin_password: str = field(repr=False)
    umami_app_secret: str = field(repr=False)
    umami_db_password: str = field(repr=False)
    openreplay_db_password: Optional[str] = field(default=None, repr=False)
    openreplay_minio_access_key: Optional[str] = field(default=None, repr=False)
    openreplay_minio_secret_key: Optional[str] = field(default=None, repr=False)
    openreplay_jwt_secret: Optional[str] = field(default=None, repr=False)

    @classmethod
    def generate(cls, include_openreplay: bool = False) -> "SecretBundle":
        """Generate a pairwise-distinct secret for every slot in use."""
        slots = list(_CORE_SECRET_SLOTS)
        if include_openreplay:
            slots.extend(_OPENREPLAY_SECRET_SLOTS)

        values: Dict[str, str] = {}
        seen = set()
        for slot in slots:
            value = generate_secret()
            while value in seen:
                value = generate_secret()
            seen.add(value)
            values[slot] = value
        return cls(**values)

    def values(self) -> List[str]:
        """All populated secret values."""
        return [
            getattr(self, name)
            for name in _CORE_SECRET_SLOTS + _OPENREPLAY_SECRET_SLOTS
            if getattr(self, name)
        ]


@dataclass(frozen=True)
class DeploymentSettings:
    """Validated answers for one run, built once and passed to every renderer."""
    access_mode: AccessMode
    secrets: SecretBundle
    enable_openreplay: bool = False
    host_address: str = "localhost"
    domains: Dict[str, str] = field(default_factory=dict)
    acme_email: Optional[str] = None

    @property
    def uses_proxy(self) -> bool:
        return self.access_mode in (AccessMode.DOMAIN, AccessMode.IP)

    @property
    def uses_override(self) -> bool:
        return self.access_mode in (AccessMode.IP, AccessMode.TUNNEL)

    def public_url(self, service: ExposedService) -> str:
        """URL the operator uses to reach a service."""
        if self.access_mode == AccessMode.DOMAIN:
            return f"https://{self.domains[service.key]}"
        if self.access_mode == AccessMode.TUNNEL:
            return f"http://localhost:{service.host_port}"
        host = self.host_address
        if ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{service.host_port}"
