"""
Typed models for every generated file.

Handles:
- Environment files (.env, .env.openreplay)
- Caddyfile (reverse proxy routes)
- docker-compose override (port publishing)
- Writing rendered files to disk

Values are validated when the model is rendered, so nothing the operator
typed can break out of its line, block or quoting.
"""

import os
import re
import tempfile
import logging
from pathlib import Path
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, List, Tuple, Any
import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# === ENVIRONMENT FILES ===

_ENV_KEY = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_ENV_PLAIN_VALUE = re.compile(r"^[A-Za-z0-9_./:@%+,=-]*$")


def _quote_env_value(key: str, value: str) -> str:
    if "\n" in value or "\r" in value or "\x00" in value:
        raise ConfigurationError(f"Value for {key} must be a single line")
    if _ENV_PLAIN_VALUE.match(value):
        return value
    if "'" in value:
        raise ConfigurationError(f"Value for {key} must not contain a single quote")
    # Single quotes keep compose from interpolating or unescaping the value.
    return f"'{value}'"


@dataclass
class EnvFile:
    """Ordered KEY=value file, grouped into commented sections."""
    title: str
    entries: List[Tuple[str, Optional[str], Optional[str]]] = field(default_factory=list)

    def section(self, name: str) -> "EnvFile":
        self.entries.append(("section", name, None))
        return self

    def set(self, key: str, value: Any) -> "EnvFile":
        if not _ENV_KEY.match(key):
            raise ConfigurationError(f"Invalid environment variable name: {key!r}")
        self.entries.append(("entry", key, str(value)))
        return self

    def render(self) -> str:
        out = [
            "# ============================================================",
            f"# {self.title}",
            f"# Generated: {datetime.now().isoformat(timespec='seconds')}",
            "# ============================================================",
        ]
        for kind, key, value in self.entries:
            if kind == "section":
                out.append("")
                out.append(f"# === {key} ===")
            else:
                out.append(f"{key}={_quote_env_value(key, value)}")
        out.append("")
        return "\n".join(out)


# === CADDYFILE ===

_PROXY_ADDRESS = re.compile(r"^(https?://)?(\[[0-9A-Fa-f:.]+\]|[A-Za-z0-9.-]+)(:\d{1,5})?$")
_UPSTREAM = re.compile(r"^[a-z0-9][a-z0-9-]*:\d{1,5}$")
_EMAIL = re.compile(r"^[^@\s{}#\"']+@[^@\s{}#\"']+\.[^@\s{}#\"']+$")


@dataclass(frozen=True)
class ProxyRoute:
    """One public address forwarded to one internal service address."""
    address: str
    upstream: str
    label: str = ""

    def validate(self):
        if not _PROXY_ADDRESS.match(self.address):
            raise ConfigurationError(f"Invalid proxy address: {self.address!r}")
        if not _UPSTREAM.match(self.upstream):
            raise ConfigurationError(f"Invalid upstream: {self.upstream!r}")


@dataclass
class ProxyConfig:
    """Caddyfile: a global options block plus one site block per route."""
    routes: List[ProxyRoute] = field(default_factory=list)
    email: Optional[str] = None
    auto_https: bool = True

    def render(self) -> str:
        if self.email is not None and not _EMAIL.match(self.email):
            raise ConfigurationError(f"Invalid contact email: {self.email!r}")

        lines = ["{"]
        if self.auto_https:
            if self.email:
                lines.append(f"    email {self.email}")
        else:
            lines.append("    auto_https off")
        lines.append("}")
        lines.append("")

        for route in self.routes:
            route.validate()
            if route.label:
                lines.append(f"# {route.label}")
            lines.append(f"{route.address} {{")
            lines.append(f"    reverse_proxy {route.upstream}")
            lines.append("}")
            lines.append("")

        return "\n".join(lines)


# === COMPOSE OVERRIDE ===

@dataclass(frozen=True)
class PortMapping:
    """Publish a container port on the host, optionally on one interface."""
    service: str
    host_port: int
    container_port: int
    host_ip: Optional[str] = None

    def render(self) -> str:
        for port in (self.host_port, self.container_port):
            if not 0 < int(port) < 65536:
                raise ConfigurationError(f"Invalid port {port} for {self.service}")
        if self.host_ip:
            return f"{self.host_ip}:{self.host_port}:{self.container_port}"
        return f"{self.host_port}:{self.container_port}"


@dataclass
class ComposeOverride:
    """Supplemental port declarations layered on the primary manifest."""
    mappings: List[PortMapping] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        services: Dict[str, Dict[str, List[str]]] = {}
        for mapping in self.mappings:
            services.setdefault(mapping.service, {"ports": []})["ports"].append(mapping.render())
        return {"services": services}

    def render(self) -> str:
        return yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False)


# === WRITING ===

@dataclass
class Artifact:
    """A rendered file waiting to be written."""
    path: Path
    content: str
    mode: int = 0o644


def write_artifact(artifact: Artifact):
    """Write through a temp file in the same directory, then rename into place."""
    path = artifact.path
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(artifact.content)
        os.chmod(tmp_name, artifact.mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    logger.info(f"Written: {path}")
