"""
Interactive questions and the settings they produce.

Handles:
- Access mode menu (with fallback to direct-address mode)
- Optional OpenReplay sub-stack
- Hostnames and ACME contact email for domain mode
- Host address detection for direct-address mode
"""

import re
import logging
from typing import Callable, Dict, Optional

from rich.console import Console
from rich.prompt import Prompt, Confirm

from .config import (
    StackConfig,
    AccessMode,
    DeploymentSettings,
    SecretBundle,
    parse_access_mode,
)
from .console import StatusReporter
from .network import detect_host_address

logger = logging.getLogger(__name__)

LOOPBACK_ADDRESS = "127.0.0.1"

_HOSTNAME = re.compile(
    r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
)
_EMAIL = re.compile(r"^[^@\s{}#\"']+@[^@\s{}#\"']+\.[^@\s{}#\"']+$")


class Questioner:
    """Reads answers from the terminal through rich prompts."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def ask(self, prompt: str, default: Optional[str] = None) -> str:
        kwargs = {"console": self.console}
        if default is not None:
            kwargs["default"] = default
        return Prompt.ask(prompt, **kwargs) or ""

    def confirm(self, prompt: str, default: bool = False) -> bool:
        return Confirm.ask(prompt, default=default, console=self.console)


def is_valid_hostname(value: str) -> bool:
    return bool(_HOSTNAME.match(value))


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL.match(value))


def ask_access_mode(questioner: Questioner, reporter: StatusReporter) -> AccessMode:
    reporter.info("How will the stack be reached?")
    reporter.detail("1) Domain names with automatic HTTPS (Caddy + Let's Encrypt)")
    reporter.detail("2) Direct IP address and ports (no certificates)")
    reporter.detail("3) Tunnel (e.g. Cloudflare Tunnel) to loopback ports")
    answer = questioner.ask("Select access method [1-3]", default="2")
    mode, recognised = parse_access_mode(answer)
    if not recognised:
        reporter.warning(f"Invalid selection {answer!r}, defaulting to direct IP access.")
    return mode


def ask_domains(config: StackConfig, questioner: Questioner, reporter: StatusReporter,
                include_openreplay: bool) -> Dict[str, str]:
    """One unique, valid hostname per exposed service."""
    domains: Dict[str, str] = {}
    for svc in config.exposed_services(include_openreplay):
        while True:
            answer = questioner.ask(
                f"Domain for {svc.label} (e.g. {svc.subdomain}.example.com)"
            ).strip().lower().rstrip(".")
            if not is_valid_hostname(answer):
                reporter.warning(f"{answer!r} is not a valid domain name.")
                continue
            if answer in domains.values():
                reporter.warning(f"{answer} is already used by another service.")
                continue
            domains[svc.key] = answer
            break
    return domains


def ask_email(questioner: Questioner, reporter: StatusReporter) -> Optional[str]:
    while True:
        answer = questioner.ask(
            "Email for certificate notifications (leave empty to skip)", default=""
        ).strip()
        if not answer:
            return None
        if is_valid_email(answer):
            return answer
        reporter.warning(f"{answer!r} is not a valid email address.")


def collect_settings(
    config: StackConfig,
    questioner: Questioner,
    reporter: StatusReporter,
    detect: Callable[[StackConfig], str] = detect_host_address,
) -> DeploymentSettings:
    """Ask every question for a run and build its settings."""
    mode = ask_access_mode(questioner, reporter)

    enable_openreplay = questioner.confirm(
        "Deploy OpenReplay session replay as well? (heavy: Kafka, ClickHouse, MinIO)",
        default=False,
    )

    domains: Dict[str, str] = {}
    email = None
    host_address = LOOPBACK_ADDRESS

    if mode == AccessMode.DOMAIN:
        reporter.info("Configuring for domain access with SSL...")
        domains = ask_domains(config, questioner, reporter, enable_openreplay)
        email = ask_email(questioner, reporter)
    elif mode == AccessMode.IP:
        reporter.info("Configuring for direct IP access...")
        reporter.info("Detecting server IP address...")
        host_address = detect(config)
        if host_address == "localhost":
            reporter.warning("Could not detect an IP address, using localhost.")
        else:
            reporter.info(f"Detected IP: {host_address}")
    else:
        reporter.info("Configuring for tunnel access (loopback ports only)...")

    logger.info(f"Access mode: {mode.value}, OpenReplay: {enable_openreplay}")

    return DeploymentSettings(
        access_mode=mode,
        secrets=SecretBundle.generate(include_openreplay=enable_openreplay),
        enable_openreplay=enable_openreplay,
        host_address=host_address,
        domains=domains,
        acme_email=email,
    )
