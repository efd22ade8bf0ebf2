"""
Host address detection for direct-address mode.

Order: public IP discovery endpoints, then the host's own network
configuration, then the literal ``localhost``. Detection never raises.
"""

import ipaddress
import subprocess
import logging
from typing import List, Optional

import requests

from .config import StackConfig

logger = logging.getLogger(__name__)

FALLBACK_ADDRESS = "localhost"


def _valid_ip(value: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def detect_public_ip(urls: List[str], timeout: float = 5.0) -> Optional[str]:
    """Ask each discovery endpoint in turn; first plausible answer wins."""
    for url in urls:
        try:
            response = requests.get(url, timeout=timeout)
        except requests.RequestException as e:
            logger.debug(f"IP discovery via {url} failed: {e}")
            continue
        if response.status_code != 200:
            logger.debug(f"IP discovery via {url} returned HTTP {response.status_code}")
            continue
        ip = _valid_ip(response.text)
        if ip:
            return ip
        logger.debug(f"IP discovery via {url} returned an unexpected body")
    return None


def _run_quiet(cmd: List[str]) -> str:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=5)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"{cmd[0]} unavailable: {e}")
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout or ""


def detect_local_ip() -> Optional[str]:
    """First address from ``hostname -I``, then the source of ``ip route get 1``."""
    for token in _run_quiet(["hostname", "-I"]).split():
        ip = _valid_ip(token)
        if ip:
            return ip

    tokens = _run_quiet(["ip", "route", "get", "1"]).split()
    if "src" in tokens:
        index = tokens.index("src")
        if index + 1 < len(tokens):
            return _valid_ip(tokens[index + 1])
    return None


def detect_host_address(config: StackConfig) -> str:
    """Best reachable address for this host; ``localhost`` when all probes fail."""
    ip = detect_public_ip(config.ip_detect_urls, timeout=config.ip_detect_timeout)
    if ip:
        logger.info(f"Detected public IP: {ip}")
        return ip

    ip = detect_local_ip()
    if ip:
        logger.info(f"Detected local IP: {ip}")
        return ip

    logger.warning("Could not detect host address, falling back to localhost")
    return FALLBACK_ADDRESS
