"""
Exceptions raised by the Analytics Stack Deployer.
"""

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .orchestrator import CommandResult


class DeployerError(Exception):
    """Base class for all deployer errors."""


class MissingDependencyError(DeployerError):
    """A required executable (docker, docker-compose) is not on PATH."""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        names = ", ".join(self.missing)
        super().__init__(
            f"Required executable(s) not found: {names}. "
            f"Please install them and run this command again."
        )


class ConfigurationError(DeployerError):
    """Invalid configuration file or a value that cannot be rendered safely."""


class OrchestratorError(DeployerError):
    """An orchestrator command exited with a non-zero status."""

    def __init__(self, message: str, result: Optional["CommandResult"] = None):
        super().__init__(message)
        self.result = result
