"""
Orchestrator client for the analytics stack.

Handles:
- Pre-flight dependency checks (docker, docker-compose)
- Compose lifecycle verbs (up, down)
- Container / volume / network listing and removal
- Docker system pruning

Every call returns a CommandResult instead of raising on a non-zero exit,
except where the caller cannot continue (bring-up, listing).
"""

import shutil
import subprocess
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Callable, Optional, List, Sequence

from .config import StackConfig
from .exceptions import MissingDependencyError, OrchestratorError

logger = logging.getLogger(__name__)

PRUNE_KINDS = ("image", "network", "volume", "builder")


@dataclass
class CommandResult:
    """Outcome of one orchestrator command."""
    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def lines(self) -> List[str]:
        return [line.strip() for line in self.stdout.splitlines() if line.strip()]

    def describe(self) -> str:
        detail = self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"
        return f"{' '.join(self.command)}: {detail}"


def check_dependencies(
    config: StackConfig,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> None:
    """Raise MissingDependencyError unless every required executable is on PATH."""
    missing = [name for name in config.required_executables if which(name) is None]
    if missing:
        raise MissingDependencyError(missing)


class Orchestrator:
    """
    Interface to the container orchestrator.

    The deployer and teardown only talk to this interface; tests substitute a
    fake implementation.
    """

    def up(self, project: str, manifest: Optional[Path] = None,
           env_file: Optional[Path] = None, profiles: Sequence[str] = ()) -> CommandResult:
        """Bring a compose project up detached. Raises OrchestratorError on failure."""
        raise NotImplementedError

    def down(self, project: str, manifest: Optional[Path] = None,
             env_file: Optional[Path] = None, profiles: Sequence[str] = ()) -> CommandResult:
        """Tear a compose project down, removing orphans."""
        raise NotImplementedError

    def list_containers(self) -> List[str]:
        raise NotImplementedError

    def list_volumes(self) -> List[str]:
        raise NotImplementedError

    def list_networks(self) -> List[str]:
        raise NotImplementedError

    def remove_container(self, name: str) -> CommandResult:
        raise NotImplementedError

    def remove_volume(self, name: str) -> CommandResult:
        raise NotImplementedError

    def remove_network(self, name: str) -> CommandResult:
        raise NotImplementedError

    def prune(self, kind: str) -> CommandResult:
        raise NotImplementedError


class DockerComposeOrchestrator(Orchestrator):
    """Orchestrator backed by the docker and docker-compose executables."""

    def __init__(self, config: StackConfig):
        self.config = config

    def _run(self, cmd: List[str]) -> CommandResult:
        """Run a command in the stack directory and capture its output."""
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.config.base_dir,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            return CommandResult(command=cmd, returncode=127, stderr=str(e))

        result = CommandResult(
            command=cmd,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
        if not result.success:
            logger.debug(f"Command failed: {result.describe()}")
        return result

    def _compose(self, project: str, manifest: Optional[Path], env_file: Optional[Path],
                 profiles: Sequence[str], *args: str) -> List[str]:
        cmd = list(self.config.compose_command)
        cmd.extend(["-p", project])
        # Without -f, compose picks up docker-compose.yml plus the override.
        if manifest is not None:
            cmd.extend(["-f", str(manifest)])
        if env_file is not None:
            cmd.extend(["--env-file", str(env_file)])
        for profile in profiles:
            cmd.extend(["--profile", profile])
        cmd.extend(args)
        return cmd

    def up(self, project, manifest=None, env_file=None, profiles=()):
        result = self._run(self._compose(project, manifest, env_file, profiles, "up", "-d"))
        if not result.success:
            raise OrchestratorError(f"Failed to start {project}: {result.describe()}", result)
        return result

    def down(self, project, manifest=None, env_file=None, profiles=()):
        return self._run(self._compose(
            project, manifest, env_file, profiles, "down", "--remove-orphans"
        ))

    def _list(self, cmd: List[str]) -> List[str]:
        result = self._run(cmd)
        if not result.success:
            raise OrchestratorError(f"Failed to list resources: {result.describe()}", result)
        return result.lines

    def list_containers(self):
        return self._list(["docker", "ps", "-a", "--format", "{{.Names}}"])

    def list_volumes(self):
        return self._list(["docker", "volume", "ls", "--format", "{{.Name}}"])

    def list_networks(self):
        return self._list(["docker", "network", "ls", "--format", "{{.Name}}"])

    def remove_container(self, name):
        return self._run(["docker", "rm", "-f", name])

    def remove_volume(self, name):
        return self._run(["docker", "volume", "rm", name])

    def remove_network(self, name):
        return self._run(["docker", "network", "rm", name])

    def prune(self, kind):
        if kind not in PRUNE_KINDS:
            raise ValueError(f"Unknown prune target: {kind}")
        return self._run(["docker", kind, "prune", "-f"])
