import io
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

import pytest
from rich.console import Console

from analytics_deployer.catalog import core_services, openreplay_services
from analytics_deployer.config import StackConfig
from analytics_deployer.console import StatusReporter
from analytics_deployer.exceptions import OrchestratorError
from analytics_deployer.orchestrator import CommandResult, Orchestrator
from analytics_deployer.prompts import Questioner


class FakeOrchestrator(Orchestrator):
    """In-memory docker host. Records every call."""

    def __init__(self, config: StackConfig):
        self.config = config
        self.calls: List[tuple] = []
        self.containers: Set[str] = set()
        self.volumes: Set[str] = set()
        self.networks: Set[str] = {"bridge", "host", "none"}
        self.fail_up: Optional[str] = None
        self.fail_list: Set[str] = set()
        self.stuck_containers: Set[str] = set()

    def _services(self, project, profiles):
        if project == self.config.openreplay_project_name:
            return openreplay_services()
        return {
            name: svc for name, svc in core_services().items()
            if not svc.profiles or set(svc.profiles) & set(profiles)
        }

    def up(self, project, manifest=None, env_file=None, profiles=()):
        self.calls.append(("up", project, manifest, env_file, list(profiles)))
        if self.fail_up == project:
            result = CommandResult(["docker-compose", "up"], 1, stderr="pull access denied")
            raise OrchestratorError(f"Failed to start {project}: {result.describe()}", result)
        for svc in self._services(project, profiles).values():
            self.containers.add(svc.name)
            for vol in svc.named_volumes:
                self.volumes.add(f"{project}_{vol}")
        self.networks.add(f"{project}_default")
        return CommandResult(["docker-compose", "up"], 0)

    def down(self, project, manifest=None, env_file=None, profiles=()):
        self.calls.append(("down", project, manifest, env_file, list(profiles)))
        for svc in self._services(project, profiles).values():
            if svc.name not in self.stuck_containers:
                self.containers.discard(svc.name)
        self.networks.discard(f"{project}_default")
        return CommandResult(["docker-compose", "down"], 0)

    def _listing(self, kind: str, items: Set[str]) -> List[str]:
        self.calls.append(("list", kind))
        if kind in self.fail_list:
            raise OrchestratorError(f"Failed to list resources: docker {kind} ls")
        return sorted(items)

    def list_containers(self):
        return self._listing("containers", self.containers)

    def list_volumes(self):
        return self._listing("volumes", self.volumes)

    def list_networks(self):
        return self._listing("networks", self.networks)

    def _remove(self, kind: str, items: Set[str], name: str) -> CommandResult:
        self.calls.append(("rm", kind, name))
        if name in self.stuck_containers:
            return CommandResult(["docker", "rm", "-f", name], 1, stderr="device or resource busy")
        if name not in items:
            return CommandResult(["docker", kind, "rm", name], 1, stderr="No such object")
        items.discard(name)
        return CommandResult(["docker", kind, "rm", name], 0)

    def remove_container(self, name):
        return self._remove("container", self.containers, name)

    def remove_volume(self, name):
        return self._remove("volume", self.volumes, name)

    def remove_network(self, name):
        return self._remove("network", self.networks, name)

    def prune(self, kind):
        self.calls.append(("prune", kind))
        return CommandResult(["docker", kind, "prune", "-f"], 0)

    def calls_named(self, verb: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == verb]


class ScriptedQuestioner(Questioner):
    """Answers prompts from queues; an unexpected prompt fails the test."""

    def __init__(self, answers: Sequence[str] = (), confirms: Sequence[bool] = ()):
        self.answers = list(answers)
        self.confirms = list(confirms)
        self.prompts: List[str] = []

    def ask(self, prompt, default=None):
        self.prompts.append(prompt)
        if not self.answers:
            raise AssertionError(f"Unexpected prompt: {prompt}")
        return self.answers.pop(0)

    def confirm(self, prompt, default=False):
        self.prompts.append(prompt)
        if not self.confirms:
            raise AssertionError(f"Unexpected confirmation: {prompt}")
        return self.confirms.pop(0)


def parse_env(path: Path) -> Dict[str, str]:
    values = {}
    for line in path.read_text().splitlines():
        if not line or line.startswith("#"):
            continue
        key, _, value = line.partition("=")
        if value.startswith("'") and value.endswith("'"):
            value = value[1:-1]
        values[key] = value
    return values


@pytest.fixture
def config(tmp_path):
    return StackConfig(base_dir=tmp_path)


@pytest.fixture
def orchestrator(config):
    return FakeOrchestrator(config)


@pytest.fixture
def reporter():
    return StatusReporter(Console(file=io.StringIO(), width=200, highlight=False))


@pytest.fixture
def always_found():
    return lambda name: f"/usr/bin/{name}"


def console_output(reporter: StatusReporter) -> str:
    return reporter.console.file.getvalue()
