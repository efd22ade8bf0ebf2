"""
Complete removal of the analytics stack.

Handles:
- Stopping both compose projects
- Removing known containers, volumes and networks (plus prefix sweeps)
- Deleting generated configuration files
- Pruning dangling docker resources
- A verification pass that reports leftovers as warnings

Teardown is best-effort: a resource that is already gone counts as removed,
and a removal that fails is reported, never raised.
"""

import shutil
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .catalog import PROXY_PROFILE, ResourceInventory, build_inventory
from .config import StackConfig
from .console import StatusReporter
from .core import generated_files
from .exceptions import MissingDependencyError, OrchestratorError
from .orchestrator import (
    PRUNE_KINDS,
    CommandResult,
    DockerComposeOrchestrator,
    Orchestrator,
    check_dependencies,
)
from .prompts import Questioner

logger = logging.getLogger(__name__)

CONFIRMATION = "yes"


@dataclass
class TeardownReport:
    """What a teardown removed and what it found still present afterwards."""
    removed_containers: List[str] = field(default_factory=list)
    removed_volumes: List[str] = field(default_factory=list)
    removed_networks: List[str] = field(default_factory=list)
    removed_files: List[str] = field(default_factory=list)
    remaining_containers: List[str] = field(default_factory=list)
    remaining_volumes: List[str] = field(default_factory=list)
    remaining_networks: List[str] = field(default_factory=list)
    remaining_files: List[str] = field(default_factory=list)
    unverified: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (
            self.remaining_containers
            or self.remaining_volumes
            or self.remaining_networks
            or self.remaining_files
            or self.unverified
        )


class StackTeardown:
    """Removes every resource the deployer can create."""

    def __init__(self, config: StackConfig, orchestrator: Orchestrator,
                 reporter: Optional[StatusReporter] = None):
        self.config = config
        self.orchestrator = orchestrator
        self.reporter = reporter or StatusReporter()
        self.inventory: ResourceInventory = build_inventory(config)

    def _record_failure(self, report: TeardownReport, result: CommandResult):
        message = result.describe()
        report.failures.append(message)
        logger.warning(f"Ignoring failure: {message}")

    def _list(self, lister: Callable[[], List[str]], what: str,
              report: TeardownReport) -> Optional[List[str]]:
        try:
            return lister()
        except OrchestratorError as e:
            report.failures.append(str(e))
            self.reporter.warning(f"Could not list {what}: {e}")
            return None

    # === Steps ===

    def stop_stacks(self, report: TeardownReport):
        # The sub-stack joins the core network, so it goes first.
        if self.config.openreplay_manifest_path.exists():
            self.reporter.info("Stopping OpenReplay stack...")
            env_file = self.config.openreplay_env_path
            result = self.orchestrator.down(
                self.config.openreplay_project_name,
                manifest=self.config.openreplay_manifest_path,
                env_file=env_file if env_file.exists() else None,
            )
            if not result.success:
                self._record_failure(report, result)

        if self.config.manifest_path.exists():
            self.reporter.info("Stopping main analytics stack...")
            result = self.orchestrator.down(self.config.project_name, profiles=[PROXY_PROFILE])
            if not result.success:
                self._record_failure(report, result)

    def remove_containers(self, report: TeardownReport):
        self.reporter.info("Stopping and removing containers...")
        present = self._list(self.orchestrator.list_containers, "containers", report)
        if present is None:
            return
        for name in present:
            if not self.inventory.matches_container(name):
                continue
            self.reporter.info(f"Removing container: {name}")
            result = self.orchestrator.remove_container(name)
            if result.success:
                report.removed_containers.append(name)
            else:
                self._record_failure(report, result)

    def remove_volumes(self, report: TeardownReport):
        self.reporter.info("Removing Docker volumes...")
        present = self._list(self.orchestrator.list_volumes, "volumes", report)
        if present is None:
            return
        for name in present:
            if not self.inventory.matches_volume(name):
                continue
            self.reporter.info(f"Removing volume: {name}")
            result = self.orchestrator.remove_volume(name)
            if result.success:
                report.removed_volumes.append(name)
            else:
                self._record_failure(report, result)

    def remove_networks(self, report: TeardownReport):
        self.reporter.info("Removing Docker networks...")
        present = self._list(self.orchestrator.list_networks, "networks", report)
        if present is None:
            return
        for name in present:
            if not self.inventory.matches_network(name):
                continue
            self.reporter.info(f"Removing network: {name}")
            result = self.orchestrator.remove_network(name)
            if result.success:
                report.removed_networks.append(name)
            else:
                self._record_failure(report, result)

    def remove_files(self, report: TeardownReport):
        self.reporter.info("Removing generated configuration files...")
        for path in generated_files(self.config):
            if not path.exists():
                continue
            relative = str(path.relative_to(self.config.base_dir))
            self.reporter.info(f"Removing file: {relative}")
            try:
                path.unlink()
                report.removed_files.append(relative)
            except OSError as e:
                report.failures.append(f"{relative}: {e}")
                logger.warning(f"Could not remove {path}: {e}")

    def prune(self, report: TeardownReport):
        self.reporter.info("Cleaning up Docker system...")
        for kind in PRUNE_KINDS:
            label = "build cache" if kind == "builder" else f"unused {kind}s"
            self.reporter.info(f"Removing {label}...")
            result = self.orchestrator.prune(kind)
            if not result.success:
                self._record_failure(report, result)

    def verify(self, report: TeardownReport):
        self.reporter.info("Verifying cleanup...")

        checks = [
            ("containers", self.orchestrator.list_containers,
             self.inventory.matches_container, report.remaining_containers),
            ("volumes", self.orchestrator.list_volumes,
             self.inventory.matches_volume, report.remaining_volumes),
            ("networks", self.orchestrator.list_networks,
             self.inventory.matches_network, report.remaining_networks),
        ]
        for what, lister, matches, remaining in checks:
            present = self._list(lister, what, report)
            if present is None:
                report.unverified.append(what)
                continue
            remaining.extend(name for name in present if matches(name))
            if remaining:
                self.reporter.warning(f"Some {what} may still exist:")
                for name in remaining:
                    self.reporter.detail(f"- {name}")
            else:
                self.reporter.success(f"All analytics stack {what} removed.")

        for path in generated_files(self.config):
            if path.exists():
                report.remaining_files.append(str(path.relative_to(self.config.base_dir)))
        if report.remaining_files:
            self.reporter.warning("Some configuration files may still exist:")
            for name in report.remaining_files:
                self.reporter.detail(f"- {name}")
        else:
            self.reporter.success("All generated configuration files removed.")

    def run(self) -> TeardownReport:
        """Run every step in order and return the report."""
        report = TeardownReport()
        self.stop_stacks(report)
        self.remove_containers(report)
        self.remove_volumes(report)
        self.remove_networks(report)
        self.remove_files(report)
        self.prune(report)
        self.verify(report)
        return report


def run_cleanup(
    config: StackConfig,
    questioner: Questioner,
    reporter: StatusReporter,
    orchestrator: Optional[Orchestrator] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> int:
    """Interactive teardown. Returns the process exit code."""
    reporter.banner("Analytics Stack Cleanup")

    try:
        check_dependencies(config, which)
    except MissingDependencyError as e:
        reporter.error(f"{e} Nothing to clean up.")
        return 1

    reporter.warning("This will completely remove:")
    reporter.detail("- All analytics stack containers (running and stopped)")
    reporter.detail("- All analytics stack volumes (data will be lost!)")
    reporter.detail("- All analytics stack networks")
    reporter.detail("- All generated configuration and environment files")
    reporter.detail("- Unused Docker images, networks, volumes and build cache")
    reporter.blank()

    answer = questioner.ask("Are you sure you want to continue? (yes/no)")
    if answer.strip() != CONFIRMATION:
        reporter.info("Cleanup cancelled.")
        return 0

    reporter.info("Starting cleanup process...")
    teardown = StackTeardown(config, orchestrator or DockerComposeOrchestrator(config), reporter)
    report = teardown.run()

    reporter.blank()
    if report.clean:
        reporter.success("Cleanup completed!")
    else:
        reporter.warning("Cleanup finished with leftovers; see the warnings above.")
        if report.unverified:
            reporter.detail(f"- Could not verify removal of: {', '.join(report.unverified)}")
    if report.failures:
        logger.info(f"{len(report.failures)} teardown step(s) failed and were skipped")
    reporter.info("You can now run analytics-deploy to start fresh.")
    return 0
