"""
Core deployment functionality for the analytics stack.

Handles:
- Docker Compose manifest generation (core stack and OpenReplay sub-stack)
- Environment file creation with fresh secrets
- Caddyfile and compose override per access mode
- Provisioning files for Prometheus, Loki, Promtail and Grafana
- Bringing the stack up through the orchestrator
"""

import shutil
import time
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, Callable
import yaml

from .artifacts import (
    Artifact,
    ComposeOverride,
    EnvFile,
    PortMapping,
    ProxyConfig,
    ProxyRoute,
    write_artifact,
)
from .catalog import PROXY_PROFILE, ServiceConfig, core_services, openreplay_services
from .config import AccessMode, DeploymentSettings, StackConfig
from .console import StatusReporter
from .exceptions import DeployerError, MissingDependencyError
from .network import detect_host_address
from .orchestrator import DockerComposeOrchestrator, Orchestrator, check_dependencies
from .prompts import Questioner, collect_settings
from . import provisioning

logger = logging.getLogger(__name__)

SECRET_FILE_MODE = 0o600


@dataclass
class DeploymentResult:
    """Result of a deployment operation."""
    success: bool
    message: str
    files_written: List[Path] = field(default_factory=list)
    files_removed: List[Path] = field(default_factory=list)
    stacks_started: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


def provisioning_paths(config: StackConfig) -> Dict[str, Path]:
    base = config.base_dir
    return {
        "prometheus": base / "prometheus" / "prometheus.yml",
        "loki": base / "loki" / "loki-config.yml",
        "promtail": base / "promtail" / "promtail-config.yml",
        "datasources": base / "grafana" / "provisioning" / "datasources" / "datasources.yml",
        "dashboards": base / "grafana" / "provisioning" / "dashboards" / "dashboards.yml",
        "host_overview": base / "grafana" / "dashboards" / "host-overview.json",
    }


def generated_files(config: StackConfig) -> List[Path]:
    """Every file a deployment can produce, in teardown order."""
    return [
        config.env_path,
        config.openreplay_env_path,
        config.override_path,
        config.caddyfile_path,
        config.openreplay_manifest_path,
        config.manifest_path,
        *provisioning_paths(config).values(),
    ]


class AnalyticsStackDeployer:
    """
    Renders and deploys the analytics stack.

    All files for a run are rendered in memory first; nothing is written
    unless every one of them rendered cleanly.
    """

    def __init__(self, config: StackConfig, orchestrator: Orchestrator,
                 reporter: Optional[StatusReporter] = None):
        self.config = config
        self.orchestrator = orchestrator
        self.reporter = reporter or StatusReporter()

    # === Manifests ===

    def _build_service_definition(self, svc: ServiceConfig,
                                  services: Dict[str, ServiceConfig]) -> Dict[str, Any]:
        """Build a single service definition for docker-compose."""
        service_def: Dict[str, Any] = {
            "image": svc.full_image,
            "container_name": svc.name,
            "restart": svc.restart_policy,
        }

        if svc.command:
            service_def["command"] = svc.command

        if svc.ports:
            service_def["ports"] = svc.ports

        if svc.volumes:
            service_def["volumes"] = svc.volumes

        if svc.env_file:
            service_def["env_file"] = svc.env_file

        if svc.environment:
            service_def["environment"] = svc.environment

        if svc.depends_on:
            depends_on = {}
            for dep in svc.depends_on:
                dep_svc = services.get(dep)
                if dep_svc and dep_svc.healthcheck:
                    depends_on[dep] = {"condition": "service_healthy"}
                else:
                    depends_on[dep] = {"condition": "service_started"}
            service_def["depends_on"] = depends_on

        if svc.healthcheck:
            service_def["healthcheck"] = svc.healthcheck

        if svc.networks:
            service_def["networks"] = svc.networks

        if svc.profiles:
            service_def["profiles"] = svc.profiles

        return service_def

    def _compose_document(self, project: str, services: Dict[str, ServiceConfig]) -> Dict[str, Any]:
        compose: Dict[str, Any] = {"name": project, "services": {}, "volumes": {}}
        for name, svc in services.items():
            compose["services"][name] = self._build_service_definition(svc, services)
            for vol in svc.named_volumes:
                compose["volumes"][vol] = {}
        return compose

    def generate_docker_compose(self) -> str:
        """Generate the primary docker-compose.yml content."""
        compose = self._compose_document(self.config.project_name, core_services())
        return yaml.dump(compose, default_flow_style=False, sort_keys=False)

    def generate_openreplay_compose(self, settings: DeploymentSettings) -> str:
        """Generate the OpenReplay sub-stack manifest for this access mode."""
        web = self.config.exposed_service("openreplay")
        web_ports = []
        if settings.access_mode == AccessMode.TUNNEL:
            web_ports = [PortMapping(
                "openreplay-web", web.host_port, web.internal_port, settings.host_address
            ).render()]

        compose = self._compose_document(
            self.config.openreplay_project_name,
            openreplay_services(web_ports=web_ports, shared_network=settings.uses_proxy),
        )
        if settings.uses_proxy:
            compose["networks"] = {
                "analytics": {
                    "external": True,
                    "name": f"{self.config.project_name}_default",
                },
            }
        return yaml.dump(compose, default_flow_style=False, sort_keys=False)

    # === Environment files ===

    def generate_env_file(self, settings: DeploymentSettings) -> EnvFile:
        """Environment for the core stack."""
        secrets = settings.secrets
        grafana = self.config.exposed_service("grafana")
        uptime = self.config.exposed_service("uptime-kuma")

        env = EnvFile(title="Analytics Stack - Environment Configuration")
        env.section("GENERAL")
        env.set("TZ", self.config.timezone)

        env.section("GRAFANA")
        env.set("GF_SECURITY_ADMIN_USER", self.config.grafana_admin_user)
        env.set("GF_SECURITY_ADMIN_PASSWORD", secrets.grafana_admin_password)
        # Behind a tunnel the public hostname is unknown; Grafana falls back to its request host.
        if settings.access_mode != AccessMode.TUNNEL:
            env.set("GF_SERVER_ROOT_URL", settings.public_url(grafana))

        env.section("UMAMI")
        env.set("UMAMI_APP_SECRET", secrets.umami_app_secret)
        env.set("UMAMI_DB_USER", self.config.umami_db_user)
        env.set("UMAMI_DB_PASS", secrets.umami_db_password)

        env.section("POSTGRESQL (Umami database)")
        env.set("POSTGRES_DB", self.config.umami_db_name)
        env.set("POSTGRES_USER", self.config.umami_db_user)
        env.set("POSTGRES_PASSWORD", secrets.umami_db_password)

        env.section("UPTIME KUMA")
        env.set("UPTIME_KUMA_PORT", uptime.internal_port)

        env.section("LOKI")
        env.set("LOKI_RETENTION_PERIOD", self.config.loki_retention_period)
        return env

    def generate_openreplay_env_file(self, settings: DeploymentSettings) -> EnvFile:
        """Environment for the OpenReplay sub-stack."""
        secrets = settings.secrets
        web = self.config.exposed_service("openreplay")

        env = EnvFile(title="OpenReplay - Environment Configuration")
        env.section("GENERAL")
        env.set("TZ", self.config.timezone)
        env.set("OR_PUBLIC_URL", settings.public_url(web))

        env.section("POSTGRESQL")
        env.set("OR_PG_USER", self.config.openreplay_db_user)
        env.set("OR_PG_PASSWORD", secrets.openreplay_db_password)

        env.section("MINIO")
        env.set("OR_MINIO_ACCESS_KEY", secrets.openreplay_minio_access_key)
        env.set("OR_MINIO_SECRET_KEY", secrets.openreplay_minio_secret_key)

        env.section("API")
        env.set("OR_JWT_SECRET", secrets.openreplay_jwt_secret)
        return env

    # === Access ===

    def generate_proxy_config(self, settings: DeploymentSettings) -> Optional[ProxyConfig]:
        """Caddyfile model, or None in tunnel mode."""
        if not settings.uses_proxy:
            return None

        services = self.config.exposed_services(settings.enable_openreplay)

        if settings.access_mode == AccessMode.DOMAIN:
            routes = [
                ProxyRoute(settings.domains[svc.key], svc.upstream, svc.label)
                for svc in services
            ]
            return ProxyConfig(routes=routes, email=settings.acme_email, auto_https=True)

        routes = [
            ProxyRoute(settings.public_url(svc), svc.upstream, svc.label)
            for svc in services
        ]
        return ProxyConfig(routes=routes, auto_https=False)

    def generate_override(self, settings: DeploymentSettings) -> Optional[ComposeOverride]:
        """Port publishing for the core stack, or None in domain mode."""
        if not settings.uses_override:
            return None

        if settings.access_mode == AccessMode.IP:
            # Caddy listens on each service port and forwards by address.
            services = self.config.exposed_services(settings.enable_openreplay)
            mappings = [PortMapping("caddy", svc.host_port, svc.host_port) for svc in services]
        else:
            # The sub-stack publishes its own loopback port in its manifest.
            mappings = [
                PortMapping(svc.container, svc.host_port, svc.internal_port, settings.host_address)
                for svc in self.config.exposed_services()
            ]
        return ComposeOverride(mappings=mappings)

    def tunnel_routes(self, settings: DeploymentSettings) -> List[str]:
        """Routes the operator configures in the tunnel agent."""
        return [
            f"{svc.subdomain}.yourdomain.com -> {settings.public_url(svc)}"
            for svc in self.config.exposed_services(settings.enable_openreplay)
        ]

    # === Rendering ===

    def render_artifacts(self, settings: DeploymentSettings) -> List[Artifact]:
        """Render every file for this run. Raises ConfigurationError on bad values."""
        config = self.config
        artifacts = [
            Artifact(config.manifest_path, self.generate_docker_compose()),
            Artifact(config.env_path, self.generate_env_file(settings).render(), SECRET_FILE_MODE),
        ]

        proxy = self.generate_proxy_config(settings)
        if proxy is not None:
            artifacts.append(Artifact(config.caddyfile_path, proxy.render()))

        override = self.generate_override(settings)
        if override is not None:
            artifacts.append(Artifact(config.override_path, override.render()))

        if settings.enable_openreplay:
            artifacts.append(Artifact(
                config.openreplay_env_path,
                self.generate_openreplay_env_file(settings).render(),
                SECRET_FILE_MODE,
            ))
            artifacts.append(Artifact(
                config.openreplay_manifest_path, self.generate_openreplay_compose(settings)
            ))

        paths = provisioning_paths(config)
        artifacts.extend([
            Artifact(paths["prometheus"], provisioning.prometheus_config()),
            Artifact(paths["loki"], provisioning.loki_config(config.loki_retention_period)),
            Artifact(paths["promtail"], provisioning.promtail_config()),
            Artifact(paths["datasources"], provisioning.grafana_datasources()),
            Artifact(paths["dashboards"], provisioning.grafana_dashboard_provider()),
            Artifact(paths["host_overview"], provisioning.host_overview_dashboard()),
        ])
        return artifacts

    def write_all_configs(self, settings: DeploymentSettings) -> DeploymentResult:
        """Render, write, and drop generated files this run does not produce."""
        result = DeploymentResult(success=True, message="")
        artifacts = self.render_artifacts(settings)

        for artifact in artifacts:
            write_artifact(artifact)
            result.files_written.append(artifact.path)

        produced = {a.path for a in artifacts}
        for path in generated_files(self.config):
            if path not in produced and path.exists():
                path.unlink()
                logger.info(f"Removed stale file: {path}")
                result.files_removed.append(path)

        return result

    # === Lifecycle ===

    def deploy(
        self,
        settings: DeploymentSettings,
        progress_callback: Optional[Callable[[str], None]] = None,
    ) -> DeploymentResult:
        """
        Write every configuration file and start the stack.

        Args:
            settings: Answers for this run
            progress_callback: Optional callback for progress updates

        Returns:
            DeploymentResult with deployment status
        """
        start_time = time.time()

        def progress(msg: str):
            logger.info(msg)
            if progress_callback:
                progress_callback(msg)

        result = DeploymentResult(success=True, message="")
        try:
            if not settings.enable_openreplay and self.config.openreplay_manifest_path.exists():
                result.warnings.append(
                    "OpenReplay from an earlier deployment may still be running; "
                    "run analytics-cleanup to remove it."
                )

            progress("Generating configuration files...")
            written = self.write_all_configs(settings)
            result.files_written = written.files_written
            result.files_removed = written.files_removed

            profiles = [PROXY_PROFILE] if settings.uses_proxy else []
            progress("Starting the core analytics stack...")
            self.orchestrator.up(self.config.project_name, profiles=profiles)
            result.stacks_started.append(self.config.project_name)

            if settings.enable_openreplay:
                progress("Starting the OpenReplay stack...")
                self.orchestrator.up(
                    self.config.openreplay_project_name,
                    manifest=self.config.openreplay_manifest_path,
                    env_file=self.config.openreplay_env_path,
                )
                result.stacks_started.append(self.config.openreplay_project_name)

            result.message = f"Started {len(result.stacks_started)} stack(s)"

        except (DeployerError, OSError) as e:
            result.success = False
            result.message = str(e)
            logger.error(f"Deployment failed: {e}")

        result.duration_seconds = time.time() - start_time
        return result


def print_summary(config: StackConfig, settings: DeploymentSettings,
                  deployer: AnalyticsStackDeployer, reporter: StatusReporter):
    """Access details once the stack is up. Never prints secret values."""
    reporter.blank()
    reporter.success("Deployment complete! Your analytics stack is now running.")
    reporter.blank()

    reporter.info("Services:")
    for svc in config.exposed_services(settings.enable_openreplay):
        reporter.detail(f"{svc.label}: {settings.public_url(svc)}")

    if settings.access_mode == AccessMode.TUNNEL:
        reporter.blank()
        reporter.info("Services listen on loopback only. Configure your tunnel to route:")
        for route in deployer.tunnel_routes(settings):
            reporter.detail(route)
        if settings.enable_openreplay:
            reporter.info(f"Set OR_PUBLIC_URL in {config.openreplay_env_path.relative_to(config.base_dir)} "
                          "to the public tunnel address of OpenReplay.")
    elif settings.access_mode == AccessMode.DOMAIN:
        reporter.blank()
        reporter.info("Point the DNS records of these domains at this server; "
                      "certificates are issued on first request.")

    reporter.blank()
    reporter.info("Default Grafana credentials:")
    reporter.detail(f"Username: {config.grafana_admin_user}")
    reporter.detail(f"Password: (check your {config.env_path.name} file)")
    reporter.blank()
    reporter.info("To remove everything again, run: analytics-cleanup")


def run_deploy(
    config: StackConfig,
    questioner: Questioner,
    reporter: StatusReporter,
    orchestrator: Optional[Orchestrator] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
    detect: Callable[[StackConfig], str] = detect_host_address,
) -> int:
    """Interactive deployment. Returns the process exit code."""
    reporter.banner("Analytics Stack Deployment")

    reporter.info("Checking for dependencies...")
    try:
        check_dependencies(config, which)
    except MissingDependencyError as e:
        reporter.error(str(e))
        return 1
    reporter.success("All dependencies are satisfied.")

    for issue in config.validate():
        reporter.warning(issue)

    settings = collect_settings(config, questioner, reporter, detect)

    deployer = AnalyticsStackDeployer(
        config, orchestrator or DockerComposeOrchestrator(config), reporter
    )
    result = deployer.deploy(settings, progress_callback=reporter.info)
    if not result.success:
        reporter.error(f"Deployment failed: {result.message}")
        return 1

    for path in result.files_removed:
        reporter.info(f"Removed stale file: {path.relative_to(config.base_dir)}")
    for warning in result.warnings:
        reporter.warning(warning)

    print_summary(config, settings, deployer, reporter)
    return 0
