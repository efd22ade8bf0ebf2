import logging
import os
import stat

import pytest
import yaml

from analytics_deployer.config import AccessMode, DeploymentSettings, SecretBundle
from analytics_deployer.console import Severity
from analytics_deployer.core import AnalyticsStackDeployer, generated_files, run_deploy

from conftest import ScriptedQuestioner, console_output, parse_env

PUBLIC_IP = "203.0.113.45"


def make_settings(mode, openreplay=False, **kwargs):
    if mode == AccessMode.TUNNEL:
        kwargs.setdefault("host_address", "127.0.0.1")
    elif mode == AccessMode.IP:
        kwargs.setdefault("host_address", PUBLIC_IP)
    return DeploymentSettings(
        access_mode=mode,
        secrets=SecretBundle.generate(include_openreplay=openreplay),
        enable_openreplay=openreplay,
        **kwargs,
    )


DOMAINS = {
    "grafana": "grafana.example.com",
    "umami": "umami.example.com",
    "uptime-kuma": "uptime.example.com",
}


@pytest.fixture
def deployer(config, orchestrator, reporter):
    return AnalyticsStackDeployer(config, orchestrator, reporter)


def load_yaml(path):
    return yaml.safe_load(path.read_text())


class TestManifest:

    def test_core_services(self, deployer):
        compose = yaml.safe_load(deployer.generate_docker_compose())
        assert compose["name"] == "analytics-stack"
        assert set(compose["services"]) == {
            "pg-umami", "umami", "loki", "promtail", "prometheus",
            "node-exporter", "cadvisor", "grafana", "uptime-kuma", "caddy",
        }
        assert {"pgdata", "grafana-data", "kuma-data", "caddy-data"} <= set(compose["volumes"])

    def test_caddy_only_runs_with_proxy_profile(self, deployer):
        caddy = yaml.safe_load(deployer.generate_docker_compose())["services"]["caddy"]
        assert caddy["profiles"] == ["proxy"]
        assert caddy["ports"] == ["80:80", "443:443"]

    def test_umami_waits_for_healthy_database(self, deployer):
        umami = yaml.safe_load(deployer.generate_docker_compose())["services"]["umami"]
        assert umami["depends_on"] == {"pg-umami": {"condition": "service_healthy"}}
        assert "pg-umami:5432" in umami["environment"]["DATABASE_URL"]

    def test_no_app_ports_in_base_manifest(self, deployer):
        services = yaml.safe_load(deployer.generate_docker_compose())["services"]
        for name in ("grafana", "umami", "uptime-kuma"):
            assert "ports" not in services[name]


class TestAccessModes:

    def test_ip_mode(self, deployer, config):
        deployer.write_all_configs(make_settings(AccessMode.IP))

        override = load_yaml(config.override_path)
        assert override == {
            "services": {"caddy": {"ports": ["3000:3000", "8081:8081", "3001:3001"]}}
        }

        caddyfile = config.caddyfile_path.read_text()
        assert "auto_https off" in caddyfile
        assert f"http://{PUBLIC_IP}:3000 {{\n    reverse_proxy grafana:3000" in caddyfile
        assert f"http://{PUBLIC_IP}:8081 {{\n    reverse_proxy umami:3000" in caddyfile
        assert f"http://{PUBLIC_IP}:3001 {{\n    reverse_proxy uptime-kuma:3001" in caddyfile

    def test_tunnel_mode(self, deployer, config):
        deployer.write_all_configs(make_settings(AccessMode.TUNNEL))

        assert not config.caddyfile_path.exists()
        override = load_yaml(config.override_path)
        assert override == {
            "services": {
                "grafana": {"ports": ["127.0.0.1:3000:3000"]},
                "umami": {"ports": ["127.0.0.1:8081:3000"]},
                "uptime-kuma": {"ports": ["127.0.0.1:3001:3001"]},
            }
        }

    def test_domain_mode(self, deployer, config):
        settings = make_settings(AccessMode.DOMAIN, domains=DOMAINS, acme_email="ops@example.com")
        deployer.write_all_configs(settings)

        assert not config.override_path.exists()
        caddyfile = config.caddyfile_path.read_text()
        assert "email ops@example.com" in caddyfile
        assert "auto_https off" not in caddyfile
        for domain in DOMAINS.values():
            assert f"\n{domain} {{\n" in caddyfile

    def test_domain_mode_without_email(self, deployer, config):
        deployer.write_all_configs(make_settings(AccessMode.DOMAIN, domains=DOMAINS))
        assert "email" not in config.caddyfile_path.read_text()

    def test_switching_modes_removes_stale_files(self, deployer, config):
        deployer.write_all_configs(make_settings(AccessMode.IP))
        assert config.caddyfile_path.exists()

        result = deployer.write_all_configs(make_settings(AccessMode.TUNNEL))
        assert not config.caddyfile_path.exists()
        assert config.caddyfile_path in result.files_removed

        result = deployer.write_all_configs(
            make_settings(AccessMode.DOMAIN, domains=DOMAINS)
        )
        assert not config.override_path.exists()
        assert config.override_path in result.files_removed

    def test_tunnel_routes(self, deployer):
        routes = deployer.tunnel_routes(make_settings(AccessMode.TUNNEL))
        assert routes[0] == "grafana.yourdomain.com -> http://localhost:3000"


class TestEnvironment:

    def test_env_file_contents_and_mode(self, deployer, config):
        settings = make_settings(AccessMode.IP)
        deployer.write_all_configs(settings)

        env = parse_env(config.env_path)
        secrets = settings.secrets
        assert env["GF_SECURITY_ADMIN_USER"] == "admin"
        assert env["GF_SECURITY_ADMIN_PASSWORD"] == secrets.grafana_admin_password
        assert env["UMAMI_APP_SECRET"] == secrets.umami_app_secret
        assert env["UMAMI_DB_PASS"] == env["POSTGRES_PASSWORD"] == secrets.umami_db_password
        assert env["GF_SERVER_ROOT_URL"] == f"http://{PUBLIC_IP}:3000"
        assert env["TZ"] == "America/Los_Angeles"
        assert env["LOKI_RETENTION_PERIOD"] == "168h"

    def test_tunnel_mode_leaves_root_url_unset(self, deployer, config):
        deployer.write_all_configs(make_settings(AccessMode.TUNNEL))
        env = parse_env(config.env_path)
        assert "GF_SERVER_ROOT_URL" not in env
        assert "GF_SECURITY_ADMIN_PASSWORD" in env
        assert stat.S_IMODE(os.stat(config.env_path).st_mode) == 0o600

    def test_timezone_with_newline_writes_nothing(self, deployer, config):
        config.timezone = "UTC\nGF_SECURITY_ADMIN_PASSWORD=admin"
        result = deployer.deploy(make_settings(AccessMode.IP))
        assert not result.success
        assert not config.env_path.exists()
        assert not config.manifest_path.exists()
        assert deployer.orchestrator.calls == []


class TestOpenReplay:

    def test_declined_sub_stack_writes_nothing_for_it(self, deployer, config):
        result = deployer.deploy(make_settings(AccessMode.IP))
        assert result.success
        assert not config.openreplay_manifest_path.exists()
        assert not config.openreplay_env_path.exists()

    def test_redeploy_without_sub_stack_warns(self, deployer, config):
        first = deployer.deploy(make_settings(AccessMode.IP, openreplay=True))
        assert first.warnings == []

        second = deployer.deploy(make_settings(AccessMode.IP))
        assert second.success
        assert any("analytics-cleanup" in w for w in second.warnings)
        assert not config.openreplay_manifest_path.exists()
        assert len(deployer.orchestrator.calls_named("up")) == 1

    def test_proxy_mode_joins_core_network(self, deployer, config):
        deployer.write_all_configs(make_settings(AccessMode.IP, openreplay=True))

        compose = load_yaml(config.openreplay_manifest_path)
        assert compose["name"] == "openreplay"
        assert compose["networks"]["analytics"] == {
            "external": True, "name": "analytics-stack_default",
        }
        web = compose["services"]["openreplay-web"]
        assert web["networks"] == ["default", "analytics"]
        assert "ports" not in web

        override = load_yaml(config.override_path)
        assert "8082:8082" in override["services"]["caddy"]["ports"]
        assert "reverse_proxy openreplay-web:8080" in config.caddyfile_path.read_text()

    def test_tunnel_mode_publishes_loopback_port(self, deployer, config):
        deployer.write_all_configs(make_settings(AccessMode.TUNNEL, openreplay=True))

        compose = load_yaml(config.openreplay_manifest_path)
        assert "networks" not in compose
        assert compose["services"]["openreplay-web"]["ports"] == ["127.0.0.1:8082:8080"]
        assert "openreplay-web" not in load_yaml(config.override_path)["services"]

    def test_sub_stack_env_file(self, deployer, config):
        settings = make_settings(AccessMode.IP, openreplay=True)
        deployer.write_all_configs(settings)

        env = parse_env(config.openreplay_env_path)
        assert env["OR_PG_PASSWORD"] == settings.secrets.openreplay_db_password
        assert env["OR_JWT_SECRET"] == settings.secrets.openreplay_jwt_secret
        assert env["OR_PUBLIC_URL"] == f"http://{PUBLIC_IP}:8082"
        assert stat.S_IMODE(os.stat(config.openreplay_env_path).st_mode) == 0o600

    def test_both_stacks_started(self, deployer, config):
        result = deployer.deploy(make_settings(AccessMode.IP, openreplay=True))
        assert result.success
        assert result.stacks_started == ["analytics-stack", "openreplay"]
        ups = deployer.orchestrator.calls_named("up")
        assert ups[0] == ("up", "analytics-stack", None, None, ["proxy"])
        assert ups[1] == (
            "up", "openreplay", config.openreplay_manifest_path, config.openreplay_env_path, [],
        )

    def test_disabling_sub_stack_removes_its_files(self, deployer, config):
        deployer.write_all_configs(make_settings(AccessMode.IP, openreplay=True))
        deployer.write_all_configs(make_settings(AccessMode.IP))
        assert not config.openreplay_manifest_path.exists()
        assert not config.openreplay_env_path.exists()


class TestDeploy:

    def test_tunnel_mode_skips_proxy_profile(self, deployer):
        deployer.deploy(make_settings(AccessMode.TUNNEL))
        assert deployer.orchestrator.calls_named("up") == [
            ("up", "analytics-stack", None, None, []),
        ]

    def test_failed_bring_up_is_reported(self, deployer, orchestrator):
        orchestrator.fail_up = "analytics-stack"
        result = deployer.deploy(make_settings(AccessMode.IP))
        assert not result.success
        assert "pull access denied" in result.message
        assert result.stacks_started == []

    def test_provisioning_files_written(self, deployer, config):
        result = deployer.deploy(make_settings(AccessMode.IP))
        datasources = load_yaml(config.base_dir / "grafana" / "provisioning" / "datasources" / "datasources.yml")
        assert [d["name"] for d in datasources["datasources"]] == ["Prometheus", "Loki"]
        loki = load_yaml(config.base_dir / "loki" / "loki-config.yml")
        assert loki["limits_config"]["retention_period"] == "168h"
        assert config.base_dir / "prometheus" / "prometheus.yml" in result.files_written


class TestRunDeploy:

    def test_missing_dependency_touches_nothing(self, config, orchestrator, reporter):
        questioner = ScriptedQuestioner()
        code = run_deploy(config, questioner, reporter, orchestrator, which=lambda name: None)
        assert code == 1
        assert list(config.base_dir.iterdir()) == []
        assert orchestrator.calls == []
        assert questioner.prompts == []
        assert "docker-compose" in reporter.by_severity(Severity.ERROR)[0]

    def test_ip_deploy_end_to_end(self, config, orchestrator, reporter, always_found):
        questioner = ScriptedQuestioner(answers=["2"], confirms=[False])
        code = run_deploy(config, questioner, reporter, orchestrator,
                          which=always_found, detect=lambda c: PUBLIC_IP)
        assert code == 0
        assert len(orchestrator.calls_named("up")) == 1
        assert not config.openreplay_dir.exists()
        assert f"Umami: http://{PUBLIC_IP}:8081" in console_output(reporter)

    def test_invalid_choice_falls_back_to_ip(self, config, orchestrator, reporter, always_found):
        questioner = ScriptedQuestioner(answers=["9"], confirms=[False])
        code = run_deploy(config, questioner, reporter, orchestrator,
                          which=always_found, detect=lambda c: PUBLIC_IP)
        assert code == 0
        warnings = reporter.by_severity(Severity.WARNING)
        assert any("defaulting to direct IP access" in w for w in warnings)
        assert "caddy" in load_yaml(config.override_path)["services"]

    def test_undetectable_address_warns(self, config, orchestrator, reporter, always_found):
        questioner = ScriptedQuestioner(answers=["2"], confirms=[False])
        run_deploy(config, questioner, reporter, orchestrator,
                   which=always_found, detect=lambda c: "localhost")
        warnings = reporter.by_severity(Severity.WARNING)
        assert any("using localhost" in w for w in warnings)
        assert "http://localhost:3000 {" in config.caddyfile_path.read_text()

    def test_domain_deploy_reasks_bad_and_duplicate_domains(
            self, config, orchestrator, reporter, always_found):
        questioner = ScriptedQuestioner(
            answers=[
                "1",
                "not a domain",
                "Grafana.Example.com.",
                "grafana.example.com",
                "umami.example.com",
                "uptime.example.com",
                "not-an-email",
                "ops@example.com",
            ],
            confirms=[False],
        )
        code = run_deploy(config, questioner, reporter, orchestrator, which=always_found)
        assert code == 0
        assert questioner.answers == []
        caddyfile = config.caddyfile_path.read_text()
        assert "grafana.example.com {" in caddyfile
        assert "email ops@example.com" in caddyfile
        assert not config.override_path.exists()

    def test_every_run_generates_fresh_secrets(self, config, orchestrator, reporter, always_found):
        seen = []
        for _ in range(2):
            questioner = ScriptedQuestioner(answers=["3"], confirms=[False])
            run_deploy(config, questioner, reporter, orchestrator, which=always_found)
            env = parse_env(config.env_path)
            seen.append({env[k] for k in ("GF_SECURITY_ADMIN_PASSWORD", "UMAMI_APP_SECRET", "UMAMI_DB_PASS")})
        assert not seen[0] & seen[1]

    def test_secrets_never_reach_output_or_logs(
            self, config, orchestrator, reporter, always_found, caplog):
        caplog.set_level(logging.DEBUG)
        questioner = ScriptedQuestioner(answers=["2"], confirms=[True])
        run_deploy(config, questioner, reporter, orchestrator,
                   which=always_found, detect=lambda c: PUBLIC_IP)

        secrets = set(parse_env(config.env_path).values()) | set(
            parse_env(config.openreplay_env_path).values()
        )
        secret_values = {
            v for v in secrets if len(v) == 32 and all(c in "0123456789abcdef" for c in v)
        }
        assert len(secret_values) == 7

        output = console_output(reporter) + caplog.text
        for value in secret_values:
            assert value not in output

    def test_all_generated_files_are_known_to_teardown(
            self, config, orchestrator, reporter, always_found):
        questioner = ScriptedQuestioner(answers=["2"], confirms=[True])
        run_deploy(config, questioner, reporter, orchestrator,
                   which=always_found, detect=lambda c: PUBLIC_IP)
        on_disk = {p for p in config.base_dir.rglob("*") if p.is_file()}
        assert on_disk == {p for p in generated_files(config) if p.exists()}

    def test_leftover_sub_stack_warning_is_printed(
            self, config, orchestrator, reporter, always_found):
        for openreplay in (True, False):
            questioner = ScriptedQuestioner(answers=["2"], confirms=[openreplay])
            code = run_deploy(config, questioner, reporter, orchestrator,
                              which=always_found, detect=lambda c: PUBLIC_IP)
            assert code == 0
        warnings = reporter.by_severity(Severity.WARNING)
        assert any(w.startswith("OpenReplay from an earlier deployment") for w in warnings)

    def test_tunnel_summary_points_at_openreplay_url(
            self, config, orchestrator, reporter, always_found):
        questioner = ScriptedQuestioner(answers=["3"], confirms=[True])
        code = run_deploy(config, questioner, reporter, orchestrator, which=always_found)
        assert code == 0
        infos = reporter.by_severity(Severity.INFO)
        assert any(i.startswith("Set OR_PUBLIC_URL in openreplay/.env.openreplay") for i in infos)
        assert "GF_SERVER_ROOT_URL" not in parse_env(config.env_path)
