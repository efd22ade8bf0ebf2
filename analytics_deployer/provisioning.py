"""
Configuration files consumed by the monitoring services.

Prometheus scrape targets, Loki storage and retention, Promtail log
sources, and Grafana data-source / dashboard provisioning. The services
read these at start-up; nothing here talks to them.
"""

import json
from typing import Dict, Any, List

import yaml

PROMETHEUS_URL = "http://prometheus:9090"
LOKI_URL = "http://loki:3100"
DASHBOARDS_PATH = "/var/lib/grafana/dashboards"


def _dump(data: Dict[str, Any]) -> str:
    return yaml.dump(data, default_flow_style=False, sort_keys=False)


def prometheus_config(scrape_interval: str = "15s") -> str:
    """Scrape Prometheus itself, node-exporter and cAdvisor."""
    targets = [
        ("prometheus", "localhost:9090"),
        ("node-exporter", "node-exporter:9100"),
        ("cadvisor", "cadvisor:8080"),
    ]
    return _dump({
        "global": {
            "scrape_interval": scrape_interval,
            "evaluation_interval": scrape_interval,
        },
        "scrape_configs": [
            {"job_name": job, "static_configs": [{"targets": [target]}]}
            for job, target in targets
        ],
    })


def loki_config(retention_period: str) -> str:
    """Single-node Loki on the local filesystem with compactor retention."""
    return _dump({
        "auth_enabled": False,
        "server": {"http_listen_port": 3100},
        "common": {
            "path_prefix": "/loki",
            "storage": {
                "filesystem": {
                    "chunks_directory": "/loki/chunks",
                    "rules_directory": "/loki/rules",
                },
            },
            "replication_factor": 1,
            "ring": {"kvstore": {"store": "inmemory"}},
        },
        "schema_config": {
            "configs": [{
                "from": "2024-01-01",
                "store": "tsdb",
                "object_store": "filesystem",
                "schema": "v12",
                "index": {"prefix": "index_", "period": "24h"},
            }],
        },
        "limits_config": {"retention_period": retention_period},
        "compactor": {
            "working_directory": "/loki/compactor",
            "shared_store": "filesystem",
            "retention_enabled": True,
        },
    })


def promtail_config() -> str:
    """Ship host logs and docker container logs to Loki."""
    return _dump({
        "server": {"http_listen_port": 9080, "grpc_listen_port": 0},
        "positions": {"filename": "/tmp/positions.yaml"},
        "clients": [{"url": f"{LOKI_URL}/loki/api/v1/push"}],
        "scrape_configs": [
            {
                "job_name": "system",
                "static_configs": [{
                    "targets": ["localhost"],
                    "labels": {"job": "varlogs", "__path__": "/var/log/*log"},
                }],
            },
            {
                "job_name": "containers",
                "static_configs": [{
                    "targets": ["localhost"],
                    "labels": {
                        "job": "containers",
                        "__path__": "/var/lib/docker/containers/*/*-json.log",
                    },
                }],
                "pipeline_stages": [{"docker": {}}],
            },
        ],
    })


def grafana_datasources() -> str:
    return _dump({
        "apiVersion": 1,
        "datasources": [
            {
                "name": "Prometheus",
                "uid": "prometheus",
                "type": "prometheus",
                "access": "proxy",
                "url": PROMETHEUS_URL,
                "isDefault": True,
            },
            {
                "name": "Loki",
                "uid": "loki",
                "type": "loki",
                "access": "proxy",
                "url": LOKI_URL,
            },
        ],
    })


def grafana_dashboard_provider() -> str:
    return _dump({
        "apiVersion": 1,
        "providers": [{
            "name": "analytics-stack",
            "orgId": 1,
            "folder": "Analytics Stack",
            "type": "file",
            "disableDeletion": False,
            "allowUiUpdates": True,
            "options": {"path": DASHBOARDS_PATH},
        }],
    })


def _timeseries(panel_id: int, title: str, expr: str, unit: str, x: int) -> Dict[str, Any]:
    return {
        "id": panel_id,
        "type": "timeseries",
        "title": title,
        "datasource": {"type": "prometheus", "uid": "prometheus"},
        "gridPos": {"h": 8, "w": 12, "x": x, "y": 0},
        "fieldConfig": {"defaults": {"unit": unit}, "overrides": []},
        "targets": [{"refId": "A", "expr": expr}],
    }


def host_overview_dashboard() -> str:
    """Host CPU/memory from node-exporter and the container log stream."""
    panels: List[Dict[str, Any]] = [
        _timeseries(
            1, "CPU usage",
            '100 - (avg(rate(node_cpu_seconds_total{mode="idle"}[5m])) * 100)',
            "percent", 0,
        ),
        _timeseries(
            2, "Memory usage",
            "node_memory_MemTotal_bytes - node_memory_MemAvailable_bytes",
            "bytes", 12,
        ),
        {
            "id": 3,
            "type": "logs",
            "title": "Container logs",
            "datasource": {"type": "loki", "uid": "loki"},
            "gridPos": {"h": 12, "w": 24, "x": 0, "y": 8},
            "targets": [{"refId": "A", "expr": '{job="containers"}'}],
        },
    ]
    dashboard = {
        "uid": "analytics-host-overview",
        "title": "Host Overview",
        "tags": ["analytics-stack"],
        "timezone": "browser",
        "schemaVersion": 39,
        "time": {"from": "now-6h", "to": "now"},
        "refresh": "30s",
        "panels": panels,
    }
    return json.dumps(dashboard, indent=2) + "\n"
