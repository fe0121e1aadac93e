"""Configuration loading utilities for the license audit toolkit."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "LICENSE_AUDIT_CONFIG"
ENV_PREFIX = "LICENSE_AUDIT_"
DEFAULT_GRAPH_URL = "https://graph.microsoft.com/v1.0"
MOCK_SCHEME = "mock://"


@dataclass
class GraphConfig:
    """Settings for the Microsoft Graph directory connection."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    base_url: str = DEFAULT_GRAPH_URL
    mock_data_file: Optional[Path] = None
    timeout: int = 30
    page_size: int = 999

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)

    @property
    def is_mock(self) -> bool:
        return self.base_url.startswith(MOCK_SCHEME)


@dataclass
class ReportConfig:
    """Defaults for the CSV license reports."""

    output_dir: Path = Path("reports")
    effective_only: bool = True
    delimiter: str = "; "
    target_skus: tuple[str, ...] = ()
    sku_a: Optional[str] = None
    sku_b: Optional[str] = None


@dataclass
class SnapshotConfig:
    """Settings for the local group membership snapshot."""

    database_file: Path = Path("data/memberships.sqlite3")
    extension_attribute: Optional[str] = None
    max_rows_per_user: int = 2
    key_by_group: bool = True
    groups: tuple[str, ...] = ()


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    graph: GraphConfig = field(default_factory=GraphConfig)
    reports: ReportConfig = field(default_factory=ReportConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        try:
            payload = yaml.safe_load(file) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return payload


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _section(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = config_dict.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return value


def _normalize_sequence(value: Any) -> Iterable[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return value
    if isinstance(value, str):
        return value.split(",")
    return [value]


def _to_tuple(value: Any) -> tuple[str, ...]:
    return tuple(
        filter(None, [str(entry).strip() for entry in _normalize_sequence(value)])
    )


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)
    graph_section = _section(config_dict, "graph")
    reports_section = _section(config_dict, "reports")
    snapshot_section = _section(config_dict, "snapshot")

    default_graph = GraphConfig()
    default_reports = ReportConfig()
    default_snapshot = SnapshotConfig()

    try:
        graph_config = GraphConfig(
            tenant_id=_optional_str(graph_section.get("tenant_id")),
            client_id=_optional_str(graph_section.get("client_id")),
            client_secret=_optional_str(graph_section.get("client_secret")),
            base_url=(
                _optional_str(graph_section.get("base_url")) or default_graph.base_url
            ).rstrip("/"),
            mock_data_file=_optional_path(graph_section.get("mock_data_file")),
            timeout=_to_int(graph_section.get("timeout", default_graph.timeout)),
            page_size=_to_int(graph_section.get("page_size", default_graph.page_size)),
        )
        report_config = ReportConfig(
            output_dir=_optional_path(reports_section.get("output_dir"))
            or default_reports.output_dir,
            effective_only=_to_bool(
                reports_section.get("effective_only", default_reports.effective_only)
            ),
            delimiter=str(reports_section.get("delimiter") or default_reports.delimiter),
            target_skus=_to_tuple(reports_section.get("target_skus")),
            sku_a=_optional_str(reports_section.get("sku_a")),
            sku_b=_optional_str(reports_section.get("sku_b")),
        )
        snapshot_config = SnapshotConfig(
            database_file=_optional_path(snapshot_section.get("database_file"))
            or default_snapshot.database_file,
            extension_attribute=_optional_str(snapshot_section.get("extension_attribute")),
            max_rows_per_user=_to_int(
                snapshot_section.get("max_rows_per_user", default_snapshot.max_rows_per_user)
            ),
            key_by_group=_to_bool(
                snapshot_section.get("key_by_group", default_snapshot.key_by_group)
            ),
            groups=_to_tuple(snapshot_section.get("groups")),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration value: {exc}") from exc

    if graph_config.timeout <= 0:
        raise ConfigurationError("graph.timeout must be a positive number of seconds.")
    if snapshot_config.max_rows_per_user < 1:
        raise ConfigurationError("snapshot.max_rows_per_user must be at least 1.")

    return AppConfig(graph=graph_config, reports=report_config, snapshot=snapshot_config)


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "ensure_default_config",
    "GraphConfig",
    "ReportConfig",
    "SnapshotConfig",
    "load_config",
]
