from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..errors import ConfigError, MappingConfigError

"""Configuration loading.

- ``config/pipeline.yml``: pipeline settings (database fallback, staging
  batch size / workers / I/O timeout, validation issue limit, log directory,
  per-profile column map defaults)
- column map documents (YAML or JSON) supplied per run

Both are validated against the JSON schemas in ``config/schemas/``.
Environment variables for the database connection are resolved by the CLI
and take precedence over the ``database`` section.
"""

__all__ = [
    "SCHEMA_DIR",
    "DatabaseConfig",
    "StagingSettings",
    "ValidationSettings",
    "PipelineConfig",
    "load_config",
    "config_from_dict",
    "load_column_map",
    "validate_column_map_document",
]

SCHEMA_DIR = Path(__file__).parent / "schemas"
PIPELINE_SCHEMA = SCHEMA_DIR / "pipeline.schema.json"
COLUMN_MAP_SCHEMA = SCHEMA_DIR / "column_map.schema.json"

_schema_cache: dict[Path, dict[str, Any]] = {}


@dataclass(frozen=True)
class DatabaseConfig:
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class StagingSettings:
    batch_size: int = 500
    workers: int = 1
    io_timeout_seconds: float = 60.0


@dataclass(frozen=True)
class ValidationSettings:
    issue_limit: int = 200
    data_quality_checks: bool = False


@dataclass(frozen=True)
class PipelineConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    staging: StagingSettings = field(default_factory=StagingSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    logs_directory: str = "logs"
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    def profile(self, profile_id: str | None) -> dict[str, Any] | None:
        if profile_id is None:
            return None
        return self.profiles.get(profile_id)


def _schema(path: Path) -> dict[str, Any]:
    if path not in _schema_cache:
        if not path.exists():
            raise ConfigError(f"config schema not found: {path}")
        try:
            _schema_cache[path] = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"invalid schema file: {e}") from e
    return _schema_cache[path]


def _error_path(e: ValidationError) -> str:
    return "/".join(str(p) for p in e.absolute_path) or "<root>"


def validate_column_map_document(document: Any) -> None:
    """Structural validation of a column map document.

    Raises:
        MappingConfigError: the document does not match column_map.schema.json
    """
    try:
        jsonschema.validate(document, _schema(COLUMN_MAP_SCHEMA))
    except ValidationError as e:
        raise MappingConfigError(f"column map validation failed at {_error_path(e)}: {e.message}") from e


def config_from_dict(data: dict[str, Any]) -> PipelineConfig:
    """Validate and convert an already-parsed settings mapping."""
    try:
        jsonschema.validate(data, _schema(PIPELINE_SCHEMA))
    except ValidationError as e:
        raise ConfigError(f"config validation failed at {_error_path(e)}: {e.message}") from e

    profiles = data.get("profiles") or {}
    for profile_id, doc in profiles.items():
        try:
            validate_column_map_document(doc)
        except MappingConfigError as e:
            raise ConfigError(f"profile {profile_id!r}: {e.message}") from e

    db_raw = data.get("database") or {}
    staging_raw = data.get("staging") or {}
    validation_raw = data.get("validation") or {}
    return PipelineConfig(
        database=DatabaseConfig(
            host=db_raw.get("host"),
            port=db_raw.get("port"),
            user=db_raw.get("user"),
            password=db_raw.get("password"),
            database=db_raw.get("database"),
            dsn=db_raw.get("dsn"),
        ),
        staging=StagingSettings(**staging_raw),
        validation=ValidationSettings(**validation_raw),
        logs_directory=data.get("logs_directory", "logs"),
        profiles=dict(profiles),
    )


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e


def load_config(path: Path) -> PipelineConfig:
    data = _read_yaml(Path(path)) or {}
    if not isinstance(data, dict):
        raise ConfigError("config validation failed at <root>: expected a mapping")
    return config_from_dict(data)


def load_column_map(path: Path) -> dict[str, Any]:
    """Load a column map document from YAML or JSON (JSON is valid YAML)."""
    data = _read_yaml(Path(path)) or {}
    validate_column_map_document(data)
    return data
