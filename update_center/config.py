"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./update_center.yaml (working directory)
3. ~/.update_center/config.yaml (user home)

Environment variables override YAML: UPDATE_CENTER_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
"""

import logging
import os
import re
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

ENV_PREFIX = "UPDATE_CENTER_"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    """Recursively resolve ${VAR} references in a nested data structure."""
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class DatabaseConfig(BaseModel):
    """State database location. Empty url means the platform default."""

    url: str = ""
    echo: bool = False


class InstallerConfig(BaseModel):
    """Connection settings for the CI/CD batch installer REST API."""

    base_url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: float = 30.0


class InventoryConfig(BaseModel):
    """Connection settings for the package inventory REST API."""

    base_url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: float = 30.0


class ReconcilerConfig(BaseModel):
    """Timing bounds for the progress polling loop (seconds)."""

    max_runtime_seconds: float = 7200.0
    starting_interval_seconds: float = 3.0
    running_interval_seconds: float = 10.0
    handle_retry_interval_seconds: float = 3.0
    handle_max_attempts: int = 20

    @model_validator(mode="after")
    def positive_bounds(self) -> "ReconcilerConfig":
        """Reject non-positive timing values."""
        if self.max_runtime_seconds <= 0:
            raise ValueError("max_runtime_seconds must be positive")
        if self.handle_max_attempts < 1:
            raise ValueError("handle_max_attempts must be at least 1")
        return self


class RiskConfig(BaseModel):
    """Weights and band thresholds for advisory risk scoring."""

    major_weight: int = 30
    minor_weight: int = 15
    patch_weight: int = 5
    per_dependency_weight: int = 10
    customization_weight: int = 20
    medium_threshold: int = 20
    high_threshold: int = 40
    critical_threshold: int = 60

    @model_validator(mode="after")
    def ordered_thresholds(self) -> "RiskConfig":
        """Ensure the bands partition the score range in order."""
        if not (
            self.medium_threshold <= self.high_threshold <= self.critical_threshold
        ):
            raise ValueError("risk thresholds must be non-decreasing")
        return self


class BatchConfig(BaseModel):
    """Batch creation defaults."""

    install_order_step: int = Field(default=100, ge=1)
    manifest_name: str = "Update Center Batch Install"
    manifest_notes: str = "Batch installation via Update Center"
    requested_by: str = "system"


class LoggingConfig(BaseModel):
    """Process logging settings."""

    level: str = "info"
    file: str | None = None


class UpdateCenterConfig(BaseModel):
    """Top-level configuration for the Update Center."""

    database: DatabaseConfig = DatabaseConfig()
    installer: InstallerConfig = InstallerConfig()
    inventory: InventoryConfig = InventoryConfig()
    reconciler: ReconcilerConfig = ReconcilerConfig()
    risk: RiskConfig = RiskConfig()
    batch: BatchConfig = BatchConfig()
    logging: LoggingConfig = LoggingConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "update_center.yaml",
        Path.cwd() / "update_center.yml",
        Path.home() / ".update_center" / "config.yaml",
        Path.home() / ".update_center" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _coerce_env_value(value: str) -> Any:
    """Turn an env string into int or bool where it looks like one."""
    try:
        return int(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def _split_env_key(key: str) -> tuple[str, str] | None:
    """Map UPDATE_CENTER_<SECTION>_<KEY> to (section, field), or None."""
    suffix = key[len(ENV_PREFIX):].lower()
    # Longest section first so a section named like another's prefix still wins
    for section in sorted(UpdateCenterConfig.model_fields, key=len, reverse=True):
        field = suffix.removeprefix(section + "_")
        if field != suffix and field:
            return section, field
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply UPDATE_CENTER_<SECTION>_<KEY> env var overrides to config data.

    For example, ``UPDATE_CENTER_RECONCILER_MAX_RUNTIME_SECONDS`` sets
    ``reconciler.max_runtime_seconds``. Unknown sections are ignored.
    """
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        target = _split_env_key(key)
        if target is None:
            continue
        section, field = target
        section_data = data.get(section)
        if section_data is None:
            section_data = data[section] = {}
        if isinstance(section_data, dict):
            section_data[field] = _coerce_env_value(value)
    return data


def load_config(config_path: str | None = None) -> UpdateCenterConfig:
    """Load configuration from YAML file with env var resolution.

    Falls back to defaults (plus env overrides) when no file is found.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.update_center/).

    Returns:
        Parsed and validated UpdateCenterConfig.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return UpdateCenterConfig(**data)


def configure_logging(config: LoggingConfig) -> None:
    """Configure process logging to stderr (and optionally a file).

    Args:
        config: Logging section of the loaded configuration.
    """
    level = getattr(logging, config.level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.file:
        handlers.append(logging.FileHandler(Path(config.file).expanduser()))
    logging.basicConfig(
        level=level,
        format="%(levelname)s:%(name)s:%(message)s",
        handlers=handlers,
        force=True,
    )
    logging.getLogger("update_center").setLevel(level)
