"""
Configuration loader — reads provision.yml into a ProvisionConfig.

The file is optional: without one the built-in defaults describe the
standard host. Environment variables are applied on top of whatever the
file says:

    PROVISION_TARGET_USER   target user override
    PROVISION_LOG_DIR       log directory override
    OPEN_WEBUI_PORT         front-end published port
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import ValidationError

from provisioner.core.errors import ConfigError
from provisioner.core.models.config import ProvisionConfig

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "provision.yml"

ENV_TARGET_USER = "PROVISION_TARGET_USER"
ENV_LOG_DIR = "PROVISION_LOG_DIR"
ENV_WEBUI_PORT = "OPEN_WEBUI_PORT"


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for provision.yml starting from the given directory, walking up.

    Returns:
        Path to provision.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def _read_yaml(path: Path) -> dict:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    # The file may wrap everything under a "provision" key or be flat
    return data.get("provision", data) if "provision" in data else data


def apply_env_overrides(data: dict, environ: Mapping[str, str]) -> dict:
    """Overlay environment variables on raw config data."""
    merged = dict(data)

    user = environ.get(ENV_TARGET_USER, "").strip()
    if user:
        merged["target_user"] = user

    log_dir = environ.get(ENV_LOG_DIR, "").strip()
    if log_dir:
        merged["log_dir"] = log_dir

    port = environ.get(ENV_WEBUI_PORT, "").strip()
    if port:
        try:
            merged["webui_port"] = int(port)
        except ValueError as e:
            raise ConfigError(f"{ENV_WEBUI_PORT} must be a port number, got {port!r}") from e

    return merged


def load_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
    *,
    search: bool = True,
) -> ProvisionConfig:
    """Load and validate provisioning configuration.

    Args:
        path: Explicit path to provision.yml. If None and ``search`` is
            set, searches upward from the cwd; no file means defaults.
        environ: Environment mapping (default: ``os.environ``).
        search: Whether to look for a config file when ``path`` is None.

    Returns:
        Validated ProvisionConfig.

    Raises:
        ConfigError: If the file is unreadable or invalid.
    """
    if environ is None:
        environ = os.environ

    if path is None and search:
        path = find_config_file()

    data: dict = {}
    if path is not None:
        logger.debug("Loading provision config from %s", path)
        data = _read_yaml(path)

    data = apply_env_overrides(data, environ)

    try:
        config = ProvisionConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid provision configuration: {e}") from e

    if not 0 < config.webui_port < 65536:
        raise ConfigError(f"webui_port out of range: {config.webui_port}")

    logger.info("Loaded config for workflow '%s'", config.workflow)
    return config
