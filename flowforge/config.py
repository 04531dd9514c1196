"""Engine settings.

Loaded from ``.flowforge/config.yaml`` when present; any field can be
overridden with a ``FLOWFORGE_<FIELD>`` environment variable (for example
``FLOWFORGE_SANDBOX_TIMEOUT=5``).
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_DIR = ".flowforge"
CONFIG_FILE = "config.yaml"
ENV_PREFIX = "FLOWFORGE_"

DEFAULT_CONFIG_YAML = """# FlowForge engine configuration

# Script sandbox wall-clock budget per code node item (seconds)
sandbox_timeout: 2.0

# External call timeouts (seconds)
http_timeout: 30
model_timeout: 60
ssh_timeout: 60

# Execution log capacity (oldest records are evicted)
max_run_records: 100

# Default window for memory nodes without an explicit window_size
memory_window_size: 10

# Persistence
db_path: .flowforge/state.db
state_key: flowforge-state

# OpenAI-compatible chat completions endpoint for model nodes
model_base_url: https://api.openai.com/v1
model_name: gpt-4o-mini

debug_mode: false
"""


class EngineSettings(BaseModel):
    """Runtime settings for the engine and its services."""

    sandbox_timeout: float = Field(default=2.0, gt=0)
    http_timeout: float = Field(default=30.0, gt=0)
    model_timeout: float = Field(default=60.0, gt=0)
    ssh_timeout: float = Field(default=60.0, gt=0)
    max_run_records: int = Field(default=100, ge=1)
    memory_window_size: int = Field(default=10, ge=1)
    db_path: str = ".flowforge/state.db"
    state_key: str = "flowforge-state"
    model_base_url: str = "https://api.openai.com/v1"
    model_name: str = "gpt-4o-mini"
    model_api_key: str | None = None
    debug_mode: bool = False


def _env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for name in EngineSettings.model_fields:
        value = environ.get(ENV_PREFIX + name.upper())
        if value is not None:
            overrides[name] = value
    return overrides


def load_settings(
    path: str | Path | None = None, environ: dict[str, str] | None = None
) -> EngineSettings:
    """Load settings from YAML (if it exists) and apply environment overrides.

    Raises:
        yaml.YAMLError: If the config file is not valid YAML
        ValueError: If the config file is not a mapping
        pydantic.ValidationError: If a value has the wrong type
    """
    config_path = Path(path) if path else Path.cwd() / CONFIG_DIR / CONFIG_FILE
    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(
                f"Invalid config in '{config_path}': expected a mapping, "
                f"got {type(loaded).__name__}"
            )
        data.update(loaded or {})
        logger.debug(f"Loaded settings from {config_path}")

    data.update(_env_overrides(environ))
    return EngineSettings.model_validate(data)


def write_default_config(root: str | Path) -> Path:
    """Create ``<root>/.flowforge/config.yaml`` with default settings."""
    config_path = Path(root) / CONFIG_DIR / CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML)
    return config_path
