"""Console settings — config.yaml defaults, overridable per machine from .env."""

import os
import sys
from pathlib import Path

import yaml
from dotenv import load_dotenv

from m2c.state import EXECUTOR_MODES

# .env sits in the project root, next to pyproject.toml
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

# Environment variable -> (config key, type)
ENV_OVERRIDES = {
    "M2C_BASE_URL": ("base_url", str),
    "M2C_REQUEST_TIMEOUT": ("request_timeout", float),
    "M2C_DEFAULT_EXECUTOR": ("default_executor", str),
}


def apply_env_overrides(config: dict, environ=os.environ) -> dict:
    """Copy set environment overrides onto ``config``. Unusable values are skipped with a warning."""
    for variable, (key, cast) in ENV_OVERRIDES.items():
        raw = environ.get(variable)
        if not raw:
            continue
        try:
            config[key] = cast(raw.strip())
        except ValueError:
            print(f"[M2C] Ignoring {variable}={raw!r}: expected {cast.__name__}", file=sys.stderr)

    if config.get("default_executor") not in EXECUTOR_MODES:
        print(
            f"[M2C] Unknown default_executor {config.get('default_executor')!r}, using 'local'",
            file=sys.stderr,
        )
        config["default_executor"] = "local"
    config["base_url"] = str(config.get("base_url", "")).rstrip("/")
    return config


_config = apply_env_overrides(yaml.safe_load(CONFIG_PATH.read_text()))


def get_config() -> dict:
    """Return the loaded config dictionary."""
    return _config
