"""Configuration management for locimport.

Handles loading and generating the TOML config file that says which backend
to talk to, which facility to import into, and where the ledger lives.
"""

from __future__ import annotations

import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path

from locimport.models import MAX_BATCH_SIZE

DEFAULT_CONFIG_PATH = "locimport.toml"
DEFAULT_BASE_URL = "http://localhost:9000"
DEFAULT_TOKEN_ENV = "LOCIMPORT_TOKEN"
DEFAULT_LEDGER = "locimport.db"
DEFAULT_TIMEOUT = 30.0

DEFAULT_CONFIG_TEMPLATE = """\
# locimport configuration
#
# The API token is never stored here: set the environment variable named by
# token_env before running an import.

[api]
base_url = "{base_url}"
facility_id = "{facility_id}"
token_env = "{token_env}"
timeout = {timeout}

[import]
# Create entries per batch call (the backend accepts at most {max_batch})
batch_size = {batch_size}
# SQLite ledger of runs and assigned ids
ledger = "{ledger}"
"""


class ConfigError(ValueError):
    """Raised when a config value has the wrong type or shape."""


@dataclass
class ImportConfig:
    base_url: str = DEFAULT_BASE_URL
    facility_id: str = ""
    token_env: str = DEFAULT_TOKEN_ENV
    timeout: float = DEFAULT_TIMEOUT
    batch_size: int = MAX_BATCH_SIZE
    ledger: str = DEFAULT_LEDGER

    @property
    def token(self) -> str | None:
        return os.environ.get(self.token_env) or None


def _as_int(value, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")
    return value


def _as_float(value, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    return float(value)


def _as_str(value, key: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"'{key}' must be a string, got {value!r}")
    return value


def clamp_batch_size(size: int) -> int:
    """Keep the batch size inside 1..MAX_BATCH_SIZE, warning when it moves."""
    clamped = min(max(size, 1), MAX_BATCH_SIZE)
    if clamped != size:
        print(
            f"Warning: batch_size {size} is outside 1..{MAX_BATCH_SIZE}, using {clamped}.",
            file=sys.stderr,
        )
    return clamped


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> ImportConfig:
    """Load configuration from a TOML file.

    Falls back to defaults if the config file doesn't exist. Keys missing
    from the file keep their default values.
    """
    path = Path(config_path)
    if not path.exists():
        print(
            f"Warning: Config file '{config_path}' not found, using defaults. "
            f"Run 'python -m locimport init-config' to generate one.",
            file=sys.stderr,
        )
        return ImportConfig()

    with open(path, "rb") as f:
        try:
            raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"{config_path}: {e}") from e

    config = ImportConfig()

    api = raw.get("api", {})
    if "base_url" in api:
        config.base_url = _as_str(api["base_url"], "api.base_url")
    if "facility_id" in api:
        config.facility_id = _as_str(api["facility_id"], "api.facility_id")
    if "token_env" in api:
        config.token_env = _as_str(api["token_env"], "api.token_env")
    if "timeout" in api:
        config.timeout = _as_float(api["timeout"], "api.timeout")

    imp = raw.get("import", {})
    if "batch_size" in imp:
        config.batch_size = clamp_batch_size(_as_int(imp["batch_size"], "import.batch_size"))
    if "ledger" in imp:
        config.ledger = _as_str(imp["ledger"], "import.ledger")

    return config


def generate_config(
    config_path: str = DEFAULT_CONFIG_PATH, config: ImportConfig | None = None
) -> str:
    """Write a commented config file and return its path."""
    config = config or ImportConfig()
    content = DEFAULT_CONFIG_TEMPLATE.format(
        base_url=config.base_url,
        facility_id=config.facility_id,
        token_env=config.token_env,
        timeout=config.timeout,
        batch_size=config.batch_size,
        max_batch=MAX_BATCH_SIZE,
        ledger=config.ledger,
    )
    Path(config_path).write_text(content)
    return config_path
