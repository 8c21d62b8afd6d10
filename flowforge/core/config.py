"""Engine configuration loaded from ``.flowforge/config.yaml``."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

CONFIG_DIR = ".flowforge"
CONFIG_FILE = "config.yaml"
GATEWAY_URL_ENV = "FLOWFORGE_GATEWAY_URL"

DEFAULT_CONFIG_YAML = """# flowforge engine configuration

# Delay between node completions (seconds). Set to 0 for headless runs.
pacing_delay: 0.8

# Delay before a looping node re-enters the queue (seconds)
loop_requeue_delay: 0.5

# Maximum iterations of a single loop node per run (null = unlimited)
max_loop_iterations: null

# Per-script timeout in seconds (null = no timeout)
script_timeout: null

# Database gateway service
gateway_url: http://localhost:3001

# Timeout for outbound HTTP calls made by scripts and the gateway client
http_timeout: 30.0
"""


class ConfigError(Exception):
    """Invalid configuration file."""

    pass


class EngineConfig(BaseModel):
    """Runtime settings for the execution engine."""

    pacing_delay: float = Field(default=0.8, ge=0)
    loop_requeue_delay: float = Field(default=0.5, ge=0)
    max_loop_iterations: int | None = Field(default=None, gt=0)
    script_timeout: float | None = Field(default=None, gt=0)
    gateway_url: str = "http://localhost:3001"
    http_timeout: float = Field(default=30.0, gt=0)

    @classmethod
    def load(cls, path: Path | None = None) -> EngineConfig:
        """Load config from ``path`` (or ``./.flowforge/config.yaml``).

        Missing files yield defaults. ``FLOWFORGE_GATEWAY_URL`` overrides
        the gateway URL.
        """
        config_path = path or Path.cwd() / CONFIG_DIR / CONFIG_FILE
        data: dict = {}
        if config_path.exists():
            try:
                with open(config_path, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Expected a mapping in {config_path}")

        env_url = os.environ.get(GATEWAY_URL_ENV)
        if env_url:
            data["gateway_url"] = env_url

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid config in {config_path}: {e}") from e

    def headless(self) -> EngineConfig:
        """Copy of this config without observability delays."""
        return self.model_copy(update={"pacing_delay": 0.0, "loop_requeue_delay": 0.0})
