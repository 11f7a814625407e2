# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Configuration

Run-wide settings. Sources, lowest to highest precedence: dataclass
defaults, ``stagehand.cfg`` ([defaults] section), ``STAGEHAND_<KEY>``
environment variables, then explicit ``configure()`` calls from the CLI.
"""

from __future__ import annotations

import configparser
import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

HASH_BEHAVIOURS = ("replace", "merge")
DUPLICATE_HOST_POLICIES = ("last_wins", "error")
FACT_CACHE_PLUGINS = ("memory", "jsonfile")
STRATEGIES = ("free", "linear")


@dataclass
class StagehandConfig:
    """
    Configuration for a Stagehand run.

    Attributes:
        forks: Maximum number of concurrent task executions
        hash_behaviour: 'replace' (shallow override) or 'merge' (deep merge)
            for mapping variables defined in several scopes
        duplicate_host_policy: 'last_wins' or 'error' when a host is
            declared twice with different connection settings
        fact_caching: 'memory' (current run only) or 'jsonfile'
        fact_caching_connection: Directory for the jsonfile fact cache
        retries: Default retries for tasks with ``until`` and no ``retries``
        retry_delay: Default delay in seconds between ``until`` attempts
        connect_timeout: Seconds allowed to establish a connection
        command_timeout: Default per-command timeout (None = unlimited)
        host_key_checking: Verify SSH host keys
        strategy: Default play strategy ('free' or 'linear')
        vault_identity_list: Vault ids in ``id@source`` form
        vault_password_file: Default vault password file
    """

    forks: int = 5
    hash_behaviour: str = "replace"
    duplicate_host_policy: str = "last_wins"
    fact_caching: str = "memory"
    fact_caching_connection: Optional[str] = None
    retries: int = 3
    retry_delay: float = 5.0
    connect_timeout: int = 30
    command_timeout: Optional[float] = None
    host_key_checking: bool = True
    strategy: str = "free"
    vault_identity_list: List[str] = field(default_factory=list)
    vault_password_file: Optional[str] = None

    def validate(self) -> None:
        """Raise ValueError for settings outside their allowed values."""
        if self.hash_behaviour not in HASH_BEHAVIOURS:
            raise ValueError(f"hash_behaviour must be one of {HASH_BEHAVIOURS}")
        if self.duplicate_host_policy not in DUPLICATE_HOST_POLICIES:
            raise ValueError(
                f"duplicate_host_policy must be one of {DUPLICATE_HOST_POLICIES}"
            )
        if self.fact_caching not in FACT_CACHE_PLUGINS:
            raise ValueError(f"fact_caching must be one of {FACT_CACHE_PLUGINS}")
        if self.strategy not in STRATEGIES:
            raise ValueError(f"strategy must be one of {STRATEGIES}")
        if self.forks < 1:
            raise ValueError("forks must be at least 1")

    @classmethod
    def load(
        cls,
        path: Optional[Path] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> "StagehandConfig":
        """Build a config from a cfg file and the environment."""
        environ = os.environ if environ is None else environ
        config = cls()

        cfg_path = path or find_config_file(environ)
        if cfg_path is not None:
            parser = configparser.ConfigParser()
            parser.read(cfg_path, encoding="utf-8")
            if parser.has_section("defaults"):
                for key, raw in parser.items("defaults"):
                    config._set_from_string(key, raw, source=str(cfg_path))

        for f in dataclasses.fields(cls):
            env_key = f"STAGEHAND_{f.name.upper()}"
            if env_key in environ:
                config._set_from_string(f.name, environ[env_key], source=env_key)

        config.validate()
        return config

    def _set_from_string(self, key: str, raw: str, source: str) -> None:
        fields = {f.name: f for f in dataclasses.fields(self)}
        if key not in fields:
            logger.warning("Ignoring unknown setting '%s' from %s", key, source)
            return
        current = getattr(self, key)
        setattr(self, key, _coerce(raw, current, key))


def _coerce(raw: str, current: Any, key: str) -> Any:
    raw = raw.strip()
    if isinstance(current, bool):
        return raw.lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    if key == "command_timeout":
        return float(raw) if raw else None
    return raw or None


def find_config_file(environ: Optional[Dict[str, str]] = None) -> Optional[Path]:
    """Locate ``stagehand.cfg``: $STAGEHAND_CONFIG, ./stagehand.cfg, ~/.stagehand.cfg."""
    environ = os.environ if environ is None else environ
    candidates = []
    if environ.get("STAGEHAND_CONFIG"):
        candidates.append(Path(environ["STAGEHAND_CONFIG"]))
    candidates.append(Path.cwd() / "stagehand.cfg")
    candidates.append(Path.home() / ".stagehand.cfg")
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


# Default configuration
_config = StagehandConfig()


def get_config() -> StagehandConfig:
    """Get the current configuration."""
    return _config


def set_config(config: StagehandConfig) -> None:
    """Replace the current configuration."""
    global _config
    config.validate()
    _config = config


def configure(**kwargs: Any) -> None:
    """Override individual settings on the current configuration."""
    for key, value in kwargs.items():
        if hasattr(_config, key):
            setattr(_config, key, value)
        else:
            logger.warning("Ignoring unknown setting '%s'", key)
    _config.validate()
