"""
User configuration file support.

Reads/writes ``~/.speedctl/config.json``.

Supported keys::

    server_list = ""             # URL of a JSON server list
    scheme = "https"             # scheme servers must be reachable over
    poll_interval = 0.2          # seconds between status polls
    selection_concurrency = 6    # parallel probing lanes
    ping_attempts = 3            # probes per candidate
    slow_threshold_ms = 500      # a probe this slow ends a candidate early
    ping_timeout_ms = 2000       # per-probe timeout, 0 disables it
    settings = {}                # extra worker settings, e.g. time_dl_max
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

from .constants import (
    DEFAULT_SCHEME,
    PING_ATTEMPTS,
    PING_TIMEOUT_MS,
    POLL_INTERVAL,
    SELECTION_CONCURRENCY,
    SLOW_THRESHOLD_MS,
)

logger = logging.getLogger(__name__)

_CONFIG_DIR = os.path.join(Path.home(), ".speedctl")
_CONFIG_FILE = "config.json"


def _config_path() -> str:
    return os.path.join(_CONFIG_DIR, _CONFIG_FILE)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULTS: Dict[str, Any] = {
    "server_list": "",
    "scheme": DEFAULT_SCHEME,
    "poll_interval": POLL_INTERVAL,
    "selection_concurrency": SELECTION_CONCURRENCY,
    "ping_attempts": PING_ATTEMPTS,
    "slow_threshold_ms": SLOW_THRESHOLD_MS,
    "ping_timeout_ms": PING_TIMEOUT_MS,
    "settings": {},
}


# ---------------------------------------------------------------------------
# Read / Write
# ---------------------------------------------------------------------------

def load_config() -> Dict[str, Any]:
    """Load config from disk, returning defaults for missing keys."""
    path = _config_path()
    config = dict(DEFAULTS)
    config["settings"] = {}

    if not os.path.isfile(path):
        return config

    try:
        with open(path, encoding="utf-8") as fh:
            user = json.load(fh)
        if isinstance(user, dict):
            config.update(user)
    except (json.JSONDecodeError, IOError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)

    if not isinstance(config.get("settings"), dict):
        config["settings"] = {}
    return config


def save_config(config: Dict[str, Any]) -> str:
    """Write *config* to disk.  Returns the file path."""
    path = _config_path()
    os.makedirs(os.path.dirname(path), exist_ok=True)

    with open(path, "w", encoding="utf-8") as fh:
        json.dump(config, fh, indent=2, ensure_ascii=False)

    return path


def get_config_value(key: str) -> Any:
    """Get a single config value."""
    return load_config().get(key, DEFAULTS.get(key))


def set_config_value(key: str, value: Any) -> str:
    """Set a single config value and persist.  Returns file path."""
    config = load_config()
    config[key] = value
    return save_config(config)


def config_path() -> str:
    """Return the config file path (for display purposes)."""
    return _config_path()


def controller_options(config: Dict[str, Any]) -> Dict[str, Any]:
    """Keyword arguments for ``SpeedtestController`` taken from *config*."""
    return {
        "scheme": str(config["scheme"]),
        "poll_interval": float(config["poll_interval"]),
        "selection_concurrency": int(config["selection_concurrency"]),
        "ping_attempts": int(config["ping_attempts"]),
        "slow_threshold_ms": float(config["slow_threshold_ms"]),
        "ping_timeout_ms": float(config["ping_timeout_ms"]),
    }
