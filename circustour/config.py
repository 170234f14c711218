import os
import tomllib
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo

_DEFAULT_CONFIG_PATH = Path("config.toml")
_DEFAULT_ENV_PATH = Path("secrets")

_TICKETSOURCE_DEFAULTS = {
    "base_url": "https://api.ticketsource.io",
    "max_workers": 8,
    "max_retries": 3,
    "backoff_factor": 0.5,
    "timeout": 15,
    "cache_ttl": 300,
    "reference": None,
}


def load(path: Path = _DEFAULT_CONFIG_PATH, env_path: Path = _DEFAULT_ENV_PATH) -> dict[str, Any]:
    """Load config from TOML, then overlay any secrets from the environment."""
    with open(path, "rb") as f:
        cfg = tomllib.load(f)
    _load_env(env_path, cfg)
    return cfg


def _load_env(env_path: Path, cfg: dict) -> None:
    """
    Parse a .env-style secrets file and inject values into the config dict.

    Supported variable names:
      TICKETSOURCE_API_KEY  -> cfg["secrets"]["ticketsource_api_key"]

    Shell environment variables take precedence over file values.
    """
    _apply_env_vars(cfg)

    if not env_path.exists():
        return

    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            if key not in os.environ:
                os.environ[key] = value

    _apply_env_vars(cfg)


def _apply_env_vars(cfg: dict) -> None:
    secrets = cfg.setdefault("secrets", {})
    if v := os.environ.get("TICKETSOURCE_API_KEY"):
        secrets["ticketsource_api_key"] = v


def get_site(cfg: dict) -> dict:
    return cfg.get("site", {})


def get_ticketsource(cfg: dict) -> dict:
    """Return the [ticketsource] section with defaults filled in."""
    return {**_TICKETSOURCE_DEFAULTS, **cfg.get("ticketsource", {})}


def get_api_key(cfg: dict) -> Optional[str]:
    return cfg.get("secrets", {}).get("ticketsource_api_key")


def get_snapshot_path(cfg: dict) -> Path:
    return Path(cfg.get("data", {}).get("snapshot_path", "data/events.json"))


def get_timezone(cfg: dict) -> ZoneInfo:
    return ZoneInfo(get_site(cfg).get("timezone", "Europe/London"))
