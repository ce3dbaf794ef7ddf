from __future__ import annotations

import logging
import os
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv

from brokertools.errors import ConfigError

logger = logging.getLogger(__name__)

_cache_lock = threading.Lock()
_cached: dict[str, Any] | None = None
_cached_path: str | None = None

DEFAULT_CONFIG: dict[str, Any] = {
    "broker": {
        "host": "127.0.0.1",
        "port": 7497,
        "client_id": 20,
        "connect_timeout": 10.0,
        "request_timeout": 8.0,
        "market_data_type": 3,
    },
    "server": {
        "name": "brokertools",
        "cors_origins": ["*"],
    },
}

# env var -> (section, key, parser)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "BROKERTOOLS_IB_HOST": ("broker", "host", str),
    "BROKERTOOLS_IB_PORT": ("broker", "port", int),
    "BROKERTOOLS_IB_CLIENT_ID": ("broker", "client_id", int),
    "BROKERTOOLS_IB_TRADE_CLIENT_ID": ("broker", "trade_client_id", int),
    "BROKERTOOLS_IB_ACCOUNT": ("broker", "account", str),
    "BROKERTOOLS_IB_CONNECT_TIMEOUT": ("broker", "connect_timeout", float),
    "BROKERTOOLS_IB_REQUEST_TIMEOUT": ("broker", "request_timeout", float),
    "BROKERTOOLS_MARKET_DATA_TYPE": ("broker", "market_data_type", int),
}


def _project_root() -> Path:
    # brokertools/utils/config_loader.py -> brokertools/utils -> brokertools -> project root
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    env_path = (os.environ.get("BROKERTOOLS_CONFIG") or "").strip()
    if env_path:
        return Path(env_path)
    return _project_root() / "config" / "config.yaml"


def load_local_env() -> None:
    """Load `.env` from the working directory and `config/secrets.env` (both optional)."""
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path)
        logger.info("Loaded environment variables from %s", dotenv_path)

    secrets_path = _project_root() / "config" / "secrets.env"
    if secrets_path.exists():
        load_dotenv(secrets_path)
        logger.info("Loaded environment variables from %s", secrets_path)


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """Override YAML settings with `BROKERTOOLS_*` environment variables."""
    for name, (section, key, parse) in _ENV_OVERRIDES.items():
        raw = (os.environ.get(name) or "").strip()
        if not raw:
            continue
        try:
            value = parse(raw)
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {name}: {raw!r}") from exc
        cfg.setdefault(section, {})[key] = value


def validate_config(cfg: dict[str, Any]) -> None:
    """
    Fail fast if the broker section is incomplete.

    Normalises numeric fields in place so downstream code can trust the types.
    """
    broker = cfg.get("broker")
    if not isinstance(broker, dict):
        raise ConfigError("Missing required config section: broker")

    for k in ["host", "port", "client_id", "account"]:
        if broker.get(k) in (None, ""):
            raise ConfigError(f"Missing broker.{k} in config (or BROKERTOOLS_IB_{k.upper()} in the environment)")

    try:
        broker["port"] = int(broker["port"])
        broker["client_id"] = int(broker["client_id"])
        trade_client_id = broker.get("trade_client_id")
        broker["trade_client_id"] = broker["client_id"] + 1 if trade_client_id is None else int(trade_client_id)
        broker["connect_timeout"] = float(broker["connect_timeout"])
        broker["request_timeout"] = float(broker["request_timeout"])
        broker["market_data_type"] = int(broker["market_data_type"])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid broker config: {exc}") from exc

    if broker["trade_client_id"] == broker["client_id"]:
        raise ConfigError("broker.trade_client_id must differ from broker.client_id")
    if broker["market_data_type"] not in (1, 2, 3, 4):
        raise ConfigError(f"broker.market_data_type must be 1-4; got {broker['market_data_type']}")

    server = cfg.get("server") or {}
    if not isinstance(server.get("cors_origins"), list):
        raise ConfigError("server.cors_origins must be a list")


def load_config(config_path: str | Path | None = None, *, force_reload: bool = False) -> dict[str, Any]:
    """
    Resolve the configuration once and reuse it across the process.

    - Starts from built-in defaults.
    - Merges `config/config.yaml` (or `BROKERTOOLS_CONFIG`) when present; an explicit path must exist.
    - Applies `BROKERTOOLS_*` environment overrides, then validates.
    - Returns a deep copy so callers can safely mutate local copies.
    """
    global _cached, _cached_path

    path = Path(config_path) if config_path else default_config_path()
    path_str = str(path.resolve())

    with _cache_lock:
        if not force_reload and _cached is not None and _cached_path == path_str:
            return deepcopy(_cached)

        file_cfg: Any = {}
        if path.exists():
            try:
                with path.open("r", encoding="utf-8") as f:
                    file_cfg = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Config file is not valid YAML: {path}: {exc}") from exc
        elif config_path:
            raise ConfigError(f"Config file not found: {path}")

        if not isinstance(file_cfg, dict):
            raise ConfigError(f"Config must be a YAML mapping (dict); got {type(file_cfg).__name__}")

        cfg = _merge(DEFAULT_CONFIG, file_cfg)
        _apply_env_overrides(cfg)
        validate_config(cfg)

        _cached = cfg
        _cached_path = path_str
        logger.info("Loaded config (file=%s, exists=%s)", path_str, path.exists())
        return deepcopy(cfg)
