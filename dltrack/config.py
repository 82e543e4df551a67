from __future__ import annotations

import logging
import os
import platform
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional

import keyring
import yaml
from keyring.errors import KeyringError


logger = logging.getLogger(__name__)

APP_DIR_NAME = "dltrack"
CONFIG_FILE_NAME = "config.yaml"
DB_FILE_NAME = "dltrack.db"
KEYRING_SERVICE = "dltrack"


DEFAULT_CONFIG: Dict[str, Any] = {
    "api": {
        "base_url": "https://api.deadlock-api.com",
        "api_key_env": "DEADLOCK_API_KEY",
        "timeout_s": 15,
    },
    "steam": {
        "base_url": "https://api.steampowered.com",
        "api_key_env": "STEAM_WEB_API_KEY",
        "timeout_s": 10,
    },
    "ingest": {
        "limit": 500,
        "batch_size": 100,
        "include_info": True,
        "include_players": True,
        # consecutive transient batch failures before the run aborts
        "max_consecutive_failures": 3,
    },
    "backoff": {
        "max_attempts": 4,
        "base_delay_s": 0.4,
        "factor": 2.0,
        "max_delay_s": 30.0,
    },
    "database": {
        "path": "",
    },
}

# env var -> (section, key)
ENV_OVERRIDES = {
    "DEADLOCK_API_BASE": ("api", "base_url"),
    "STEAM_WEB_API_BASE": ("steam", "base_url"),
    "DLTRACK_DB_PATH": ("database", "path"),
}


def _user_config_dir() -> Path:
    system = platform.system()
    if system == "Windows":
        appdata = os.getenv("APPDATA")
        if appdata:
            return Path(appdata) / APP_DIR_NAME
    elif system == "Darwin":
        return Path.home() / "Library" / "Application Support" / APP_DIR_NAME
    # Linux and others
    xdg = os.getenv("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / APP_DIR_NAME
    return Path.home() / ".config" / APP_DIR_NAME


def _user_data_dir() -> Path:
    system = platform.system()
    if system == "Windows":
        localappdata = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
        if localappdata:
            return Path(localappdata) / APP_DIR_NAME
    elif system == "Darwin":
        return Path.home() / "Library" / "Application Support" / APP_DIR_NAME
    xdg = os.getenv("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / APP_DIR_NAME
    return Path.home() / ".local" / "share" / APP_DIR_NAME


def config_path() -> str:
    return str(_user_config_dir() / CONFIG_FILE_NAME)


def db_path() -> str:
    override = os.getenv("DLTRACK_DB_PATH")
    if override:
        return override
    return str(_user_data_dir() / DB_FILE_NAME)


def ensure_paths() -> None:
    _user_config_dir().mkdir(parents=True, exist_ok=True)
    _user_data_dir().mkdir(parents=True, exist_ok=True)
    cfg_file = Path(config_path())
    if not cfg_file.exists():
        cfg_file.write_text(yaml.safe_dump(DEFAULT_CONFIG, sort_keys=False))


def get_config() -> Dict[str, Any]:
    ensure_paths()
    with open(config_path(), "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}

    # merge defaults shallowly
    def merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(a)
        for k, v in b.items():
            if isinstance(v, dict):
                out[k] = merge(out.get(k) or {}, v)
            else:
                out.setdefault(k, v)
        return out

    cfg = merge(cfg, DEFAULT_CONFIG)
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            cfg[section][key] = value
    if not cfg["database"].get("path"):
        cfg["database"]["path"] = db_path()
    return cfg


def save_config(cfg: Dict[str, Any]) -> None:
    ensure_paths()
    with open(config_path(), "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, sort_keys=False)


def open_config_in_editor() -> bool:
    path = config_path()
    try:
        if platform.system() == "Windows":
            os.startfile(path)  # type: ignore[attr-defined]
        elif platform.system() == "Darwin":
            subprocess.run(["open", path], check=False)
        else:
            subprocess.run(["xdg-open", path], check=False)
        return True
    except OSError:
        return False


def get_api_key(service: str = "api", cfg: Optional[Dict[str, Any]] = None) -> str | None:
    """Key for ``service`` ("api" or "steam"); keyring first, then env."""
    try:
        key = keyring.get_password(KEYRING_SERVICE, f"{service}_key")
    except KeyringError as e:
        logger.debug("keyring unavailable: %s", e)
        key = None
    if key:
        return key
    cfg = cfg or get_config()
    env_name = cfg.get(service, {}).get("api_key_env") or DEFAULT_CONFIG[service]["api_key_env"]
    return os.getenv(env_name) or None


def set_api_key(value: str, service: str = "api") -> None:
    keyring.set_password(KEYRING_SERVICE, f"{service}_key", value)
