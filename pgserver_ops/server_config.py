from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from dotenv import dotenv_values

from .lib.env import PATHS

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}

DEFAULTS: Dict[str, str] = {
    "LOG_FILE": PATHS.log_default,
    "LOG_LEVEL": "INFO",
    "DRY_RUN": "false",
    "PG_DATABASE": "",
    "PG_STATE_DIR": PATHS.pg_lib_root,
    "PG_CONF_ROOT": PATHS.pg_conf_root,
    "ENABLE_DYNAMIC_OPTIMIZATION": "true",
    "HARDWARE_CHANGE_THRESHOLD": "10",
    "PRODUCTION_HOURS_START": "8",
    "PRODUCTION_HOURS_END": "20",
    "PGB_CONF_PATH": "/etc/pgbouncer/pgbouncer.ini",
    "PGB_USERLIST_PATH": "/etc/pgbouncer/userlist.txt",
    "PGB_AUTH_TYPE": "scram-sha-256",
    "PG_USER_MONITOR_ENABLED": "true",
    "PG_USER_MONITOR_INTERVAL": "30",
    "PG_USER_MONITOR_SERVICE_NAME": "pg-user-monitor",
    "PG_USER_MONITOR_LOG_PATH": "/var/log/pg-user-monitor.log",
    "PG_USER_MONITOR_STATE_FILE": "/var/lib/postgresql/user_monitor_state.json",
    "DISASTER_RECOVERY_ENABLED": "true",
    "DISASTER_RECOVERY_SERVICE_NAME": "disaster-recovery",
    "DISASTER_RECOVERY_LOG_PATH": "/var/log/disaster-recovery.log",
    "DISASTER_RECOVERY_STATE_FILE": "/var/lib/postgresql/disaster_recovery_state.json",
    "DISASTER_RECOVERY_CHECK_INTERVAL": "30",
    "DISASTER_RECOVERY_EMAIL_ENABLED": "true",
    "DISASTER_RECOVERY_EMAIL_RECIPIENT": "",
    "DISASTER_RECOVERY_EMAIL_SENDER": "",
    "EMAIL_RECIPIENT": "",
    "EMAIL_SENDER": "",
}


@dataclass(frozen=True)
class ServerConfig:
    raw: Dict[str, str]
    conf_dir: str = ""
    log_override: str = ""

    @property
    def cli_globals(self) -> Tuple[str, ...]:
        """Global flags that make a re-invoked CLI load this same configuration."""

        args: Tuple[str, ...] = ("--conf-dir", self.conf_dir) if self.conf_dir else ()
        if self.log_override:
            args += ("--log", self.log_override)
        return args

    def get(self, key: str, default: str = "") -> str:
        value = self.raw.get(key)
        return default if value is None else str(value)

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.raw.get(key)
        if value is None or str(value).strip() == "":
            return default
        return str(value).strip().lower() in _TRUE

    def get_int(self, key: str, default: int = 0) -> int:
        try:
            return int(str(self.raw.get(key, default)).strip())
        except ValueError:
            logger.warning("Invalid integer for %s=%r, using %d", key, self.raw.get(key), default)
            return default

    @property
    def log_file(self) -> str:
        return self.get("LOG_FILE", PATHS.log_default)

    @property
    def log_level(self) -> str:
        return self.get("LOG_LEVEL", "INFO").upper()

    @property
    def dry_run(self) -> bool:
        return self.get_bool("DRY_RUN")

    @property
    def pg_database(self) -> str:
        return self.get("PG_DATABASE")

    @property
    def pg_state_dir(self) -> Path:
        return Path(self.get("PG_STATE_DIR", PATHS.pg_lib_root))

    @property
    def pg_conf_root(self) -> str:
        return self.get("PG_CONF_ROOT", PATHS.pg_conf_root)

    @property
    def dynamic_optimization_enabled(self) -> bool:
        return self.get_bool("ENABLE_DYNAMIC_OPTIMIZATION", True)

    @property
    def hardware_change_threshold(self) -> int:
        return self.get_int("HARDWARE_CHANGE_THRESHOLD", 10)

    @property
    def production_hours(self) -> tuple[int, int]:
        return self.get_int("PRODUCTION_HOURS_START", 8), self.get_int("PRODUCTION_HOURS_END", 20)

    @property
    def pgb_conf_path(self) -> Path:
        return Path(self.get("PGB_CONF_PATH", DEFAULTS["PGB_CONF_PATH"]))

    @property
    def pgb_userlist_path(self) -> Path:
        return Path(self.get("PGB_USERLIST_PATH", DEFAULTS["PGB_USERLIST_PATH"]))

    @property
    def pgb_auth_type(self) -> str:
        return self.get("PGB_AUTH_TYPE", "scram-sha-256").lower()

    @property
    def user_monitor_enabled(self) -> bool:
        return self.get_bool("PG_USER_MONITOR_ENABLED", True)

    @property
    def user_monitor_interval(self) -> int:
        return max(1, self.get_int("PG_USER_MONITOR_INTERVAL", 30))

    @property
    def user_monitor_service(self) -> str:
        return self.get("PG_USER_MONITOR_SERVICE_NAME", "pg-user-monitor")

    @property
    def user_monitor_log_path(self) -> str:
        return self.get("PG_USER_MONITOR_LOG_PATH", DEFAULTS["PG_USER_MONITOR_LOG_PATH"])

    @property
    def user_monitor_state_file(self) -> Path:
        return Path(self.get("PG_USER_MONITOR_STATE_FILE", DEFAULTS["PG_USER_MONITOR_STATE_FILE"]))

    @property
    def recovery_enabled(self) -> bool:
        return self.get_bool("DISASTER_RECOVERY_ENABLED", True)

    @property
    def recovery_service(self) -> str:
        return self.get("DISASTER_RECOVERY_SERVICE_NAME", "disaster-recovery")

    @property
    def recovery_log_path(self) -> str:
        return self.get("DISASTER_RECOVERY_LOG_PATH", DEFAULTS["DISASTER_RECOVERY_LOG_PATH"])

    @property
    def recovery_state_file(self) -> Path:
        return Path(self.get("DISASTER_RECOVERY_STATE_FILE", DEFAULTS["DISASTER_RECOVERY_STATE_FILE"]))

    @property
    def recovery_interval(self) -> int:
        return max(1, self.get_int("DISASTER_RECOVERY_CHECK_INTERVAL", 30))

    @property
    def recovery_email_enabled(self) -> bool:
        return self.get_bool("DISASTER_RECOVERY_EMAIL_ENABLED", True)

    @property
    def recovery_email_recipient(self) -> str:
        return self.get("DISASTER_RECOVERY_EMAIL_RECIPIENT") or self.get("EMAIL_RECIPIENT")

    @property
    def recovery_email_sender(self) -> str:
        return self.get("DISASTER_RECOVERY_EMAIL_SENDER") or self.get("EMAIL_SENDER")


def _read_env_file(path: Path) -> Dict[str, str]:
    if not path.is_file():
        return {}
    values = dotenv_values(path)
    return {k: v for k, v in values.items() if v is not None}


def load_server_config(
    conf_dir: Optional[str] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> ServerConfig:
    """Merge DEFAULTS < default.env < user.env < environment < overrides.

    Only environment variables whose names are already known from the lower
    layers are taken, so unrelated process variables never leak in.
    """

    raw: Dict[str, str] = dict(DEFAULTS)
    base = Path(conf_dir or PATHS.conf_dir)

    default_env = base / "default.env"
    user_env = base / "user.env"
    raw.update(_read_env_file(default_env))
    if user_env.is_file():
        logger.info("Loading user environment variables from %s", user_env)
        raw.update(_read_env_file(user_env))

    env = os.environ if environ is None else environ
    for key in list(raw):
        if key in env:
            raw[key] = env[key]

    raw.update({k: str(v) for k, v in (overrides or {}).items()})
    return ServerConfig(raw=raw, conf_dir=str(base))
