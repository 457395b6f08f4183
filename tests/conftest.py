from __future__ import annotations

import fnmatch
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from pgserver_ops.lib.hwdetect import HardwareSpecs
from pgserver_ops.lib.psql import Psql, PsqlError
from pgserver_ops.lib.systemd import Systemd
from pgserver_ops.server_config import ServerConfig, load_server_config


class FakeSystemd(Systemd):
    """systemctl stand-in: units in `active` are running; `failures` counts forced failures."""

    def __init__(self, unit_dir: Path, active: Iterable[str] = (), failures: Optional[Dict[Tuple[str, str], int]] = None):
        super().__init__(unit_dir=str(unit_dir))
        self.active = set(active)
        self.failures = dict(failures or {})
        self.calls: List[Tuple[str, ...]] = []

    def _ctl(self, *args: str) -> bool:
        self.calls.append(args)
        verb, unit = args[0], args[-1]
        if verb == "is-active":
            return unit in self.active
        remaining = self.failures.get((verb, unit), 0)
        if remaining:
            if remaining > 0:
                self.failures[(verb, unit)] = remaining - 1
            return False
        if verb in ("start", "restart"):
            self.active.add(unit)
        elif verb == "stop":
            self.active.discard(unit)
        return True

    def list_units(self, pattern: str) -> List[str]:
        return [u for u in sorted(self.active) if fnmatch.fnmatch(u, pattern)]

    def system_state(self) -> str:
        return "running"

    def verbs(self, verb: str) -> List[str]:
        return [c[-1] for c in self.calls if c[0] == verb]


class FakePsql(Psql):
    """Answers queries by substring match; an Exception value makes that query fail."""

    def __init__(self, responses: Optional[Dict[str, object]] = None, versions: Optional[List[str]] = None):
        super().__init__()
        self.responses = dict(responses or {})
        self.versions = list(versions or [])
        self.queries: List[Tuple[str, Optional[str]]] = []
        self.failing_databases: set = set()

    def available(self) -> bool:
        return True

    def query(self, sql: str, *, database: Optional[str] = None) -> str:
        self.queries.append((sql, database))
        if database in self.failing_databases:
            raise PsqlError(f"database {database} unavailable")
        for needle, value in self.responses.items():
            if needle in sql:
                if isinstance(value, Exception):
                    raise value
                return str(value)
        raise PsqlError(f"no canned response for {sql!r}")

    def cluster_versions(self) -> List[str]:
        return list(self.versions)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_config(tmp_path: Path, **overrides: str) -> ServerConfig:
    state = tmp_path / "state"
    values = {
        "PG_STATE_DIR": str(state),
        "PG_CONF_ROOT": str(tmp_path / "etc" / "postgresql"),
        "PGB_CONF_PATH": str(tmp_path / "etc" / "pgbouncer" / "pgbouncer.ini"),
        "PGB_USERLIST_PATH": str(tmp_path / "etc" / "pgbouncer" / "userlist.txt"),
        "PG_USER_MONITOR_STATE_FILE": str(state / "user_monitor_state.json"),
        "DISASTER_RECOVERY_STATE_FILE": str(state / "disaster_recovery_state.json"),
        "PG_USER_MONITOR_LOG_PATH": str(tmp_path / "log" / "pg-user-monitor.log"),
        "DISASTER_RECOVERY_LOG_PATH": str(tmp_path / "log" / "disaster-recovery.log"),
    }
    values.update(overrides)
    return load_server_config(str(tmp_path / "no-conf"), environ={}, overrides=values)


@pytest.fixture
def config(tmp_path: Path) -> ServerConfig:
    return make_config(tmp_path)


@pytest.fixture
def systemd(tmp_path: Path) -> FakeSystemd:
    return FakeSystemd(tmp_path / "units")


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def small_hw() -> HardwareSpecs:
    return HardwareSpecs(cpu_cores=2, total_memory_mb=4096, disk_size_gb=50, timestamp="2026-01-01 00:00:00")
