from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .lib.env import cli_invocation
from .lib.files import backup_file, set_owner, write_text
from .lib.psql import Psql, PsqlError
from .lib.systemd import Systemd, render_service_unit
from .server_config import ServerConfig

logger = logging.getLogger(__name__)

USERS_SQL = """
SELECT json_agg(json_build_object(
  'username', rolname,
  'password_hash', COALESCE(rolpassword, ''),
  'can_login', rolcanlogin,
  'valid_until', COALESCE(rolvaliduntil::text, '')
) ORDER BY rolname)
FROM pg_authid
WHERE rolname NOT LIKE 'pg_%' AND rolname != 'postgres_exporter';
""".strip()

USERLIST_HEADER = (
    "# pgbouncer userlist.txt - Auto-generated by pg_user_monitor\n"
    "# Do not edit manually - changes will be overwritten\n"
    "\n"
)

# Auth types whose userlist entries carry the hash stored by PostgreSQL.
HASHED_AUTH_TYPES = ("scram-sha-256", "md5")


@dataclass(frozen=True)
class PgUser:
    username: str
    password_hash: str = ""
    can_login: bool = False
    valid_until: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PgUser":
        return cls(
            username=str(data["username"]),
            password_hash=str(data.get("password_hash") or ""),
            can_login=bool(data.get("can_login")),
            valid_until=str(data.get("valid_until") or ""),
        )


@dataclass
class UserChanges:
    added: List[PgUser] = field(default_factory=list)
    modified: List[PgUser] = field(default_factory=list)
    deleted: List[PgUser] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.added or self.modified or self.deleted)


def fetch_users(psql: Psql) -> List[PgUser]:
    out = psql.query(USERS_SQL)
    data = json.loads(out) if out else None
    if data is None:
        return []
    return [PgUser.from_dict(d) for d in data]


def diff_users(old: List[PgUser], new: List[PgUser]) -> UserChanges:
    old_by_name = {u.username: u for u in old}
    new_by_name = {u.username: u for u in new}
    changes = UserChanges()
    for name, user in new_by_name.items():
        prev = old_by_name.get(name)
        if prev is None:
            changes.added.append(user)
        elif prev != user:
            changes.modified.append(user)
    for name, user in old_by_name.items():
        if name not in new_by_name:
            changes.deleted.append(user)
    return changes


def parse_userlist(text: str) -> Dict[str, str]:
    entries: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(" ", 1)
        if len(parts) == 2:
            entries[parts[0].strip('"')] = parts[1].strip().strip('"')
    return entries


def render_userlist(entries: Dict[str, str]) -> str:
    body = "".join(f'"{name}" "{secret}"\n' for name, secret in sorted(entries.items()))
    return USERLIST_HEADER + body


def apply_changes(entries: Dict[str, str], changes: UserChanges, auth_type: str) -> bool:
    """Mutate `entries` in place; returns True when anything changed."""

    updated = False
    for user in changes.deleted:
        if entries.pop(user.username, None) is not None:
            updated = True
            logger.info("Removed user: %s", user.username)

    for user in changes.added + changes.modified:
        if not user.can_login:
            if entries.pop(user.username, None) is not None:
                updated = True
                logger.info("Removed non-login user: %s", user.username)
            continue
        if not user.password_hash:
            continue
        if auth_type not in HASHED_AUTH_TYPES:
            # plain auth needs the cleartext password, which PostgreSQL never exposes
            continue
        entries[user.username] = user.password_hash
        updated = True
        logger.info("%s user: %s", "Added" if user in changes.added else "Updated", user.username)
    return updated


class UserMonitor:
    """Keep pgbouncer's userlist.txt in step with the roles in pg_authid."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        psql: Optional[Psql] = None,
        systemd: Optional[Systemd] = None,
        dry_run: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.dry_run = dry_run
        self.psql = psql or Psql(dry_run=dry_run)
        self.systemd = systemd or Systemd(dry_run=dry_run)
        self.clock = clock

    def load_state(self) -> List[PgUser]:
        path = self.config.user_monitor_state_file
        if not path.is_file():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            logger.warning("User monitor state %s is unreadable, starting fresh: %s", path, e)
            return []
        if data is None:
            return []
        if not isinstance(data, list) or not all(isinstance(d, dict) and d.get("username") for d in data):
            logger.warning("User monitor state %s is not a list of user records, starting fresh", path)
            return []
        return [PgUser.from_dict(d) for d in data]

    def save_state(self, users: List[PgUser]) -> None:
        path = self.config.user_monitor_state_file
        write_text(path, json.dumps([asdict(u) for u in users], indent=2) + "\n", dry_run=self.dry_run)
        set_owner(path, dry_run=self.dry_run)

    def update_userlist(self, changes: UserChanges) -> bool:
        path = self.config.pgb_userlist_path
        current = path.read_text(encoding="utf-8") if path.is_file() else ""
        entries = parse_userlist(current)
        if not apply_changes(entries, changes, self.config.pgb_auth_type):
            return False

        backup_file(path, str(int(self.clock())), dry_run=self.dry_run)
        write_text(path, render_userlist(entries), mode=0o640, dry_run=self.dry_run)
        set_owner(path, dry_run=self.dry_run)
        logger.info("pgbouncer userlist updated successfully")
        return True

    def reload_pgbouncer(self) -> bool:
        logger.info("Reloading pgbouncer to apply userlist changes...")
        if self.systemd.reload("pgbouncer"):
            logger.info("pgbouncer reloaded successfully")
            return True
        logger.warning("pgbouncer reload failed, attempting restart...")
        if self.systemd.restart("pgbouncer"):
            logger.info("pgbouncer restarted successfully")
            return True
        logger.error("Failed to reload/restart pgbouncer")
        return False

    def sync_once(self) -> bool:
        """One monitor pass; returns True when the userlist was rewritten."""

        current = fetch_users(self.psql)
        changes = diff_users(self.load_state(), current)
        updated = False
        if changes:
            logger.info(
                "User changes detected (%d added, %d modified, %d deleted), updating pgbouncer userlist...",
                len(changes.added),
                len(changes.modified),
                len(changes.deleted),
            )
            updated = self.update_userlist(changes)
            if updated:
                self.reload_pgbouncer()
        self.save_state(current)
        return updated

    def initial_sync(self) -> bool:
        logger.info("Performing initial pgbouncer userlist synchronization...")
        users = fetch_users(self.psql)
        changes = UserChanges(added=[u for u in users if u.can_login and u.password_hash])
        updated = self.update_userlist(changes)
        self.save_state(users)
        if updated:
            logger.info("Initial pgbouncer userlist created successfully")
            self.reload_pgbouncer()
        return updated

    def run_forever(
        self,
        interval: Optional[int] = None,
        *,
        iterations: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        interval = interval or self.config.user_monitor_interval
        logger.info("Starting PostgreSQL user monitor loop (interval: %ss)", interval)
        n = 0
        while iterations is None or n < iterations:
            try:
                self.sync_once()
            except (PsqlError, OSError, ValueError) as e:
                logger.error("User monitor pass failed: %s", e)
            n += 1
            if iterations is None or n < iterations:
                sleep(interval)

    def install_service(self) -> None:
        name = self.config.user_monitor_service
        cfg = self.config
        self.systemd.install_unit(
            f"{name}.service",
            render_service_unit(
                description="PostgreSQL User Monitor for pgbouncer",
                exec_start=cli_invocation("user-monitor", "daemon", global_args=cfg.cli_globals),
                service_type="simple",
                after="postgresql.service pgbouncer.service",
                extra_unit="Requires=postgresql.service\nWants=pgbouncer.service",
                restart="always",
                restart_sec=10,
                log_path=cfg.user_monitor_log_path,
                environment={
                    "PG_USER_MONITOR_INTERVAL": str(cfg.user_monitor_interval),
                    "PGB_USERLIST_PATH": str(cfg.pgb_userlist_path),
                    "PG_USER_MONITOR_STATE_FILE": str(cfg.user_monitor_state_file),
                    "PGB_AUTH_TYPE": cfg.pgb_auth_type,
                },
            ),
        )
        self.systemd.enable(name)
        self.systemd.stop(name)
        if not self.systemd.start(name):
            raise RuntimeError(f"Failed to start {name} service")
        logger.info("PostgreSQL user monitor service started: %s", name)

    def status(self) -> bool:
        name = self.config.user_monitor_service
        if self.systemd.is_active(name):
            logger.info("PostgreSQL user monitor service is running")
            return True
        logger.warning("PostgreSQL user monitor service is not running")
        return False

    def setup(self) -> None:
        if not self.config.user_monitor_enabled:
            logger.info("PostgreSQL user monitor is disabled (PG_USER_MONITOR_ENABLED != true)")
            return
        if not self.systemd.is_active("postgresql"):
            raise RuntimeError("PostgreSQL service is not running")
        self.initial_sync()
        self.install_service()
        logger.info("PostgreSQL user monitor setup completed successfully")
