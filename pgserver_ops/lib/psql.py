from __future__ import annotations

import logging
import shlex
from typing import Optional

from .command import run_cmd, which

logger = logging.getLogger(__name__)


class PsqlError(RuntimeError):
    pass


class Psql:
    """Run SQL through the psql CLI as the postgres OS user (peer auth, no password)."""

    def __init__(self, *, os_user: str = "postgres", dry_run: bool = False) -> None:
        self.os_user = os_user
        self.dry_run = dry_run

    def available(self) -> bool:
        return which("psql") is not None

    def _argv(self, sql: str, database: Optional[str]) -> list[str]:
        cmd = "psql -X -t -A -v ON_ERROR_STOP=1"
        if database:
            cmd += f" -d {shlex.quote(database)}"
        cmd += f" -c {shlex.quote(sql)}"
        return ["su", "-", self.os_user, "-c", cmd]

    def query(self, sql: str, *, database: Optional[str] = None) -> str:
        """Return the unaligned, tuples-only output of `sql` (stripped)."""

        r = run_cmd(self._argv(sql, database), check=False, dry_run=self.dry_run)
        if r.returncode != 0:
            raise PsqlError(f"psql failed ({r.returncode}): {r.stderr.strip()}")
        return r.stdout.strip()

    def try_query(self, sql: str, *, database: Optional[str] = None) -> Optional[str]:
        try:
            return self.query(sql, database=database)
        except PsqlError as e:
            logger.debug("Query failed: %s", e)
            return None

    def show(self, setting: str) -> Optional[str]:
        out = self.try_query(f"SHOW {setting};")
        return out or None

    def ping(self, *, database: Optional[str] = None) -> bool:
        return self.try_query("SELECT 1;", database=database) is not None

    def cluster_versions(self) -> list[str]:
        """PostgreSQL versions known to pg_lsclusters (Debian/Ubuntu layout)."""

        r = run_cmd(["pg_lsclusters", "--no-header"], check=False, dry_run=self.dry_run)
        versions: list[str] = []
        for line in r.stdout.splitlines():
            parts = line.split()
            if parts and parts[0] not in versions:
                versions.append(parts[0])
        return versions
