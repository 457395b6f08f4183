from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .lib.command import which
from .lib.files import backup_file, set_owner, write_text
from .lib.hwdetect import HardwareSpecs, detect_hardware
from .lib.psql import Psql
from .lib.systemd import Systemd
from .pgconf import postgres_conf_path, render_postgres_conf, render_report, rewrite_pgbouncer_ini
from .server_config import ServerConfig
from .tuning import compute_pgbouncer_tuning, compute_postgres_tuning

logger = logging.getLogger(__name__)

TS_FORMAT = "%Y%m%d%H%M%S"


class OptimizationError(RuntimeError):
    pass


class Optimizer:
    """Compute tuning from detected hardware and apply it to PostgreSQL and pgbouncer."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        psql: Optional[Psql] = None,
        systemd: Optional[Systemd] = None,
        dry_run: bool = False,
        clock: Callable[[], datetime] = datetime.now,
        which_fn: Callable[[str], Optional[str]] = which,
    ) -> None:
        self.config = config
        self.dry_run = dry_run
        self.psql = psql or Psql(dry_run=dry_run)
        self.systemd = systemd or Systemd(dry_run=dry_run)
        self.clock = clock
        self.which = which_fn

    def detect(self) -> HardwareSpecs:
        return detect_hardware(
            self.psql,
            now=self.clock(),
            pg_lib_root=str(self.config.pg_state_dir),
            pg_conf_root=self.config.pg_conf_root,
        )

    def _live_max_connections(self) -> Optional[int]:
        value = self.psql.show("max_connections")
        if value and value.strip().isdigit():
            return int(value.strip())
        logger.warning("Could not get max_connections from PostgreSQL, calculating based on hardware...")
        return None

    def optimize_postgresql(self, hw: HardwareSpecs, *, minimal: bool = False) -> Path:
        tuning = compute_postgres_tuning(hw)
        now = self.clock()
        conf_path = postgres_conf_path(self.config.pg_conf_root, self.psql)

        logger.info("Writing optimized PostgreSQL configuration to %s", conf_path)
        backup_file(conf_path, now.strftime(TS_FORMAT), dry_run=self.dry_run)
        write_text(conf_path, render_postgres_conf(hw, tuning, now), mode=0o644, dry_run=self.dry_run)
        logger.info("PostgreSQL configuration optimized successfully")

        if minimal:
            logger.info("Running in minimal mode, skipping PostgreSQL reload")
        elif self.systemd.is_active("postgresql"):
            logger.info("Reloading PostgreSQL configuration...")
            if not self.systemd.reload("postgresql"):
                raise OptimizationError("PostgreSQL reload failed")
        else:
            logger.warning("PostgreSQL service is not running, skipping reload")
        return conf_path

    def optimize_pgbouncer(self, hw: HardwareSpecs, *, minimal: bool = False) -> Path:
        conf_path = self.config.pgb_conf_path
        if not conf_path.is_file():
            raise OptimizationError(f"pgbouncer configuration file not found: {conf_path}")

        tuning = compute_pgbouncer_tuning(hw, self._live_max_connections())
        now = self.clock()

        backup_file(conf_path, now.strftime(TS_FORMAT), dry_run=self.dry_run)
        new_text = rewrite_pgbouncer_ini(conf_path.read_text(encoding="utf-8"), hw, tuning, now)
        write_text(conf_path, new_text, mode=0o640, dry_run=self.dry_run)
        set_owner(conf_path, dry_run=self.dry_run)
        logger.info("pgbouncer configuration optimized successfully")

        if minimal:
            logger.info("Running in minimal mode, skipping pgbouncer restart")
        elif self.systemd.is_active("pgbouncer"):
            logger.info("Restarting pgbouncer to apply configuration...")
            if not self.systemd.restart("pgbouncer"):
                raise OptimizationError("pgbouncer restart failed")
        else:
            logger.warning("pgbouncer service is not running, skipping restart")
        return conf_path

    def generate_report(self, hw: HardwareSpecs) -> Path:
        now = self.clock()
        pg = compute_postgres_tuning(hw)
        pgb = compute_pgbouncer_tuning(hw, pg.max_connections)

        report_dir = self.config.pg_state_dir / "optimization_reports"
        report_file = report_dir / f"optimization_report_{now.strftime(TS_FORMAT)}.txt"
        write_text(report_file, render_report(hw, pg, pgb, now), mode=0o644, dry_run=self.dry_run)
        set_owner(report_file, dry_run=self.dry_run)
        logger.info("Optimization report generated: %s", report_file)
        return report_file

    def run(self, *, minimal: bool = False, hw: Optional[HardwareSpecs] = None) -> Path:
        """Optimize PostgreSQL, then pgbouncer if installed; returns the report path."""

        logger.info("Starting dynamic optimization of PostgreSQL and pgbouncer...")
        if minimal:
            logger.info("Running in minimal mode: will only apply changes that don't require a restart")

        if self.which("psql") is None:
            raise OptimizationError("PostgreSQL is not installed, aborting optimization")

        hw = hw or self.detect()
        self.optimize_postgresql(hw, minimal=minimal)

        if self.which("pgbouncer") is not None:
            self.optimize_pgbouncer(hw, minimal=minimal)
        else:
            logger.warning("pgbouncer is not installed, skipping pgbouncer optimization")

        report = self.generate_report(hw)
        logger.info("Dynamic optimization completed successfully")
        return report
