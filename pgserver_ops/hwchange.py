from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from .lib.command import run_cmd, which
from .lib.env import cli_invocation
from .lib.files import copy_tree, remove_tree, set_owner, write_text
from .lib.hwdetect import HardwareSpecs
from .lib.systemd import Systemd, render_service_unit, render_timer_unit
from .optimizer import TS_FORMAT, Optimizer
from .pgconf import postgres_conf_path
from .server_config import ServerConfig
from .tuning import trunc_div

logger = logging.getLogger(__name__)

DETECTOR_UNIT = "hardware-change-detector"
FULL_OPTIMIZATION_UNIT = "pg-full-optimization"
CONF_D_MARKER = "PostgreSQL conf.d present:"


def percent_change(previous: int, current: int) -> int:
    if previous <= 0:
        return 0
    return trunc_div((current - previous) * 100, previous)


@dataclass(frozen=True)
class HardwareChange:
    previous: HardwareSpecs
    current: HardwareSpecs
    threshold: int = 10

    @property
    def cpu_change(self) -> int:
        return percent_change(self.previous.cpu_cores, self.current.cpu_cores)

    @property
    def memory_change(self) -> int:
        return percent_change(self.previous.total_memory_mb, self.current.total_memory_mb)

    @property
    def disk_change(self) -> int:
        return percent_change(self.previous.disk_size_gb, self.current.disk_size_gb)

    @property
    def significant(self) -> bool:
        return any(abs(c) >= self.threshold for c in (self.cpu_change, self.memory_change, self.disk_change))

    def lines(self) -> List[str]:
        p, c = self.previous, self.current
        return [
            f"CPU Cores: {p.cpu_cores} → {c.cpu_cores} ({self.cpu_change}% change)",
            f"Memory: {p.total_memory_mb} MB → {c.total_memory_mb} MB ({self.memory_change}% change)",
            f"Disk Size: {p.disk_size_gb} GB → {c.disk_size_gb} GB ({self.disk_change}% change)",
        ]


def is_production_hours(now: datetime, start: int, end: int) -> bool:
    return start <= now.hour < end


class HardwareChangeDetector:
    """Snapshot hardware, diff against the previous run, re-tune on significant drift."""

    def __init__(
        self,
        config: ServerConfig,
        optimizer: Optimizer,
        *,
        systemd: Optional[Systemd] = None,
        dry_run: bool = False,
        clock: Callable[[], datetime] = datetime.now,
        which_fn: Callable[[str], Optional[str]] = which,
    ) -> None:
        self.config = config
        self.optimizer = optimizer
        self.systemd = systemd or optimizer.systemd
        self.dry_run = dry_run
        self.clock = clock
        self.which = which_fn

    @property
    def specs_file(self) -> Path:
        return self.config.pg_state_dir / "hardware_specs.json"

    @property
    def previous_specs_file(self) -> Path:
        return self.config.pg_state_dir / "previous_hardware_specs.json"

    @property
    def changes_file(self) -> Path:
        return self.config.pg_state_dir / "hardware_changes.txt"

    @property
    def backups_root(self) -> Path:
        return self.config.pg_state_dir / "config_backups"

    def _load(self, path: Path) -> Optional[HardwareSpecs]:
        if not path.is_file():
            return None
        try:
            return HardwareSpecs.from_snapshot(json.loads(path.read_text(encoding="utf-8")))
        except (ValueError, TypeError) as e:
            logger.warning("Ignoring unreadable hardware snapshot %s: %s", path, e)
            return None

    def collect(self, hw: Optional[HardwareSpecs] = None) -> HardwareSpecs:
        logger.info("Collecting current hardware specifications...")
        hw = hw or self.optimizer.detect()
        write_text(self.specs_file, json.dumps(hw.to_snapshot(), indent=2) + "\n", mode=0o644, dry_run=self.dry_run)
        set_owner(self.specs_file, dry_run=self.dry_run)
        logger.info("Hardware specifications collected and saved to %s", self.specs_file)
        return hw

    def compare(self, previous: HardwareSpecs, current: HardwareSpecs) -> HardwareChange:
        change = HardwareChange(previous=previous, current=current, threshold=self.config.hardware_change_threshold)
        self.write_changes_report(change)

        if change.significant:
            logger.info("Significant hardware changes detected:")
            for line in change.lines():
                logger.info(line)
        else:
            logger.info("No significant hardware changes detected.")
        return change

    def write_changes_report(self, change: HardwareChange) -> Path:
        report = [f"Hardware Changes Report - {self.clock().strftime('%a %b %d %H:%M:%S %Y')}", "=" * 33]
        report += change.lines() + [""]
        write_text(self.changes_file, "\n".join(report) + "\n", mode=0o644, dry_run=self.dry_run)
        set_owner(self.changes_file, dry_run=self.dry_run)
        return self.changes_file

    def _pg_main_dir(self) -> Optional[Path]:
        try:
            return postgres_conf_path(self.config.pg_conf_root, self.optimizer.psql).parent.parent
        except FileNotFoundError:
            return None

    def backup_current_config(self) -> Path:
        logger.info("Backing up current configuration...")
        backup_dir = self.backups_root / self.clock().strftime(TS_FORMAT)
        if not self.dry_run:
            backup_dir.mkdir(parents=True, exist_ok=True)

        info = [f"Backup created on {self.clock().strftime('%a %b %d %H:%M:%S %Y')}"]
        main_dir = self._pg_main_dir()
        if main_dir is not None and main_dir.is_dir():
            logger.info("Backing up PostgreSQL configuration...")
            for name in ("postgresql.conf", "pg_hba.conf"):
                src = main_dir / name
                if src.is_file() and not self.dry_run:
                    shutil.copy2(src, backup_dir / name)
            has_conf_d = (main_dir / "conf.d").is_dir()
            if has_conf_d:
                copy_tree(main_dir / "conf.d", backup_dir / "conf.d", dry_run=self.dry_run)
            info.append(f"{CONF_D_MARKER} {'yes' if has_conf_d else 'no'}")

        pgb = self.config.pgb_conf_path
        if pgb.is_file() and not self.dry_run:
            logger.info("Backing up pgbouncer configuration...")
            shutil.copy2(pgb, backup_dir / pgb.name)

        specs = self.specs_file.read_text(encoding="utf-8") if self.specs_file.is_file() else "{}\n"
        info += ["Hardware specs at backup time:", specs]
        write_text(backup_dir / "backup_info.txt", "\n".join(info), dry_run=self.dry_run)
        set_owner(backup_dir, dry_run=self.dry_run)
        logger.info("Configuration backup completed: %s", backup_dir)
        return backup_dir

    def latest_backup(self) -> Optional[Path]:
        if not self.backups_root.is_dir():
            return None
        dirs = sorted((p for p in self.backups_root.iterdir() if p.is_dir()), key=lambda p: p.name)
        return dirs[-1] if dirs else None

    @staticmethod
    def _conf_d_recorded(backup: Path) -> Optional[bool]:
        info = backup / "backup_info.txt"
        if not info.is_file():
            return None
        for line in info.read_text(encoding="utf-8").splitlines():
            if line.startswith(CONF_D_MARKER):
                return line[len(CONF_D_MARKER):].strip() == "yes"
        return None

    def _restore_postgres(self, backup: Path, main_dir: Path) -> bool:
        restored = False
        for name in ("postgresql.conf", "pg_hba.conf"):
            if (backup / name).is_file():
                if not self.dry_run:
                    shutil.copy2(backup / name, main_dir / name)
                restored = True

        # conf.d must match the backup exactly, including files created since
        live_conf_d = main_dir / "conf.d"
        if (backup / "conf.d").is_dir():
            remove_tree(live_conf_d, dry_run=self.dry_run)
            copy_tree(backup / "conf.d", live_conf_d, dry_run=self.dry_run)
            restored = True
        elif self._conf_d_recorded(backup) is False:
            remove_tree(live_conf_d, dry_run=self.dry_run)
            restored = True
        return restored

    def restore_previous_config(self) -> Path:
        latest = self.latest_backup()
        if latest is None:
            raise FileNotFoundError("No backup found to restore from.")
        logger.info("Restoring from backup: %s", latest)

        main_dir = self._pg_main_dir()
        if main_dir is not None and main_dir.is_dir():
            logger.info("Restoring PostgreSQL configuration...")
            if self._restore_postgres(latest, main_dir):
                self.systemd.reload("postgresql")

        pgb_backup = latest / self.config.pgb_conf_path.name
        if pgb_backup.is_file():
            logger.info("Restoring pgbouncer configuration...")
            if not self.dry_run:
                shutil.copy2(pgb_backup, self.config.pgb_conf_path)
            self.systemd.restart("pgbouncer")

        logger.info("Previous configuration restored successfully.")
        return latest

    def trigger_reconfiguration(self) -> Path:
        logger.info("Triggering reconfiguration due to hardware changes...")
        self.backup_current_config()
        try:
            report = self.optimizer.run()
        except Exception:
            logger.exception("Dynamic optimization failed, restoring previous configuration...")
            self.restore_previous_config()
            raise
        logger.info("Dynamic optimization completed successfully.")
        return report

    def schedule_full_optimization(self) -> str:
        command = cli_invocation("optimize", "--full", global_args=self.config.cli_globals)
        if self.which("at") is not None:
            run_cmd(["at", "01:00"], input_text=command + "\n", dry_run=self.dry_run)
            logger.info("Full optimization scheduled for 1:00 AM.")
            return "at"

        logger.info("The 'at' command is not available. Setting up systemd timer instead.")
        self.systemd.install_unit(
            f"{FULL_OPTIMIZATION_UNIT}.service",
            render_service_unit(description="PostgreSQL Full Optimization Service", exec_start=command),
        )
        self.systemd.install_unit(
            f"{FULL_OPTIMIZATION_UNIT}.timer",
            render_timer_unit(
                description="Run PostgreSQL Full Optimization at 1 AM",
                on_calendar="*-*-* 01:00:00",
                persistent=False,
            ),
        )
        self.systemd.enable(f"{FULL_OPTIMIZATION_UNIT}.timer")
        self.systemd.start(f"{FULL_OPTIMIZATION_UNIT}.timer")
        logger.info("Systemd timer set up for full optimization at 1:00 AM.")
        return "systemd"

    def perform_phased_optimization(self) -> str:
        logger.info("Performing phased optimization during production hours...")
        self.backup_current_config()
        logger.info("Phase 1: Applying minimal non-restart changes...")
        self.optimizer.run(minimal=True)
        logger.info("Phase 2: Scheduling full optimization for non-production hours...")
        return self.schedule_full_optimization()

    def install_timer(self) -> None:
        logger.info("Installing hardware change detector service...")
        self.systemd.install_unit(
            f"{DETECTOR_UNIT}.service",
            render_service_unit(
                description="Hardware Change Detector for PostgreSQL",
                exec_start=cli_invocation("hardware", "check", global_args=self.config.cli_globals),
            ),
        )
        self.systemd.install_unit(
            f"{DETECTOR_UNIT}.timer",
            render_timer_unit(description="Run Hardware Change Detector Daily", on_calendar="daily", persistent=True),
        )
        self.systemd.enable(f"{DETECTOR_UNIT}.timer")
        self.systemd.start(f"{DETECTOR_UNIT}.timer")
        logger.info("Hardware change detector service installed successfully.")

    def check(self, hw: Optional[HardwareSpecs] = None) -> Optional[str]:
        """One detector pass. Returns the action taken: None, "full" or "phased"."""

        if self.specs_file.is_file() and not self.dry_run:
            shutil.copy2(self.specs_file, self.previous_specs_file)

        current = self.collect(hw)
        previous = self._load(self.previous_specs_file)
        if previous is None:
            logger.info("No previous hardware specifications found. This might be the first run.")
            return None

        change = self.compare(previous, current)
        if not change.significant:
            logger.info("No significant hardware changes detected, no action needed.")
            return None

        start, end = self.config.production_hours
        if is_production_hours(self.clock(), start, end):
            logger.info("Currently in production hours, using phased approach...")
            self.perform_phased_optimization()
            return "phased"

        logger.info("Outside production hours, performing full optimization...")
        self.trigger_reconfiguration()
        return "full"
