from __future__ import annotations

import json
import logging
import os
import shutil
import socket
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from .lib.env import cli_invocation
from .lib.files import set_owner, write_text
from .lib.mail import send_mail
from .lib.psql import Psql
from .lib.systemd import Systemd, render_service_unit
from .server_config import ServerConfig

logger = logging.getLogger(__name__)

CRITICAL_SERVICES = ["postgresql", "pgbouncer", "nginx", "netdata", "pg-user-monitor"]

SERVICE_DEPENDENCIES: Dict[str, List[str]] = {
    "pgbouncer": ["postgresql"],
    "pg-user-monitor": ["postgresql", "pgbouncer"],
    "nginx": ["postgresql", "pgbouncer"],
    "netdata": ["postgresql"],
}

MAX_ATTEMPTS = 3
SETTLE_SECONDS = 10
RETRY_SECONDS = 15
DEPENDENCY_SECONDS = 5
READY_TIMEOUT_SECONDS = 60
READY_POLL_SECONDS = 2
RECOVERY_WAIT_SECONDS = 30
MAX_EVENTS = 100

DISK_THRESHOLD_PCT = 90
MEMORY_THRESHOLD_PCT = 95


class RecoveryEventLog:
    """Append-only event journal capped at the newest MAX_EVENTS entries."""

    def __init__(self, path: Path, *, clock: Callable[[], datetime] = datetime.now, dry_run: bool = False) -> None:
        self.path = path
        self.clock = clock
        self.dry_run = dry_run

    def load(self) -> Dict[str, Any]:
        if not self.path.is_file():
            return {"recovery_events": []}
        try:
            state = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError:
            logger.warning("Recovery state %s is corrupt, starting a new one", self.path)
            return {"recovery_events": []}
        if not isinstance(state, dict):
            return {"recovery_events": []}
        state.setdefault("recovery_events", [])
        return state

    def events(self) -> List[Dict[str, str]]:
        return list(self.load()["recovery_events"])

    def record(self, event_type: str, service: str, details: str) -> Dict[str, str]:
        logger.info("[%s] %s: %s", event_type, service, details)
        event = {
            "timestamp": self.clock().strftime("%Y-%m-%d %H:%M:%S"),
            "event_type": event_type,
            "service": service,
            "details": details,
        }
        state = self.load()
        state["recovery_events"] = (state["recovery_events"] + [event])[-MAX_EVENTS:]
        try:
            write_text(self.path, json.dumps(state, indent=2) + "\n", dry_run=self.dry_run)
        except OSError as e:
            logger.warning("Could not persist recovery event to %s: %s", self.path, e)
        return event


class Notifier:
    def __init__(
        self,
        *,
        enabled: bool,
        recipient: str,
        sender: str = "",
        systemd: Optional[Systemd] = None,
        clock: Callable[[], datetime] = datetime.now,
        mailer: Callable[..., bool] = send_mail,
        dry_run: bool = False,
    ) -> None:
        self.enabled = enabled
        self.recipient = recipient
        self.sender = sender
        self.systemd = systemd
        self.clock = clock
        self.mailer = mailer
        self.dry_run = dry_run

    def notify(self, event_type: str, service: str, details: str) -> bool:
        if not self.enabled or not self.recipient:
            return False
        system_state = self.systemd.system_state() if self.systemd is not None else "unknown"
        body = "\n".join(
            [
                "Disaster Recovery Event",
                "",
                f"Event Type: {event_type}",
                f"Service: {service}",
                f"Time: {self.clock().strftime('%Y-%m-%d %H:%M:%S')}",
                f"Details: {details}",
                "",
                f"Server: {socket.gethostname()}",
                f"System Status: {system_state}",
                "",
                "This is an automated notification from the disaster recovery system.",
            ]
        )
        return self.mailer(
            self.recipient,
            f"[DBHub] [RECOVERY] {event_type} - {service}",
            body,
            sender=self.sender or None,
            dry_run=self.dry_run,
        )


@dataclass(frozen=True)
class ResourceUsage:
    disk_pct: int
    memory_pct: int
    load_1m: float
    cpu_count: int


def read_resource_usage(meminfo_path: str = "/proc/meminfo") -> ResourceUsage:
    disk = shutil.disk_usage("/")
    disk_pct = int(round(disk.used * 100 / (disk.used + disk.free))) if disk.used + disk.free else 0

    mem: Dict[str, int] = {}
    try:
        for line in Path(meminfo_path).read_text(encoding="utf-8").splitlines():
            key, _, rest = line.partition(":")
            parts = rest.split()
            if parts and parts[0].isdigit():
                mem[key] = int(parts[0])
    except OSError:
        pass
    total = mem.get("MemTotal", 0)
    available = mem.get("MemAvailable", mem.get("MemFree", 0))
    memory_pct = int(round((total - available) * 100 / total)) if total else 0

    try:
        load_1m = os.getloadavg()[0]
    except OSError:
        load_1m = 0.0
    return ResourceUsage(disk_pct=disk_pct, memory_pct=memory_pct, load_1m=load_1m, cpu_count=os.cpu_count() or 1)


@dataclass(frozen=True)
class RecoverySummary:
    recovered: int
    failed: int

    @property
    def ok(self) -> bool:
        return self.failed == 0


class DisasterRecovery:
    """Watch the critical services and PostgreSQL, restart what is down."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        psql: Optional[Psql] = None,
        systemd: Optional[Systemd] = None,
        events: Optional[RecoveryEventLog] = None,
        notifier: Optional[Notifier] = None,
        sleep: Callable[[float], None] = time.sleep,
        resources: Callable[[], ResourceUsage] = read_resource_usage,
        pg_lib_root: str = "/var/lib/postgresql",
        dry_run: bool = False,
    ) -> None:
        self.config = config
        self.dry_run = dry_run
        self.psql = psql or Psql(dry_run=dry_run)
        self.systemd = systemd or Systemd(dry_run=dry_run)
        self.events = events or RecoveryEventLog(config.recovery_state_file, dry_run=dry_run)
        self.notifier = notifier or Notifier(
            enabled=config.recovery_email_enabled,
            recipient=config.recovery_email_recipient,
            sender=config.recovery_email_sender,
            systemd=self.systemd,
            dry_run=dry_run,
        )
        self.sleep = sleep
        self.resources = resources
        self.pg_lib_root = pg_lib_root

    def _event(self, event_type: str, service: str, details: str, notify: Optional[str] = None) -> None:
        self.events.record(event_type, service, details)
        if notify is not None:
            self.notifier.notify(event_type, service, notify)

    def is_service_running(self, service: str) -> bool:
        if self.systemd.is_active(service):
            return True
        if service == "postgresql":
            return any(self.systemd.is_active(u) for u in self.systemd.list_units("postgresql@*"))
        return False

    def _attempt(self, service: str, action: Callable[[str], bool], verb: str) -> int:
        """Run `action` until the service is up; returns the winning attempt, 0 on failure."""

        for attempt in range(1, MAX_ATTEMPTS + 1):
            logger.info("Attempting to %s %s (attempt %d/%d)", verb, service, attempt, MAX_ATTEMPTS)
            if action(service):
                self.sleep(SETTLE_SECONDS)
                if self.is_service_running(service):
                    return attempt
                logger.warning("Service %s did %s but is not running properly", service, verb)
            else:
                logger.warning("Failed to %s service %s on attempt %d", verb, service, attempt)
            if attempt < MAX_ATTEMPTS:
                self.sleep(RETRY_SECONDS)
        return 0

    def start_service_with_dependencies(self, service: str, _visiting: Optional[Set[str]] = None) -> bool:
        visiting = set(_visiting or ()) | {service}
        logger.info("Starting service: %s", service)

        for dep in SERVICE_DEPENDENCIES.get(service, []):
            if dep in visiting:
                logger.warning("Dependency cycle %s -> %s ignored", service, dep)
                continue
            if not self.is_service_running(dep):
                logger.info("Starting dependency: %s", dep)
                self.start_service_with_dependencies(dep, visiting)
                self.sleep(DEPENDENCY_SECONDS)

        attempt = self._attempt(service, self.systemd.start, "start")
        if attempt:
            logger.info("Successfully started service: %s", service)
            self._event(
                "SERVICE_STARTED",
                service,
                f"Service started successfully on attempt {attempt}",
                notify="Service was successfully recovered and started",
            )
            return True

        logger.error("Failed to start service %s after %d attempts", service, MAX_ATTEMPTS)
        self._event(
            "SERVICE_START_FAILED",
            service,
            f"Failed to start after {MAX_ATTEMPTS} attempts",
            notify=f"Service failed to start after {MAX_ATTEMPTS} attempts",
        )
        return False

    def restart_service(self, service: str) -> bool:
        logger.info("Restarting service: %s", service)
        attempt = self._attempt(service, self.systemd.restart, "restart")
        if attempt:
            logger.info("Successfully restarted service: %s", service)
            self._event(
                "SERVICE_RESTARTED",
                service,
                f"Service restarted successfully on attempt {attempt}",
                notify="Service was successfully restarted",
            )
            return True

        logger.error("Failed to restart service %s after %d attempts", service, MAX_ATTEMPTS)
        self._event(
            "SERVICE_RESTART_FAILED",
            service,
            f"Failed to restart after {MAX_ATTEMPTS} attempts",
            notify=f"Service failed to restart after {MAX_ATTEMPTS} attempts",
        )
        return False

    def _wait_for_postgres(self) -> bool:
        waited = 0
        while waited < READY_TIMEOUT_SECONDS:
            if self.psql.ping():
                return True
            self.sleep(READY_POLL_SECONDS)
            waited += READY_POLL_SECONDS
        return False

    def check_database_integrity(self) -> bool:
        logger.info("Checking PostgreSQL database integrity...")
        if not self.is_service_running("postgresql"):
            logger.error("PostgreSQL is not running, cannot check database integrity")
            return False

        if not self._wait_for_postgres():
            logger.error("PostgreSQL not responding after %d seconds", READY_TIMEOUT_SECONDS)
            return False

        if self.psql.try_query("SELECT version();") is None:
            logger.error("Cannot connect to PostgreSQL database")
            self._event("DATABASE_CHECK_FAILED", "postgresql", "Cannot connect to database")
            return False

        corruption = False
        if self.psql.try_query("SELECT count(*) FROM pg_class;") is None:
            logger.error("System catalog corruption detected")
            corruption = True

        db = self.config.pg_database
        if db and db != "postgres" and not self.psql.ping(database=db):
            logger.error("User database %s appears corrupted or inaccessible", db)
            corruption = True

        if corruption:
            self._event(
                "DATABASE_CORRUPTION_DETECTED",
                "postgresql",
                "Database corruption detected during integrity check",
                notify="Database corruption detected - manual intervention may be required",
            )
            return False

        logger.info("Database integrity check passed")
        return True

    def _inspect_data_dirs(self) -> None:
        for data_dir in sorted(Path(self.pg_lib_root).glob("*/main")):
            if (data_dir / "recovery.signal").is_file() or (data_dir / "standby.signal").is_file():
                logger.info("Found recovery signals in %s", data_dir)
            wal = data_dir / "pg_wal"
            if wal.is_dir() and any(wal.iterdir()):
                logger.info("WAL files found in %s, PostgreSQL will perform automatic recovery", wal)

    def perform_database_recovery(self) -> bool:
        logger.info("Performing database recovery procedures...")
        if self.is_service_running("postgresql"):
            logger.info("Stopping PostgreSQL for recovery...")
            self.systemd.stop("postgresql")
            self.sleep(DEPENDENCY_SECONDS)

        self._inspect_data_dirs()

        logger.info("Starting PostgreSQL for automatic recovery...")
        if not self.start_service_with_dependencies("postgresql"):
            logger.error("Failed to start PostgreSQL for recovery")
            return False

        self.sleep(RECOVERY_WAIT_SECONDS)
        if self.check_database_integrity():
            logger.info("Database recovery completed successfully")
            self._event(
                "DATABASE_RECOVERY_SUCCESS",
                "postgresql",
                "Database recovery completed successfully",
                notify="Database recovery completed successfully",
            )
            return True

        logger.error("Database recovery failed integrity check")
        self._event(
            "DATABASE_RECOVERY_FAILED",
            "postgresql",
            "Database recovery failed integrity check",
            notify="Database recovery failed - manual intervention required",
        )
        return False

    def check_system_resources(self) -> bool:
        """Returns False (and notifies) when any resource is over its threshold."""

        usage = self.resources()
        issues = False
        if usage.disk_pct > DISK_THRESHOLD_PCT:
            logger.warning("Disk usage is at %d%% - critically high", usage.disk_pct)
            self._event("RESOURCE_WARNING", "system", f"Disk usage at {usage.disk_pct}%")
            issues = True
        if usage.memory_pct > MEMORY_THRESHOLD_PCT:
            logger.warning("Memory usage is at %d%% - critically high", usage.memory_pct)
            self._event("RESOURCE_WARNING", "system", f"Memory usage at {usage.memory_pct}%")
            issues = True
        load_threshold = usage.cpu_count * 2
        if usage.load_1m > load_threshold:
            logger.warning("Load average %.2f is high (threshold: %d)", usage.load_1m, load_threshold)
            self._event("RESOURCE_WARNING", "system", f"High load average: {usage.load_1m:.2f}")
            issues = True

        if issues:
            self.notifier.notify("RESOURCE_WARNING", "system", "System resources are under stress - monitoring closely")
        return not issues

    def monitor_and_recover(self) -> RecoverySummary:
        logger.info("Starting service monitoring and recovery...")
        recovered = failed = 0

        for service in CRITICAL_SERVICES:
            if self.is_service_running(service):
                logger.info("Service %s is running normally", service)
                continue
            logger.warning("Service %s is not running - attempting recovery", service)
            self._event("SERVICE_DOWN", service, "Service detected as down, starting recovery")
            if self.start_service_with_dependencies(service):
                recovered += 1
            else:
                failed += 1

        if self.is_service_running("postgresql") and not self.check_database_integrity():
            logger.warning("Database integrity issues detected - attempting recovery")
            if self.perform_database_recovery():
                recovered += 1
            else:
                failed += 1

        self.check_system_resources()

        if recovered:
            logger.info("Recovery completed: %d services recovered, %d failed", recovered, failed)
            self._event("RECOVERY_SUMMARY", "system", f"Recovered {recovered} services, {failed} failed")
        return RecoverySummary(recovered=recovered, failed=failed)

    def perform_immediate_recovery(self) -> bool:
        logger.info("Performing immediate system recovery...")
        self._event(
            "IMMEDIATE_RECOVERY_START",
            "system",
            "Manual immediate recovery initiated",
            notify="Immediate recovery procedure started",
        )
        if self.monitor_and_recover().ok:
            logger.info("Immediate recovery completed successfully")
            self._event(
                "IMMEDIATE_RECOVERY_SUCCESS",
                "system",
                "Manual immediate recovery completed successfully",
                notify="Immediate recovery completed successfully",
            )
            return True

        logger.error("Immediate recovery encountered issues")
        self._event(
            "IMMEDIATE_RECOVERY_ISSUES",
            "system",
            "Manual immediate recovery completed with issues",
            notify="Immediate recovery completed but some issues remain",
        )
        return False

    def run_forever(self, interval: Optional[int] = None, *, iterations: Optional[int] = None) -> None:
        interval = interval or self.config.recovery_interval
        logger.info("Starting disaster recovery monitoring loop (interval: %ss)", interval)
        n = 0
        while iterations is None or n < iterations:
            try:
                self.monitor_and_recover()
            except OSError as e:
                logger.error("Recovery pass failed: %s", e)
            n += 1
            if iterations is None or n < iterations:
                self.sleep(interval)

    def install_service(self) -> None:
        cfg = self.config
        name = cfg.recovery_service
        self.systemd.install_unit(
            f"{name}.service",
            render_service_unit(
                description="Disaster Recovery System for PostgreSQL Server",
                exec_start=cli_invocation("recovery", "daemon", global_args=cfg.cli_globals),
                service_type="simple",
                after="network.target",
                extra_unit="Wants=postgresql.service pgbouncer.service nginx.service netdata.service",
                restart="always",
                restart_sec=30,
                log_path=cfg.recovery_log_path,
                environment={
                    "DISASTER_RECOVERY_CHECK_INTERVAL": str(cfg.recovery_interval),
                    "DISASTER_RECOVERY_STATE_FILE": str(cfg.recovery_state_file),
                    "DISASTER_RECOVERY_EMAIL_ENABLED": "true" if cfg.recovery_email_enabled else "false",
                    "DISASTER_RECOVERY_EMAIL_RECIPIENT": cfg.recovery_email_recipient,
                    "DISASTER_RECOVERY_EMAIL_SENDER": cfg.recovery_email_sender,
                },
            ),
        )
        self.systemd.enable(name)
        self.systemd.stop(name)
        if not self.systemd.start(name):
            raise RuntimeError(f"Failed to start {name} service")
        logger.info("Disaster recovery service started: %s", name)

    def setup(self) -> None:
        if not self.config.recovery_enabled:
            logger.info("Disaster recovery is disabled (DISASTER_RECOVERY_ENABLED != true)")
            return
        state_dir = self.config.recovery_state_file.parent
        if not self.dry_run:
            state_dir.mkdir(parents=True, exist_ok=True)
        set_owner(state_dir, dry_run=self.dry_run)
        self.install_service()
        logger.info("Disaster recovery system setup completed successfully")
