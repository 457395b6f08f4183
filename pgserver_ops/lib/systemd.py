from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from .command import run_cmd
from .files import write_text

logger = logging.getLogger(__name__)

UNIT_DIR = "/etc/systemd/system"


class Systemd:
    """Thin systemctl wrapper. Every call is a single command; no retries here."""

    def __init__(self, *, unit_dir: str = UNIT_DIR, dry_run: bool = False) -> None:
        self.unit_dir = unit_dir
        self.dry_run = dry_run

    def _ctl(self, *args: str) -> bool:
        r = run_cmd(["systemctl", *args], check=False, dry_run=self.dry_run)
        return r.returncode == 0

    def is_active(self, unit: str) -> bool:
        return self._ctl("is-active", "--quiet", unit)

    def start(self, unit: str) -> bool:
        return self._ctl("start", unit)

    def stop(self, unit: str) -> bool:
        return self._ctl("stop", unit)

    def restart(self, unit: str) -> bool:
        return self._ctl("restart", unit)

    def reload(self, unit: str) -> bool:
        return self._ctl("reload", unit)

    def enable(self, unit: str) -> bool:
        return self._ctl("enable", unit)

    def daemon_reload(self) -> bool:
        return self._ctl("daemon-reload")

    def list_units(self, pattern: str) -> List[str]:
        r = run_cmd(
            ["systemctl", "list-units", "--type=service", "--no-legend", "--plain", pattern],
            check=False,
            dry_run=self.dry_run,
        )
        units: List[str] = []
        for line in r.stdout.splitlines():
            parts = line.split()
            if parts:
                units.append(parts[0])
        return units

    def system_state(self) -> str:
        r = run_cmd(["systemctl", "is-system-running"], check=False, dry_run=self.dry_run)
        return r.stdout.strip() or "unknown"

    def install_unit(self, name: str, contents: str) -> Path:
        """Write a unit file (mode 644) and reload the manager."""
        path = Path(self.unit_dir) / name
        write_text(path, contents, mode=0o644, dry_run=self.dry_run)
        self.daemon_reload()
        logger.info("Installed unit %s", path)
        return path


def render_service_unit(
    *,
    description: str,
    exec_start: str,
    service_type: str = "oneshot",
    after: str = "postgresql.service",
    extra_unit: str = "",
    restart: str | None = None,
    restart_sec: int | None = None,
    log_path: str | None = None,
    environment: dict[str, str] | None = None,
) -> str:
    lines = ["[Unit]", f"Description={description}", f"After={after}"]
    if extra_unit:
        lines.append(extra_unit)
    lines += ["", "[Service]", f"Type={service_type}", "User=root", f"ExecStart={exec_start}"]
    if restart:
        lines.append(f"Restart={restart}")
    if restart_sec is not None:
        lines.append(f"RestartSec={restart_sec}")
    if log_path:
        lines.append(f"StandardOutput=append:{log_path}")
        lines.append(f"StandardError=append:{log_path}")
    for k, v in (environment or {}).items():
        lines.append(f"Environment={k}={v}")
    lines += ["", "[Install]", "WantedBy=multi-user.target", ""]
    return "\n".join(lines)


def render_timer_unit(*, description: str, on_calendar: str, persistent: bool) -> str:
    return "\n".join(
        [
            "[Unit]",
            f"Description={description}",
            "",
            "[Timer]",
            f"OnCalendar={on_calendar}",
            f"Persistent={'true' if persistent else 'false'}",
            "",
            "[Install]",
            "WantedBy=timers.target",
            "",
        ]
    )
