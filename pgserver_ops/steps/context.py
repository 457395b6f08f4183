from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..hwchange import HardwareChangeDetector
from ..lib.hwdetect import HardwareSpecs
from ..lib.psql import Psql
from ..lib.systemd import Systemd
from ..optimizer import Optimizer
from ..recovery import DisasterRecovery
from ..server_config import ServerConfig
from ..user_monitor import UserMonitor


@dataclass
class StepContext:
    """Collaborators shared by every init step."""

    config: ServerConfig
    psql: Psql
    systemd: Systemd
    optimizer: Optimizer
    dry_run: bool = False

    @classmethod
    def build(cls, config: ServerConfig, *, dry_run: bool = False) -> "StepContext":
        psql = Psql(dry_run=dry_run)
        systemd = Systemd(dry_run=dry_run)
        optimizer = Optimizer(config, psql=psql, systemd=systemd, dry_run=dry_run)
        return cls(config=config, psql=psql, systemd=systemd, optimizer=optimizer, dry_run=dry_run)

    def detector(self) -> HardwareChangeDetector:
        return HardwareChangeDetector(self.config, self.optimizer, systemd=self.systemd, dry_run=self.dry_run)

    def user_monitor(self) -> UserMonitor:
        return UserMonitor(self.config, psql=self.psql, systemd=self.systemd, dry_run=self.dry_run)

    def recovery(self) -> DisasterRecovery:
        return DisasterRecovery(self.config, psql=self.psql, systemd=self.systemd, dry_run=self.dry_run)


def hardware_from_state(state: Dict[str, Any]) -> Optional[HardwareSpecs]:
    hw = state.get("hardware") or {}
    if not hw.get("cpu_cores"):
        return None
    return HardwareSpecs(**hw)
