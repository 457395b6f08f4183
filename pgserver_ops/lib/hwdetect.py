from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .psql import Psql

logger = logging.getLogger(__name__)

DEFAULT_CPU_CORES = 2
DEFAULT_MEMORY_MB = 4096
DEFAULT_DISK_GB = 50

# Newest first: the first existing cluster directory wins.
_PG_VERSIONS = ("16", "15", "14", "13", "12", "11", "10", "9.6")

_DATA_DIR_RE = re.compile(r"^\s*data_directory\s*=\s*'([^']*)'")


@dataclass(frozen=True)
class HardwareSpecs:
    cpu_cores: int
    total_memory_mb: int
    disk_size_gb: int
    cpu_model: str = "Unknown"
    swap_mb: int = 0
    data_directory: str = "/var/lib/postgresql"
    timestamp: str = ""

    def describe(self) -> str:
        return f"{self.cpu_cores} CPU cores, {self.total_memory_mb} MB RAM, {self.disk_size_gb} GB disk"

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "cpu": {"cores": self.cpu_cores, "model": self.cpu_model},
            "memory": {"total_mb": self.total_memory_mb, "swap_mb": self.swap_mb},
            "disk": {"data_directory": self.data_directory, "size_gb": self.disk_size_gb},
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "HardwareSpecs":
        cpu = data.get("cpu") or {}
        mem = data.get("memory") or {}
        disk = data.get("disk") or {}
        return cls(
            cpu_cores=int(cpu.get("cores") or 0),
            cpu_model=str(cpu.get("model") or "Unknown"),
            total_memory_mb=int(mem.get("total_mb") or 0),
            swap_mb=int(mem.get("swap_mb") or 0),
            data_directory=str(disk.get("data_directory") or ""),
            disk_size_gb=int(disk.get("size_gb") or 0),
            timestamp=str(data.get("timestamp") or ""),
        )

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8", errors="ignore")
    except OSError:
        return None


def _meminfo_kb(key: str, meminfo_path: str) -> int:
    txt = _read_text(Path(meminfo_path)) or ""
    for line in txt.splitlines():
        if line.startswith(f"{key}:"):
            try:
                return int(line.split()[1])
            except (IndexError, ValueError):
                return 0
    return 0


def detect_cpu_cores(cpuinfo_path: str = "/proc/cpuinfo") -> int:
    cores = os.cpu_count() or 0
    if cores < 1:
        txt = _read_text(Path(cpuinfo_path)) or ""
        cores = sum(1 for line in txt.splitlines() if line.startswith("processor"))
    if cores < 1:
        logger.warning("Could not detect CPU cores, defaulting to %d", DEFAULT_CPU_CORES)
        cores = DEFAULT_CPU_CORES
    logger.info("Detected %d CPU cores", cores)
    return cores


def detect_cpu_model(cpuinfo_path: str = "/proc/cpuinfo") -> str:
    txt = _read_text(Path(cpuinfo_path)) or ""
    for line in txt.splitlines():
        if line.startswith("model name"):
            _, _, value = line.partition(":")
            return " ".join(value.split()) or "Unknown"
    return "Unknown"


def detect_total_memory_mb(meminfo_path: str = "/proc/meminfo") -> int:
    mem_mb = _meminfo_kb("MemTotal", meminfo_path) // 1024
    if mem_mb < 1:
        logger.warning("Could not detect total memory, defaulting to %d MB", DEFAULT_MEMORY_MB)
        mem_mb = DEFAULT_MEMORY_MB
    logger.info("Detected %d MB of system memory", mem_mb)
    return mem_mb


def detect_swap_mb(meminfo_path: str = "/proc/meminfo") -> int:
    return _meminfo_kb("SwapTotal", meminfo_path) // 1024


def detect_data_directory(
    psql: Optional[Psql],
    *,
    pg_lib_root: str = "/var/lib/postgresql",
    pg_conf_root: str = "/etc/postgresql",
) -> str:
    """Locate the PostgreSQL data directory, most to least authoritative."""

    if psql is not None and psql.available():
        live = psql.show("data_directory")
        if live and Path(live).is_dir():
            return live

    logger.info("PostgreSQL data directory not found via psql, trying common locations...")
    for version in _PG_VERSIONS:
        candidate = Path(pg_lib_root) / version / "main"
        if candidate.is_dir():
            logger.info("Found PostgreSQL data directory at: %s", candidate)
            return str(candidate)

    for conf in sorted(Path(pg_conf_root).glob("*/main/postgresql.conf")):
        for line in (_read_text(conf) or "").splitlines():
            m = _DATA_DIR_RE.match(line)
            if m and Path(m.group(1)).is_dir():
                logger.info("Found PostgreSQL data directory from config: %s", m.group(1))
                return m.group(1)

    if Path(pg_lib_root).is_dir():
        logger.warning("Could not detect specific PostgreSQL data directory, using: %s", pg_lib_root)
        return pg_lib_root

    logger.warning("Could not detect PostgreSQL data directory, using root filesystem")
    return "/"


def detect_disk_size_gb(path: str) -> int:
    size_gb = 0
    for candidate in (path, os.path.dirname(path.rstrip("/")) or "/"):
        try:
            size_gb = shutil.disk_usage(candidate).total // (1024 ** 3)
            break
        except OSError:
            logger.warning("Failed to get disk size for %s", candidate)
    if size_gb < 1:
        logger.warning("Could not detect disk size, defaulting to %d GB", DEFAULT_DISK_GB)
        size_gb = DEFAULT_DISK_GB
    logger.info("Detected %d GB disk size for PostgreSQL data", size_gb)
    return size_gb


def detect_hardware(
    psql: Optional[Psql] = None,
    *,
    now: Optional[datetime] = None,
    pg_lib_root: str = "/var/lib/postgresql",
    pg_conf_root: str = "/etc/postgresql",
) -> HardwareSpecs:
    data_dir = detect_data_directory(psql, pg_lib_root=pg_lib_root, pg_conf_root=pg_conf_root)
    hw = HardwareSpecs(
        cpu_cores=detect_cpu_cores(),
        cpu_model=detect_cpu_model(),
        total_memory_mb=detect_total_memory_mb(),
        swap_mb=detect_swap_mb(),
        data_directory=data_dir,
        disk_size_gb=detect_disk_size_gb(data_dir),
        timestamp=(now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S"),
    )
    logger.info("Hardware: %s (data_directory=%s)", hw.describe(), hw.data_directory)
    return hw
