"""Hardware-driven PostgreSQL and pgbouncer tuning.

All arithmetic is integer and truncating so the generated values stay stable
across runs on the same hardware.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from .lib.hwdetect import HardwareSpecs

logger = logging.getLogger(__name__)


def _clamp(value: int, lo: Optional[int] = None, hi: Optional[int] = None) -> int:
    if hi is not None and value > hi:
        value = hi
    if lo is not None and value < lo:
        value = lo
    return value


def trunc_div(a: int, b: int) -> int:
    """Integer division rounding toward zero (floor division rounds negatives down)."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def calculate_max_connections(total_memory_mb: int, cpu_cores: int) -> int:
    # 50 per GB of RAM plus 50 per core
    return _clamp(total_memory_mb // 1024 * 50 + cpu_cores * 50, 100, 1000)


def calculate_shared_buffers(total_memory_mb: int) -> int:
    return _clamp(total_memory_mb // 4, 128, 8192)


def calculate_work_mem(total_memory_mb: int, max_connections: int, cpu_cores: int) -> int:
    divisor = max_connections * cpu_cores // 4 or 1
    return _clamp(total_memory_mb * 5 // 100 // divisor, 4, 64)


def calculate_effective_cache_size(total_memory_mb: int) -> int:
    return total_memory_mb * 75 // 100


def calculate_wal_buffers(disk_size_gb: int) -> str:
    return "16MB" if disk_size_gb > 100 else "8MB"


def calculate_pgb_default_pool_size(cpu_cores: int) -> int:
    return _clamp(cpu_cores * 2, 5, 50)


def calculate_pgb_max_client_conn(max_connections: int, cpu_cores: int, total_memory_mb: int) -> int:
    max_client_conn = max_connections
    if cpu_cores > 4 and total_memory_mb > 8192:
        max_client_conn += cpu_cores * 25 + total_memory_mb // 1024 * 25
    return _clamp(max_client_conn, hi=2000)


def calculate_pgb_reserve_pool_size(default_pool_size: int) -> int:
    return _clamp(default_pool_size * 15 // 100, lo=2)


def determine_pool_mode(cpu_cores: int, total_memory_mb: int) -> str:
    if cpu_cores < 2 and total_memory_mb < 2048:
        logger.info("Resource-constrained system detected, using session pool mode")
        return "session"
    return "transaction"


@dataclass(frozen=True)
class PostgresTuning:
    max_connections: int
    shared_buffers_mb: int
    work_mem_mb: int
    effective_cache_size_mb: int
    maintenance_work_mem_mb: int
    wal_buffers: str
    checkpoint_timeout: str = "5min"
    checkpoint_completion_target: float = 0.9
    autovacuum_vacuum_scale_factor: float = 0.1
    autovacuum_analyze_scale_factor: float = 0.05


@dataclass(frozen=True)
class PgbouncerTuning:
    pool_mode: str
    max_client_conn: int
    default_pool_size: int
    reserve_pool_size: int
    min_pool_size: int
    server_lifetime: int
    reserve_pool_timeout: int = 5
    server_round_robin: int = 1

    def settings(self) -> List[tuple[str, str]]:
        return [
            ("pool_mode", self.pool_mode),
            ("max_client_conn", str(self.max_client_conn)),
            ("default_pool_size", str(self.default_pool_size)),
            ("reserve_pool_size", str(self.reserve_pool_size)),
            ("min_pool_size", str(self.min_pool_size)),
            ("reserve_pool_timeout", str(self.reserve_pool_timeout)),
            ("server_round_robin", str(self.server_round_robin)),
            ("server_lifetime", str(self.server_lifetime)),
        ]


def compute_postgres_tuning(hw: HardwareSpecs) -> PostgresTuning:
    max_connections = calculate_max_connections(hw.total_memory_mb, hw.cpu_cores)
    shared_buffers = calculate_shared_buffers(hw.total_memory_mb)
    tuning = PostgresTuning(
        max_connections=max_connections,
        shared_buffers_mb=shared_buffers,
        work_mem_mb=calculate_work_mem(hw.total_memory_mb, max_connections, hw.cpu_cores),
        effective_cache_size_mb=calculate_effective_cache_size(hw.total_memory_mb),
        maintenance_work_mem_mb=shared_buffers // 4,
        wal_buffers=calculate_wal_buffers(hw.disk_size_gb),
    )
    logger.info(
        "PostgreSQL tuning: max_connections=%d shared_buffers=%dMB work_mem=%dMB effective_cache_size=%dMB",
        tuning.max_connections,
        tuning.shared_buffers_mb,
        tuning.work_mem_mb,
        tuning.effective_cache_size_mb,
    )
    return tuning


def compute_pgbouncer_tuning(hw: HardwareSpecs, pg_max_connections: Optional[int] = None) -> PgbouncerTuning:
    if pg_max_connections is None:
        pg_max_connections = calculate_max_connections(hw.total_memory_mb, hw.cpu_cores)
    pool = calculate_pgb_default_pool_size(hw.cpu_cores)
    tuning = PgbouncerTuning(
        pool_mode=determine_pool_mode(hw.cpu_cores, hw.total_memory_mb),
        max_client_conn=calculate_pgb_max_client_conn(pg_max_connections, hw.cpu_cores, hw.total_memory_mb),
        default_pool_size=pool,
        reserve_pool_size=calculate_pgb_reserve_pool_size(pool),
        min_pool_size=pool // 4,
        server_lifetime=3600 if hw.total_memory_mb > 8192 else 1800,
    )
    logger.info(
        "pgbouncer tuning: pool_mode=%s max_client_conn=%d default_pool_size=%d reserve_pool_size=%d",
        tuning.pool_mode,
        tuning.max_client_conn,
        tuning.default_pool_size,
        tuning.reserve_pool_size,
    )
    return tuning


def recommendations(hw: HardwareSpecs) -> List[str]:
    recs: List[str] = []
    if hw.total_memory_mb < 4096:
        recs.append("Low memory system detected. Consider adding more RAM for better performance.")
    if hw.cpu_cores < 4:
        recs.append("Low CPU core count. Consider using a system with more cores for better concurrency.")
    if hw.disk_size_gb < 50:
        recs.append("Limited disk space. Monitor disk usage regularly and consider adding more storage.")
    recs += [
        "For write-heavy workloads, consider increasing checkpoint_timeout.",
        "For read-heavy workloads, consider increasing effective_cache_size.",
        "For mixed workloads, the current configuration should be balanced.",
    ]
    return recs
