from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from .lib.hwdetect import HardwareSpecs
from .lib.psql import Psql
from .tuning import PgbouncerTuning, PostgresTuning, recommendations

logger = logging.getLogger(__name__)

POSTGRES_CONF_NAME = "90-dynamic-optimization.conf"

# [pgbouncer] keys owned by the base setup; everything else in the section is regenerated.
PRESERVED_PGBOUNCER_KEYS = (
    "logfile",
    "pidfile",
    "listen_addr",
    "listen_port",
    "unix_socket_dir",
    "auth_type",
    "auth_file",
    "auth_query",
    "admin_users",
    "stats_users",
    "ignore_startup_parameters",
    "client_tls_sslmode",
    "client_tls_key_file",
    "client_tls_cert_file",
    "server_tls_sslmode",
)

Section = Tuple[Optional[str], List[str]]


def _stamp(now: datetime) -> str:
    return now.strftime("%a %b %d %H:%M:%S %Y")


def postgres_conf_path(conf_root: str, psql: Optional[Psql] = None) -> Path:
    """<conf_root>/<version>/main/conf.d/90-dynamic-optimization.conf"""

    versions = psql.cluster_versions() if psql is not None else []
    if not versions:
        root = Path(conf_root)
        versions = sorted(p.name for p in root.iterdir() if (p / "main").is_dir()) if root.is_dir() else []
    if not versions:
        raise FileNotFoundError(f"No PostgreSQL cluster configuration found under {conf_root}")
    # Newest cluster wins when several are installed.
    version = sorted(versions, key=_version_key)[-1]
    return Path(conf_root) / version / "main" / "conf.d" / POSTGRES_CONF_NAME


def _version_key(v: str) -> Tuple[int, ...]:
    try:
        return tuple(int(x) for x in v.split("."))
    except ValueError:
        return (0,)


def render_postgres_conf(hw: HardwareSpecs, tuning: PostgresTuning, now: datetime) -> str:
    lines = [
        "# Dynamic PostgreSQL Optimization",
        f"# Generated by pgserver-ops on {_stamp(now)}",
        f"# Hardware: {hw.describe()}",
        "",
        "# Memory Configuration",
        f"shared_buffers = '{tuning.shared_buffers_mb}MB'",
        f"work_mem = '{tuning.work_mem_mb}MB'",
        f"effective_cache_size = '{tuning.effective_cache_size_mb}MB'",
        "",
        "# Connection Configuration",
        f"max_connections = {tuning.max_connections}",
        "",
        "# WAL Configuration",
        f"wal_buffers = '{tuning.wal_buffers}'",
        "",
        "# Checkpoint Configuration",
        f"checkpoint_timeout = '{tuning.checkpoint_timeout}'",
        f"checkpoint_completion_target = {tuning.checkpoint_completion_target}",
        "",
        "# VACUUM Configuration",
        f"maintenance_work_mem = '{tuning.maintenance_work_mem_mb}MB'",
        f"autovacuum_vacuum_scale_factor = {tuning.autovacuum_vacuum_scale_factor}",
        f"autovacuum_analyze_scale_factor = {tuning.autovacuum_analyze_scale_factor}",
    ]
    return "\n".join(lines) + "\n"


def parse_ini_sections(text: str) -> List[Section]:
    """Split INI text into (name, raw_lines) pairs; name is None for the preamble."""

    sections: List[Section] = [(None, [])]
    for line in text.splitlines():
        if line.startswith("["):
            name = line[1:].split("]", 1)[0].strip()
            sections.append((name, [line]))
        else:
            sections[-1][1].append(line)
    if not sections[0][1]:
        sections.pop(0)
    return sections


def _ini_key(line: str) -> Optional[str]:
    stripped = line.strip()
    if not stripped or stripped[0] in "#;" or "=" not in stripped:
        return None
    return stripped.split("=", 1)[0].strip()


def _trim_trailing_blank(lines: List[str]) -> List[str]:
    out = list(lines)
    while out and not out[-1].strip():
        out.pop()
    return out


def rewrite_pgbouncer_ini(text: str, hw: HardwareSpecs, tuning: PgbouncerTuning, now: datetime) -> str:
    """Regenerate [pgbouncer] with optimized values, keeping every other section verbatim."""

    sections = parse_ini_sections(text)
    preamble = [lines for name, lines in sections if name is None]
    databases = [lines for name, lines in sections if name == "databases"]
    pgbouncer = [lines for name, lines in sections if name == "pgbouncer"]
    others = [lines for name, lines in sections if name not in (None, "databases", "pgbouncer")]

    preserved: List[str] = []
    for lines in pgbouncer:
        for line in lines[1:]:
            if _ini_key(line) in PRESERVED_PGBOUNCER_KEYS:
                preserved.append(line.strip())

    blocks: List[List[str]] = []
    for lines in preamble + databases:
        trimmed = _trim_trailing_blank(lines)
        if trimmed:
            blocks.append(trimmed)

    generated = [
        "[pgbouncer]",
        "# Dynamic optimization settings",
        f"# Generated by pgserver-ops on {_stamp(now)}",
        f"# Hardware: {hw.cpu_cores} CPU cores, {hw.total_memory_mb} MB RAM",
        "",
        "# Preserved settings from existing configuration",
        *preserved,
        "",
        "# Dynamically optimized settings",
        *[f"{k} = {v}" for k, v in tuning.settings()],
    ]
    blocks.append(generated)

    for lines in others:
        trimmed = _trim_trailing_blank(lines)
        if trimmed:
            blocks.append(trimmed)

    return "\n\n".join("\n".join(b) for b in blocks) + "\n"


def render_report(
    hw: HardwareSpecs,
    pg: PostgresTuning,
    pgb: PgbouncerTuning,
    now: datetime,
) -> str:
    lines = [
        "PostgreSQL Dynamic Optimization Report",
        "=====================================",
        f"Generated on: {_stamp(now)}",
        "",
        "Hardware Specifications",
        "---------------------",
        f"CPU Cores: {hw.cpu_cores}",
        f"Total Memory: {hw.total_memory_mb} MB",
        f"Disk Size: {hw.disk_size_gb} GB",
        "",
        "PostgreSQL Configuration",
        "----------------------",
        f"max_connections: {pg.max_connections}",
        f"shared_buffers: {pg.shared_buffers_mb}MB",
        f"work_mem: {pg.work_mem_mb}MB",
        f"effective_cache_size: {pg.effective_cache_size_mb}MB",
        f"maintenance_work_mem: {pg.maintenance_work_mem_mb}MB",
        "",
        "pgbouncer Configuration",
        "---------------------",
        f"max_client_conn: {pgb.max_client_conn}",
        f"default_pool_size: {pgb.default_pool_size}",
        f"reserve_pool_size: {pgb.reserve_pool_size}",
        f"pool_mode: {pgb.pool_mode}",
        "",
        "Performance Recommendations",
        "------------------------",
        *[f"- {r}" for r in recommendations(hw)],
        "",
        "Next Steps",
        "----------",
        "1. Monitor performance with Netdata dashboards",
        "2. Check PostgreSQL logs for potential bottlenecks",
        "3. Run EXPLAIN ANALYZE on slow queries and optimize them",
        "4. Revisit this optimization after significant hardware changes",
    ]
    return "\n".join(lines) + "\n"
