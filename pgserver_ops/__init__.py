"""PostgreSQL server operations toolkit (state-driven, idempotent).

Core design goals:
- Hardware-derived tuning for PostgreSQL and pgbouncer
- Detect hardware drift and re-tune without disrupting production hours
- Keep pgbouncer's userlist in sync with database roles
- Restart failed services in dependency order
- Centralized logging
"""

__all__ = []
