from __future__ import annotations

import logging
from typing import Any, Dict

from ..pipeline import StepSkipped
from .context import StepContext

logger = logging.getLogger(__name__)


class UserMonitorStep:
    step_id = "40_user_monitor"

    def __init__(self, ctx: StepContext) -> None:
        self.ctx = ctx

    def run(self, state: Dict[str, Any]) -> Dict[str, Any]:
        if not self.ctx.config.user_monitor_enabled:
            raise StepSkipped("PostgreSQL user monitor disabled (PG_USER_MONITOR_ENABLED != true)")
        if not self.ctx.systemd.is_active("postgresql"):
            raise StepSkipped("PostgreSQL service is not running")

        self.ctx.user_monitor().setup()
        return state
