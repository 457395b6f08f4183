from __future__ import annotations

import logging
from typing import Any, Dict

from ..pipeline import StepSkipped
from .context import StepContext

logger = logging.getLogger(__name__)


class DisasterRecoveryStep:
    step_id = "50_disaster_recovery"

    def __init__(self, ctx: StepContext) -> None:
        self.ctx = ctx

    def run(self, state: Dict[str, Any]) -> Dict[str, Any]:
        if not self.ctx.config.recovery_enabled:
            raise StepSkipped("disaster recovery disabled (set DISASTER_RECOVERY_ENABLED=true to enable)")

        logger.info("Setting up disaster recovery system...")
        self.ctx.recovery().setup()
        return state
