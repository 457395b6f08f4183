from __future__ import annotations

import logging
from typing import Any, Dict

from ..pipeline import StepSkipped
from ..state_store import record_decision
from .context import StepContext, hardware_from_state

logger = logging.getLogger(__name__)


class DynamicOptimizationStep:
    step_id = "20_dynamic_optimization"

    def __init__(self, ctx: StepContext) -> None:
        self.ctx = ctx

    def run(self, state: Dict[str, Any]) -> Dict[str, Any]:
        if not self.ctx.config.dynamic_optimization_enabled:
            raise StepSkipped("dynamic optimization disabled (set ENABLE_DYNAMIC_OPTIMIZATION=true to enable)")
        if self.ctx.optimizer.which("psql") is None:
            raise StepSkipped("PostgreSQL not installed")

        logger.info("Setting up dynamic PostgreSQL optimization...")
        report = self.ctx.optimizer.run(hw=hardware_from_state(state))
        record_decision(state, "optimization_report", str(report))
        return state
