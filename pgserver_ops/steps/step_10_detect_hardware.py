from __future__ import annotations

import logging
from typing import Any, Dict

from .context import StepContext

logger = logging.getLogger(__name__)


class DetectHardwareStep:
    step_id = "10_detect_hardware"

    def __init__(self, ctx: StepContext) -> None:
        self.ctx = ctx

    def run(self, state: Dict[str, Any]) -> Dict[str, Any]:
        hw = self.ctx.optimizer.detect()
        state["hardware"] = hw.as_dict()
        return state
