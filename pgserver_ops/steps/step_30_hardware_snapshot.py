from __future__ import annotations

import logging
from typing import Any, Dict

from .context import StepContext, hardware_from_state

logger = logging.getLogger(__name__)


class HardwareSnapshotStep:
    """Baseline snapshot for the detector, plus its daily timer."""

    step_id = "30_hardware_snapshot"

    def __init__(self, ctx: StepContext) -> None:
        self.ctx = ctx

    def run(self, state: Dict[str, Any]) -> Dict[str, Any]:
        detector = self.ctx.detector()
        detector.collect(hardware_from_state(state))
        detector.install_timer()
        return state
