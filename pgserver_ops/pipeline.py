from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .state_store import is_step_completed, mark_step_completed, record_step_result

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
FAILED = "FAILED"
SKIPPED = "SKIPPED"


class StepSkipped(Exception):
    """Raised by a step that decides it has nothing to do on this host."""


class Step(Protocol):
    """A single idempotent step."""

    step_id: str

    def run(self, state: Dict[str, Any]) -> Dict[str, Any]:
        ...


@dataclass
class PipelineResult:
    state: Dict[str, Any]
    outcomes: List[Tuple[str, str]] = field(default_factory=list)

    def _with(self, status: str) -> List[str]:
        return [step_id for step_id, s in self.outcomes if s == status]

    @property
    def ran_steps(self) -> List[str]:
        return self._with(SUCCESS)

    @property
    def skipped_steps(self) -> List[str]:
        return self._with(SKIPPED)

    @property
    def failed_steps(self) -> List[str]:
        return self._with(FAILED)

    @property
    def ok(self) -> bool:
        return not self.failed_steps


def run_pipeline(
    *,
    state: Dict[str, Any],
    steps: Sequence[Step],
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    force: bool = False,
) -> PipelineResult:
    """Run steps in order; a failing step is recorded and the next one still runs."""

    result = PipelineResult(state=state)
    started = start_at is None

    for step in steps:
        if not started:
            if step.step_id == start_at:
                started = True
            else:
                continue

        state.setdefault("execution", {})["current_step"] = step.step_id
        error: Optional[str] = None

        if (not force) and is_step_completed(state, step.step_id):
            logger.info("Skipping step %s (already completed)", step.step_id)
            status = SKIPPED
        else:
            logger.info("Running step %s", step.step_id)
            try:
                state = step.run(state)
                mark_step_completed(state, step.step_id)
                status = SUCCESS
            except StepSkipped as e:
                logger.info("Step %s skipped: %s", step.step_id, e)
                status = SKIPPED
            except Exception as e:
                logger.exception("Step %s failed", step.step_id)
                status = FAILED
                error = str(e)

        record_step_result(state, step.step_id, status, error=error)
        result.outcomes.append((step.step_id, status))

        if stop_after is not None and step.step_id == stop_after:
            logger.info("Stopping after %s", stop_after)
            break

    state.setdefault("execution", {})["current_step"] = None
    result.state = state
    return result
