"""
StepReflowEngine: backward recomputation of step times after a reorder.

The last step always ends at the chain's fixed deadline; each earlier step
ends where the next one starts. Durations never change on reorder.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from planner.config_manager import SchedulerConfig, config as default_config
from planner.exceptions import InvalidPlanInputError, StaleTimeBlockReferenceError
from planner.logger import get_logger
from planner.models import add_minutes

logger = get_logger("step_reflow")

MAX_STEP_MINUTES = 240


@dataclass
class ReflowStep:
    id: str
    duration_minutes: int


@dataclass
class ReflowedStep:
    id: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_minutes": self.duration_minutes,
        }


def move_step(order: List[str], source_id: str, target_id: str) -> List[str]:
    """Move source_id into target_id's position. Equal positions return the order unchanged."""
    for ref in (source_id, target_id):
        if ref not in order:
            raise StaleTimeBlockReferenceError(ref)
    source_index = order.index(source_id)
    target_index = order.index(target_id)
    reordered = list(order)
    if source_index == target_index:
        return reordered
    item = reordered.pop(source_index)
    reordered.insert(target_index, item)
    return reordered


class StepReflowEngine:
    def __init__(self, cfg: Optional[SchedulerConfig] = None):
        self.cfg = cfg or default_config

    def reflow(
        self,
        steps: List[ReflowStep],
        new_order: List[str],
        fixed_deadline: datetime
    ) -> List[ReflowedStep]:
        """Lay out steps in `new_order` so the last one ends exactly at `fixed_deadline`."""
        by_id = {step.id: step for step in steps}
        if len(new_order) != len(by_id) or set(new_order) != set(by_id):
            unknown = [ref for ref in new_order if ref not in by_id]
            raise StaleTimeBlockReferenceError(unknown[0] if unknown else ",".join(sorted(by_id)))

        for step in steps:
            if step.duration_minutes < self.cfg.MIN_STEP_MINUTES:
                raise InvalidPlanInputError(
                    f"Step {step.id} has non-positive duration {step.duration_minutes}",
                    code="INVALID_STEP_DURATION",
                )

        placed = []
        cursor = fixed_deadline
        for step_id in reversed(new_order):
            duration = by_id[step_id].duration_minutes
            start = add_minutes(cursor, -duration)
            placed.append(ReflowedStep(step_id, start, cursor, duration))
            cursor = start
        placed.reverse()
        logger.debug("Reflowed %d step(s) ending at %s", len(placed), fixed_deadline.isoformat())
        return placed

    def resize(
        self,
        steps: List[ReflowStep],
        step_id: str,
        duration_minutes: int,
        fixed_deadline: datetime
    ) -> List[ReflowedStep]:
        """Change one step's duration and reflow the current order against the deadline."""
        if not (self.cfg.MIN_STEP_MINUTES <= duration_minutes <= MAX_STEP_MINUTES):
            raise InvalidPlanInputError(
                f"Duration must be between {self.cfg.MIN_STEP_MINUTES} and {MAX_STEP_MINUTES} minutes",
                code="INVALID_STEP_DURATION",
            )
        if not any(step.id == step_id for step in steps):
            raise StaleTimeBlockReferenceError(step_id)
        resized = [
            ReflowStep(step.id, duration_minutes if step.id == step_id else step.duration_minutes)
            for step in steps
        ]
        return self.reflow(resized, [step.id for step in steps], fixed_deadline)
