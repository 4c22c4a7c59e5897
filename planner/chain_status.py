"""
Chain status evaluation.

A chain is judged on integrity, not punctuality: arriving late with every
required step done still counts as a completed chain.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional

from planner.exceptions import StaleTimeBlockReferenceError
from planner.models import (
    ChainIntegrity,
    ChainStatus,
    ChainStepInstance,
    ExecutionChain,
    StepStatus,
    parse_datetime,
)

COMPLETED_ON_TIME_MESSAGE = "Chain completed. Nice work."
COMPLETED_LATE_MESSAGE = "You made it! Chain completed late but intact."
BROKEN_MESSAGE = "Chain broke at {name}. Let's try again tomorrow."
IN_PROGRESS_MESSAGE = "Chain in progress."
PENDING_MESSAGE = "Chain not started yet."


def derive_chain_status(steps: List[ChainStepInstance]) -> ChainStatus:
    """completed if every step is completed; in-progress if any step is; else pending."""
    if steps and all(step.status == StepStatus.COMPLETED for step in steps):
        return ChainStatus.COMPLETED
    if any(step.status == StepStatus.IN_PROGRESS for step in steps):
        return ChainStatus.IN_PROGRESS
    return ChainStatus.PENDING


@dataclass
class ChainStatusResult:
    chain_id: str
    status: ChainStatus
    integrity: ChainIntegrity
    message: str
    completed_steps: List[str] = field(default_factory=list)
    missing_steps: List[str] = field(default_factory=list)
    was_late: bool = False

    def to_dict(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "status": self.status.value,
            "chain_integrity": self.integrity.value,
            "message": self.message,
            "completed_steps": list(self.completed_steps),
            "missing_steps": list(self.missing_steps),
            "was_late": self.was_late,
        }


def _completed_late(step: ChainStepInstance) -> bool:
    raw = step.metadata.get("completed_at")
    if not raw:
        return False
    return parse_datetime(raw) > step.end_time


class ChainStatusService:
    def evaluate(self, chain: ExecutionChain, now: datetime) -> ChainStatusResult:
        completed = [s for s in chain.steps if s.status == StepStatus.COMPLETED]
        missing = [
            s for s in chain.steps
            if s.is_required and s.status != StepStatus.COMPLETED
        ]
        was_late = any(_completed_late(s) for s in completed)

        if not missing and completed:
            return ChainStatusResult(
                chain_id=chain.chain_id,
                status=ChainStatus.COMPLETED,
                integrity=ChainIntegrity.INTACT,
                message=COMPLETED_LATE_MESSAGE if was_late else COMPLETED_ON_TIME_MESSAGE,
                completed_steps=[s.name for s in completed],
                was_late=was_late,
            )

        if now >= chain.chain_completion_deadline and missing:
            return ChainStatusResult(
                chain_id=chain.chain_id,
                status=ChainStatus.FAILED,
                integrity=ChainIntegrity.BROKEN,
                message=BROKEN_MESSAGE.format(name=missing[0].name),
                completed_steps=[s.name for s in completed],
                missing_steps=[s.name for s in missing],
                was_late=was_late,
            )

        status = derive_chain_status(chain.steps)
        if status == ChainStatus.PENDING and completed:
            status = ChainStatus.IN_PROGRESS
        return ChainStatusResult(
            chain_id=chain.chain_id,
            status=status,
            integrity=ChainIntegrity.INTACT,
            message=IN_PROGRESS_MESSAGE if status == ChainStatus.IN_PROGRESS else PENDING_MESSAGE,
            completed_steps=[s.name for s in completed],
            missing_steps=[s.name for s in missing],
            was_late=was_late,
        )

    def mark_step_completed(
        self,
        chain: ExecutionChain,
        step_id: str,
        at: Optional[datetime] = None
    ) -> ExecutionChain:
        extra = {"completed_at": at.isoformat()} if at else {}
        return self._with_step_status(chain, step_id, StepStatus.COMPLETED, extra)

    def mark_step_in_progress(self, chain: ExecutionChain, step_id: str) -> ExecutionChain:
        return self._with_step_status(chain, step_id, StepStatus.IN_PROGRESS, {})

    def _with_step_status(
        self,
        chain: ExecutionChain,
        step_id: str,
        status: StepStatus,
        extra_metadata: dict
    ) -> ExecutionChain:
        if not any(step.step_id == step_id for step in chain.steps):
            raise StaleTimeBlockReferenceError(step_id)
        steps = [
            replace(step, status=status, metadata={**step.metadata, **extra_metadata})
            if step.step_id == step_id else step
            for step in chain.steps
        ]
        return replace(chain, steps=steps, status=derive_chain_status(steps))
