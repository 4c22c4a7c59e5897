"""
Projects structured chains, the wake ramp and placed meals onto flat TimeBlock rows.

The pre-anchor chain steps are tagged `chain_view_only` with a chain-step or
exit-gate role; that tagging is what ChainReconstructor reads back.
"""
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional

from planner.meals import MEAL_NAMES
from planner.models import (
    ActivityType,
    BlockMetadata,
    BlockRole,
    ChainStepInstance,
    ExecutionChain,
    ExitTime,
    MealPlacement,
    StepRole,
    StepStatus,
    TimeBlock,
    WakeRamp,
)

SKIPPED_BEFORE_START_REASON = "Occurred before plan start"


def _new_id() -> str:
    return str(uuid.uuid4())


def _step_block(
    step: ChainStepInstance,
    chain: ExecutionChain,
    plan_id: str,
    activity_type: ActivityType,
    block_id: str,
    chain_view_only: bool
) -> TimeBlock:
    extra = {k: v for k, v in step.metadata.items() if k != "gate_conditions"}
    return TimeBlock(
        id=block_id,
        plan_id=plan_id,
        activity_type=activity_type.value,
        activity_name=step.name,
        start_time=step.start_time,
        end_time=step.end_time,
        status=step.status,
        skip_reason=step.skip_reason,
        metadata=BlockMetadata(
            role=BlockRole(
                kind=step.role,
                chain_id=chain.chain_id,
                required=step.is_required,
                can_skip_when_late=step.can_skip_when_late,
            ),
            chain_id=chain.chain_id,
            step_id=step.step_id,
            anchor_id=chain.anchor_id,
            chain_view_only=chain_view_only,
            gate_conditions=dict(step.metadata.get("gate_conditions") or {}),
            extra=extra,
        ),
    )


def chain_to_time_blocks(
    chain: ExecutionChain,
    plan_id: str,
    id_factory: Callable[[], str] = _new_id
) -> List[TimeBlock]:
    envelope = chain.commitment_envelope
    blocks = []
    for step in chain.steps:
        if step.role == StepRole.EXIT_GATE:
            activity_type = ActivityType.EXIT_GATE
        elif step.step_id == envelope.travel_there.step_id:
            activity_type = ActivityType.TRAVEL
        else:
            activity_type = ActivityType.CHAIN_STEP
        blocks.append(_step_block(step, chain, plan_id, activity_type, id_factory(), True))

    anchor = chain.anchor
    blocks.append(TimeBlock(
        id=id_factory(),
        plan_id=plan_id,
        activity_type=ActivityType.COMMITMENT.value,
        activity_id=anchor.id,
        activity_name=anchor.title,
        start_time=anchor.start,
        end_time=anchor.end,
        metadata=BlockMetadata(
            role=BlockRole(kind=StepRole.ANCHOR, chain_id=chain.chain_id, required=anchor.must_attend),
            chain_id=chain.chain_id,
            anchor_id=anchor.id,
            extra={
                "anchor_type": anchor.type.value,
                "location": anchor.location,
                "must_attend": anchor.must_attend,
                "calendar_event_id": anchor.calendar_event_id,
            },
        ),
    ))
    blocks.append(_step_block(
        envelope.travel_back, chain, plan_id, ActivityType.TRAVEL, id_factory(), False
    ))
    blocks.append(_step_block(
        envelope.recovery, chain, plan_id, ActivityType.RECOVERY, id_factory(), False
    ))
    return blocks


def wake_ramp_to_time_blocks(
    ramp: WakeRamp,
    plan_id: str,
    id_factory: Callable[[], str] = _new_id
) -> List[TimeBlock]:
    if ramp.skipped:
        return []
    return [
        TimeBlock(
            id=id_factory(),
            plan_id=plan_id,
            activity_type=ActivityType.WAKE_RAMP.value,
            activity_name=step.name,
            start_time=step.start_time,
            end_time=step.end_time,
            metadata=BlockMetadata(extra={"energy_state": ramp.energy_state.value}),
        )
        for step in ramp.steps
    ]


def meals_to_time_blocks(
    placements: List[MealPlacement],
    plan_id: str,
    id_factory: Callable[[], str] = _new_id
) -> List[TimeBlock]:
    return [
        TimeBlock(
            id=id_factory(),
            plan_id=plan_id,
            activity_type=ActivityType.MEAL.value,
            activity_name=MEAL_NAMES.get(p.meal, p.meal.title()),
            start_time=p.start_time,
            end_time=p.end_time,
            metadata=BlockMetadata(extra={
                "meal": p.meal,
                "target_time": p.target_time.isoformat() if p.target_time else None,
                "placement_reason": p.placement_reason,
            }),
        )
        for p in placements
        if not p.skipped
    ]


def build_time_blocks(
    chains: List[ExecutionChain],
    ramp: Optional[WakeRamp],
    plan_id: str,
    plan_start: datetime,
    meals: Optional[List[MealPlacement]] = None,
    id_factory: Callable[[], str] = _new_id
) -> List[TimeBlock]:
    """Flatten everything into one list in start order with sequence_order assigned."""
    blocks = []
    if ramp is not None:
        blocks.extend(wake_ramp_to_time_blocks(ramp, plan_id, id_factory))
    if meals:
        blocks.extend(meals_to_time_blocks(meals, plan_id, id_factory))
    for chain in chains:
        blocks.extend(chain_to_time_blocks(chain, plan_id, id_factory))

    blocks.sort(key=lambda b: (b.start_time, b.end_time))
    for index, block in enumerate(blocks):
        block.sequence_order = index
        if block.activity_type == ActivityType.WAKE_RAMP:
            continue
        if block.end_time <= plan_start and block.status == StepStatus.PENDING:
            block.status = StepStatus.SKIPPED
            block.skip_reason = SKIPPED_BEFORE_START_REASON
    return blocks


def exit_times_for(
    chains: List[ExecutionChain],
    blocks: List[TimeBlock],
    plan_id: str,
    id_factory: Callable[[], str] = _new_id
) -> List[ExitTime]:
    block_by_step = {b.metadata.step_id: b for b in blocks if b.metadata.step_id}
    exit_times = []
    for chain in chains:
        travel = chain.commitment_envelope.travel_there
        block = block_by_step.get(travel.step_id)
        exit_times.append(ExitTime(
            id=id_factory(),
            plan_id=plan_id,
            anchor_id=chain.anchor_id,
            exit_time=travel.start_time,
            travel_minutes=travel.duration_minutes,
            prep_minutes=chain.commitment_envelope.prep.duration_minutes,
            time_block_id=block.id if block else None,
        ))
    return exit_times


def resync_exit_time(current: ExitTime, chain_blocks: List[TimeBlock]) -> Optional[ExitTime]:
    """Recompute an exit time from edited chain blocks: departure is wherever the travel block now starts."""
    travel = next((b for b in chain_blocks if b.activity_type == ActivityType.TRAVEL), None)
    if travel is None:
        return None
    prep = sum(
        b.duration_minutes for b in chain_blocks
        if b.id != travel.id and b.status != StepStatus.SKIPPED
    )
    return replace(
        current,
        exit_time=travel.start_time,
        travel_minutes=travel.duration_minutes,
        prep_minutes=prep,
        time_block_id=travel.id,
    )
