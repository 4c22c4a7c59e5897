"""
ChainReconstructor: rebuilds ExecutionChains from persisted TimeBlock rows.

Used on the read path when a plan has blocks but no cached chains. Pure and
deterministic: the same blocks always produce the same chains.
"""
from collections import OrderedDict
from typing import Dict, List, Optional

from planner.chain_status import derive_chain_status
from planner.config_manager import SchedulerConfig, config as default_config
from planner.models import (
    ActivityType,
    Anchor,
    AnchorType,
    ChainStepInstance,
    CommitmentEnvelope,
    ExecutionChain,
    StepRole,
    StepStatus,
    TimeBlock,
    add_minutes,
    minutes_between,
)

_CHAIN_ROLES = (StepRole.CHAIN_STEP, StepRole.EXIT_GATE)


def _step_status(status: StepStatus) -> StepStatus:
    if status in (StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.IN_PROGRESS):
        return status
    return StepStatus.PENDING


def _anchor_type(raw: Optional[str]) -> AnchorType:
    try:
        return AnchorType(raw or AnchorType.OTHER.value)
    except ValueError:
        return AnchorType.OTHER


class ChainReconstructor:
    def __init__(self, cfg: Optional[SchedulerConfig] = None):
        self.cfg = cfg or default_config

    def reconstruct(self, time_blocks: List[TimeBlock]) -> List[ExecutionChain]:
        groups: Dict[str, List[TimeBlock]] = OrderedDict()
        for block in time_blocks:
            meta = block.metadata
            chain_id = meta.resolved_chain_id
            if not meta.chain_view_only or not chain_id or meta.role.kind not in _CHAIN_ROLES:
                continue
            groups.setdefault(chain_id, []).append(block)

        chains = [
            self._rebuild(chain_id, sorted(blocks, key=lambda b: (b.start_time, b.sequence_order)), time_blocks)
            for chain_id, blocks in groups.items()
        ]
        chains.sort(key=lambda c: (c.anchor.start, c.chain_id))
        return chains

    def _rebuild(
        self,
        chain_id: str,
        blocks: List[TimeBlock],
        all_blocks: List[TimeBlock]
    ) -> ExecutionChain:
        first = blocks[0]
        anchor_id = first.metadata.anchor_id or first.activity_id or f"anchor-{chain_id}"

        steps = [self._step(chain_id, block) for block in blocks]
        deadline = max(step.end_time for step in steps)
        chain_start = min(step.start_time for step in steps)

        anchor = self._resolve_anchor(anchor_id, all_blocks, deadline)
        envelope = self._synthetic_envelope(chain_id, anchor, chain_start)

        return ExecutionChain(
            chain_id=chain_id,
            anchor_id=anchor_id,
            anchor=anchor,
            chain_completion_deadline=deadline,
            steps=steps,
            commitment_envelope=envelope,
            status=derive_chain_status(steps),
            metadata={"reconstructed_from_time_blocks": True},
        )

    def _step(self, chain_id: str, block: TimeBlock) -> ChainStepInstance:
        meta = block.metadata
        metadata = dict(meta.extra)
        metadata["time_block_id"] = block.id
        if meta.gate_conditions:
            metadata["gate_conditions"] = dict(meta.gate_conditions)
        return ChainStepInstance(
            step_id=meta.step_id or block.id,
            chain_id=chain_id,
            name=block.activity_name,
            start_time=block.start_time,
            end_time=block.end_time,
            duration_minutes=max(self.cfg.MIN_STEP_MINUTES, block.duration_minutes),
            is_required=meta.role.required,
            can_skip_when_late=meta.role.can_skip_when_late,
            status=_step_status(block.status),
            role=StepRole.EXIT_GATE if meta.role.kind == StepRole.EXIT_GATE else StepRole.CHAIN_STEP,
            skip_reason=block.skip_reason,
            metadata=metadata,
        )

    def _resolve_anchor(self, anchor_id: str, blocks: List[TimeBlock], last_end) -> Anchor:
        for block in blocks:
            if block.activity_type != ActivityType.COMMITMENT:
                continue
            if block.activity_id == anchor_id or block.metadata.anchor_id == anchor_id:
                extra = block.metadata.extra
                return Anchor(
                    id=anchor_id,
                    title=block.activity_name,
                    start=block.start_time,
                    end=block.end_time,
                    type=_anchor_type(extra.get("anchor_type")),
                    location=extra.get("location"),
                    must_attend=bool(extra.get("must_attend", True)),
                    calendar_event_id=extra.get("calendar_event_id"),
                )

        start = add_minutes(last_end, self.cfg.FALLBACK_ANCHOR_OFFSET_MINUTES)
        return Anchor(
            id=anchor_id,
            title=self.cfg.FALLBACK_ANCHOR_TITLE,
            start=start,
            end=add_minutes(start, self.cfg.FALLBACK_ANCHOR_DURATION_MINUTES),
            type=AnchorType.OTHER,
            must_attend=True,
        )

    def _synthetic_envelope(self, chain_id: str, anchor: Anchor, chain_start) -> CommitmentEnvelope:
        travel = self.cfg.RECONSTRUCTION_TRAVEL_MINUTES
        recovery = self.cfg.RECONSTRUCTION_RECOVERY_MINUTES
        min_step = self.cfg.MIN_STEP_MINUTES

        travel_start = add_minutes(anchor.start, -travel)
        prep_start = min(chain_start, add_minutes(travel_start, -min_step))
        back_end = add_minutes(anchor.end, travel)

        def segment(suffix, name, start, end, role=StepRole.CHAIN_STEP):
            return ChainStepInstance(
                step_id=f"{chain_id}-{suffix}",
                chain_id=chain_id,
                name=name,
                start_time=start,
                end_time=end,
                duration_minutes=minutes_between(start, end),
                role=role,
            )

        return CommitmentEnvelope(
            envelope_id=f"{chain_id}-synthetic-envelope",
            prep=segment("prep", "Preparation", prep_start, travel_start),
            travel_there=segment("travel-there", f"Travel to {anchor.title}", travel_start, anchor.start),
            anchor=segment("anchor", anchor.title, anchor.start, anchor.end, StepRole.ANCHOR),
            travel_back=segment("travel-back", f"Travel from {anchor.title}", anchor.end, back_end),
            recovery=segment(
                "recovery", "Recovery", back_end, add_minutes(back_end, recovery), StepRole.RECOVERY
            ),
            metadata={"reconstructed_from_time_blocks": True},
        )
