"""
PlanBuilder: orchestrates daily plan generation and the plan read/edit paths.

Generation replaces any existing plan for (user, date):
    anchors -> chains + wake ramp + meals -> time blocks + exit times -> one atomic replace

The replace only succeeds if the plan seen at the start is still current. When
another generation got there first, the loser re-reads and returns the winner's plan.
"""
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from planner.anchor_service import AnchorProvider, StaticAnchorProvider, anchor_from_manual
from planner.chain_generator import ChainGenerator
from planner.chain_reconstructor import ChainReconstructor
from planner.config_manager import SchedulerConfig, config as default_config
from planner.exceptions import (
    DuplicatePlanError,
    ForbiddenMetadataFieldError,
    InvalidPlanInputError,
    ManualAnchorRequiredError,
    PlanConflictError,
    PlanNotFoundError,
    StaleTimeBlockReferenceError,
)
from planner.location_state import LocationStateTracker
from planner.logger import get_logger
from planner.meals import MealPlanner
from planner.models import (
    ActivityType,
    Anchor,
    AnchorType,
    DailyPlan,
    EnergyState,
    ExecutionChain,
    ExitTime,
    GenerationConfig,
    HomeInterval,
    IDENTITY_FIELDS,
    Location,
    ManualAnchorInput,
    MealPlacement,
    PlanInput,
    StepRole,
    StepStatus,
    TimeBlock,
    WakeRamp,
    WakeRampStep,
    parse_datetime,
    round_up_to,
)
from planner.plan_store import PlanStore
from planner.step_reflow import ReflowedStep, ReflowStep, StepReflowEngine, move_step
from planner.timeline import build_time_blocks, exit_times_for, resync_exit_time
from planner.wake_ramp import WakeRampGenerator

logger = get_logger("plan_builder")

_CHAIN_ROLES = (StepRole.CHAIN_STEP, StepRole.EXIT_GATE)
_KEPT_WHEN_DEGRADED = (ActivityType.TRAVEL, ActivityType.COMMITMENT, ActivityType.MEAL, ActivityType.WAKE_RAMP)

DEGRADED_STATUS = "degraded"
DEGRADED_SKIP_REASON = "Dropped during degradation"


@dataclass
class PlanPreview:
    """Chains and location state for a day, computed without persisting anything."""
    plan_start: datetime
    sleep_time: datetime
    chains: List[ExecutionChain] = field(default_factory=list)
    wake_ramp: Optional[WakeRamp] = None
    meals: List[MealPlacement] = field(default_factory=list)
    home_intervals: List[HomeInterval] = field(default_factory=list)
    away_intervals: List[HomeInterval] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "plan_start": self.plan_start.isoformat(),
            "sleep_time": self.sleep_time.isoformat(),
            "chains": [chain.to_dict() for chain in self.chains],
            "wake_ramp": self.wake_ramp.to_dict() if self.wake_ramp else None,
            "meals": [meal.to_dict() for meal in self.meals],
            "home_intervals": [i.to_dict() for i in self.home_intervals],
            "away_intervals": [i.to_dict() for i in self.away_intervals],
        }


def _is_chain_step(block: TimeBlock) -> bool:
    meta = block.metadata
    return bool(meta.chain_view_only and meta.resolved_chain_id and meta.role.kind in _CHAIN_ROLES)


class PlanBuilder:
    def __init__(
        self,
        store: PlanStore,
        anchor_provider: Optional[AnchorProvider] = None,
        chain_generator: Optional[ChainGenerator] = None,
        cfg: Optional[SchedulerConfig] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.cfg = cfg or default_config
        self.store = store
        self.anchor_provider = anchor_provider or StaticAnchorProvider()
        self.chain_generator = chain_generator or ChainGenerator(cfg=self.cfg)
        self.reconstructor = ChainReconstructor(self.cfg)
        self.reflow_engine = StepReflowEngine(self.cfg)
        self.wake_ramp_generator = WakeRampGenerator(self.cfg)
        self.location_tracker = LocationStateTracker(self.cfg)
        self.meal_planner = MealPlanner(self.cfg)
        self._sleep = sleep

    # --- input validation ---

    def validate_plan_request(
        self,
        user_id: str,
        wake_time: Any,
        sleep_time: Any,
        energy_state: Any,
        plan_date: Optional[date] = None
    ) -> PlanInput:
        try:
            wake = parse_datetime(wake_time)
            sleep = parse_datetime(sleep_time)
        except (TypeError, ValueError) as e:
            raise InvalidPlanInputError(f"Invalid wake/sleep time: {e}", code="INVALID_TIME_RANGE") from e

        # 睡觉时间不晚于起床时间视为跨夜
        if sleep <= wake:
            sleep = sleep + timedelta(days=1)
        if sleep <= wake:
            raise InvalidPlanInputError("sleep_time must be after wake_time", code="INVALID_TIME_RANGE")

        try:
            energy = EnergyState(str(energy_state or "").strip().lower())
        except ValueError:
            raise InvalidPlanInputError(
                "energy_state must be one of low | medium | high", code="INVALID_ENERGY_STATE"
            )

        return PlanInput(
            user_id=user_id,
            plan_date=plan_date or wake.date(),
            wake_time=wake,
            sleep_time=sleep,
            energy_state=energy,
        )

    def validate_manual_anchor(self, data: Optional[Dict[str, Any]]) -> Optional[ManualAnchorInput]:
        if not data:
            return None
        title = str(data.get("title") or "").strip()
        if not title:
            raise InvalidPlanInputError("Manual anchor title is required", code="INVALID_MANUAL_ANCHOR")
        try:
            start = parse_datetime(data.get("start_time"))
            end = parse_datetime(data.get("end_time"))
            anchor_type = AnchorType(data.get("anchor_type") or AnchorType.OTHER.value)
        except (TypeError, ValueError) as e:
            raise InvalidPlanInputError(f"Invalid manual anchor: {e}", code="INVALID_MANUAL_ANCHOR") from e
        if end <= start:
            raise InvalidPlanInputError("Manual anchor must end after it starts", code="INVALID_MANUAL_ANCHOR")
        must_attend = data.get("must_attend")
        return ManualAnchorInput(
            title=title,
            start_time=start,
            end_time=end,
            anchor_type=anchor_type,
            must_attend=True if must_attend is None else bool(must_attend),
            location=(str(data.get("location")).strip() or None) if data.get("location") else None,
            notes=data.get("notes"),
        )

    # --- generation ---

    def collect_anchors(
        self,
        plan_input: PlanInput,
        manual_anchor: Optional[ManualAnchorInput] = None
    ) -> List[Anchor]:
        try:
            anchors = list(self.anchor_provider.get_anchors_for_date(plan_input.plan_date, plan_input.user_id))
        except Exception as e:
            logger.warning("Anchor provider failed for %s: %s", plan_input.user_id, e, exc_info=True)
            anchors = []

        if manual_anchor is not None:
            self.store.save_manual_anchor(plan_input.user_id, plan_input.plan_date, manual_anchor)
        manual = self.store.get_manual_anchors(plan_input.user_id, plan_input.plan_date)

        by_id = {anchor.id: anchor for anchor in anchors}
        for item in manual:
            anchor = anchor_from_manual(item)
            by_id.setdefault(anchor.id, anchor)
        return sorted(by_id.values(), key=lambda a: (a.start, a.id))

    def _plan_window(self, plan_input: PlanInput, now: datetime):
        rounded_now = round_up_to(now, self.cfg.PLAN_START_ROUNDING_MINUTES)
        return rounded_now, max(plan_input.wake_time, rounded_now)

    def _build_chains(
        self,
        plan_input: PlanInput,
        anchors: List[Anchor],
        current_location: Optional[Location],
        plan_start: datetime
    ) -> List[ExecutionChain]:
        gen_config = GenerationConfig(
            user_id=plan_input.user_id,
            plan_date=plan_input.plan_date,
            current_location=current_location or Location(name=self.cfg.DEFAULT_LOCATION_NAME),
            user_energy=self.cfg.energy_level(plan_input.energy_state.value),
            earliest_start=plan_start,
        )
        return self.chain_generator.generate_chains_for_date(anchors, gen_config)

    def generate_daily_plan(
        self,
        plan_input: PlanInput,
        current_location: Optional[Location] = None,
        manual_anchor: Optional[ManualAnchorInput] = None,
        now: Optional[datetime] = None
    ) -> DailyPlan:
        now = now or datetime.now(tz=plan_input.wake_time.tzinfo)
        anchors = self.collect_anchors(plan_input, manual_anchor)
        if not anchors:
            raise ManualAnchorRequiredError()

        existing = self.store.get_daily_plan_by_date_with_blocks(plan_input.user_id, plan_input.plan_date)
        previous_id = existing.id if existing else None

        rounded_now, plan_start = self._plan_window(plan_input, now)
        chains = self._build_chains(plan_input, anchors, current_location, plan_start)
        ramp = self.wake_ramp_generator.generate(rounded_now, plan_input.wake_time, plan_input.energy_state)
        meals = self.meal_planner.place_meals(
            chains, anchors, plan_input.wake_time, plan_input.sleep_time, plan_start
        )

        plan = DailyPlan(
            id=str(uuid.uuid4()),
            user_id=plan_input.user_id,
            plan_date=plan_input.plan_date,
            wake_time=plan_input.wake_time,
            sleep_time=plan_input.sleep_time,
            energy_state=plan_input.energy_state,
            plan_start=plan_start,
            generated_after_now=rounded_now > plan_input.wake_time,
            created_at=now,
        )
        blocks = build_time_blocks(chains, ramp, plan.id, plan_start, meals)
        exit_times = exit_times_for(chains, blocks, plan.id)

        if previous_id:
            logger.info("Replacing plan %s for %s on %s", previous_id, plan.user_id, plan.plan_date)
        try:
            saved = self.store.replace_daily_plan(plan, blocks, exit_times, expected_previous_id=previous_id)
        except DuplicatePlanError:
            logger.info("Concurrent generation for %s on %s, reading winner", plan.user_id, plan.plan_date)
            return self._read_winner(plan.user_id, plan.plan_date)

        saved.chains = chains
        saved.wake_ramp = ramp
        logger.info(
            "Generated plan %s for %s on %s: %d chain(s), %d meal(s), %d block(s)",
            saved.id, saved.user_id, saved.plan_date, len(chains),
            sum(1 for m in meals if not m.skipped), len(blocks)
        )
        return self.hydrate(saved)

    def _read_winner(self, user_id: str, plan_date: date) -> DailyPlan:
        for delay in self.cfg.DUPLICATE_RETRY_DELAYS:
            self._sleep(delay)
            plan = self.store.get_daily_plan_by_date_with_blocks(user_id, plan_date)
            if plan:
                return self.hydrate(plan)
        raise PlanConflictError(
            f"Plan for {user_id} on {plan_date} is being generated concurrently",
            hint="Retry in a moment",
        )

    def preview_chains(
        self,
        plan_input: PlanInput,
        current_location: Optional[Location] = None,
        manual_anchor: Optional[ManualAnchorInput] = None,
        now: Optional[datetime] = None
    ) -> PlanPreview:
        now = now or datetime.now(tz=plan_input.wake_time.tzinfo)
        anchors = self.collect_anchors(plan_input, None)
        if manual_anchor is not None:
            anchors = sorted(anchors + [anchor_from_manual(manual_anchor)], key=lambda a: a.start)
        rounded_now, plan_start = self._plan_window(plan_input, now)
        chains = self._build_chains(plan_input, anchors, current_location, plan_start)
        tracker = self.location_tracker
        return PlanPreview(
            plan_start=plan_start,
            sleep_time=plan_input.sleep_time,
            chains=chains,
            wake_ramp=self.wake_ramp_generator.generate(
                rounded_now, plan_input.wake_time, plan_input.energy_state
            ),
            meals=self.meal_planner.place_meals(
                chains, anchors, plan_input.wake_time, plan_input.sleep_time, plan_start
            ),
            home_intervals=tracker.home_intervals(chains, plan_start, plan_input.sleep_time),
            away_intervals=tracker.away_intervals(chains, plan_start, plan_input.sleep_time),
        )

    # --- read path ---

    def get_plan_for_date(self, user_id: str, plan_date: date) -> Optional[DailyPlan]:
        plan = self.store.get_daily_plan_by_date_with_blocks(user_id, plan_date)
        return self.hydrate(plan) if plan else None

    def hydrate(self, plan: DailyPlan) -> DailyPlan:
        """Fill derived fields: chains (reconstructed when not cached), wake ramp, home intervals."""
        if not plan.chains:
            try:
                plan.chains = self.reconstructor.reconstruct(plan.time_blocks)
            except Exception:
                logger.exception("Chain reconstruction failed for plan %s", plan.id)
                plan.chains = []
        if plan.wake_ramp is None:
            plan.wake_ramp = self._ramp_from_blocks(plan)
        start = plan.plan_start or plan.wake_time
        plan.home_intervals = self.location_tracker.home_intervals(plan.chains, start, plan.sleep_time)
        return plan

    def _ramp_from_blocks(self, plan: DailyPlan) -> WakeRamp:
        ramp_blocks = [b for b in plan.time_blocks if b.activity_type == ActivityType.WAKE_RAMP]
        if not ramp_blocks:
            return WakeRamp(
                start=plan.wake_time,
                end=plan.wake_time,
                energy_state=plan.energy_state,
                skipped=True,
                skip_reason="Already awake",
            )
        ramp_blocks.sort(key=lambda b: b.start_time)
        return WakeRamp(
            start=ramp_blocks[0].start_time,
            end=ramp_blocks[-1].end_time,
            energy_state=plan.energy_state,
            steps=[
                WakeRampStep(b.activity_name, b.start_time, b.end_time, b.duration_minutes)
                for b in ramp_blocks
            ],
        )

    def _require_plan(self, user_id: str, plan_date: date) -> DailyPlan:
        plan = self.store.get_daily_plan_by_date_with_blocks(user_id, plan_date)
        if plan is None:
            raise PlanNotFoundError(f"No plan for {user_id} on {plan_date}", hint="Generate a plan first")
        return plan

    # --- step editing ---

    def _resolve_block(self, plan: DailyPlan, ref: str) -> TimeBlock:
        """Accept a block id or a stable step_id (survives block id churn)."""
        for block in plan.time_blocks:
            if block.id == ref:
                return block
        for block in plan.time_blocks:
            if block.metadata.step_id == ref:
                return block
        raise StaleTimeBlockReferenceError(ref, plan.id)

    def _chain_blocks(self, plan: DailyPlan, block: TimeBlock) -> List[TimeBlock]:
        if not _is_chain_step(block):
            raise InvalidPlanInputError(
                f"Time block {block.id} is not a chain step", code="NOT_A_CHAIN_STEP"
            )
        chain_id = block.metadata.resolved_chain_id
        blocks = [b for b in plan.time_blocks if _is_chain_step(b) and b.metadata.resolved_chain_id == chain_id]
        return sorted(blocks, key=lambda b: (b.start_time, b.sequence_order))

    def _resynced_exit_times(
        self,
        plan: DailyPlan,
        chain_blocks: List[TimeBlock],
        placed: List[ReflowedStep]
    ) -> List[ExitTime]:
        moved = {step.id: step for step in placed}
        updated = [
            b.copy_with(start_time=moved[b.id].start_time, end_time=moved[b.id].end_time)
            for b in chain_blocks
            if b.id in moved
        ]
        anchor_id = next((b.metadata.anchor_id for b in chain_blocks if b.metadata.anchor_id), None)
        current = next((e for e in plan.exit_times if e.anchor_id == anchor_id), None)
        if current is None:
            return []
        resynced = resync_exit_time(current, updated)
        return [resynced] if resynced else []

    def reorder_step(
        self,
        user_id: str,
        plan_date: date,
        source_step_id: str,
        target_step_id: str
    ) -> DailyPlan:
        plan = self._require_plan(user_id, plan_date)
        source = self._resolve_block(plan, source_step_id)
        target = self._resolve_block(plan, target_step_id)
        if source.metadata.resolved_chain_id != target.metadata.resolved_chain_id:
            raise InvalidPlanInputError(
                "Steps belong to different chains", code="STEP_NOT_IN_SAME_CHAIN"
            )

        if not _is_chain_step(target):
            raise InvalidPlanInputError(f"Time block {target.id} is not a chain step", code="NOT_A_CHAIN_STEP")
        chain_blocks = self._chain_blocks(plan, source)
        order = [b.id for b in chain_blocks]
        new_order = move_step(order, source.id, target.id)
        if new_order == order:
            return self.hydrate(plan)

        deadline = max(b.end_time for b in chain_blocks)
        placed = self.reflow_engine.reflow(
            [ReflowStep(b.id, b.duration_minutes) for b in chain_blocks], new_order, deadline
        )
        slots = sorted(b.sequence_order for b in chain_blocks)
        self.store.commit_plan_edit(
            plan.id,
            [
                (step.id, {"start_time": step.start_time, "end_time": step.end_time, "sequence_order": slot})
                for step, slot in zip(placed, slots)
            ],
            self._resynced_exit_times(plan, chain_blocks, placed),
        )
        logger.info("Reordered chain %s in plan %s", source.metadata.resolved_chain_id, plan.id)
        return self.get_plan_for_date(user_id, plan_date)

    def edit_step_duration(
        self,
        user_id: str,
        plan_date: date,
        step_ref: str,
        duration_minutes: int,
        now: Optional[datetime] = None
    ) -> DailyPlan:
        plan = self._require_plan(user_id, plan_date)
        edited = self._resolve_block(plan, step_ref)
        chain_blocks = self._chain_blocks(plan, edited)
        deadline = max(b.end_time for b in chain_blocks)

        placed = self.reflow_engine.resize(
            [ReflowStep(b.id, b.duration_minutes) for b in chain_blocks],
            edited.id,
            int(duration_minutes),
            deadline,
        )
        stamp = (now or datetime.now(tz=deadline.tzinfo)).isoformat()
        updates = []
        for step in placed:
            changes = {"start_time": step.start_time, "end_time": step.end_time}
            if step.id == edited.id:
                changes["metadata"] = edited.metadata.merge({
                    "custom_duration_minutes": step.duration_minutes,
                    "custom_updated_at": stamp,
                })
            updates.append((step.id, changes))
        self.store.commit_plan_edit(plan.id, updates, self._resynced_exit_times(plan, chain_blocks, placed))
        return self.get_plan_for_date(user_id, plan_date)

    def merge_block_metadata(self, user_id: str, block_id: str, patch: Dict[str, Any]) -> TimeBlock:
        if not isinstance(patch, dict):
            raise InvalidPlanInputError("Metadata patch must be an object", code="INVALID_METADATA_PATCH")
        forbidden = IDENTITY_FIELDS.intersection(patch)
        if forbidden:
            raise ForbiddenMetadataFieldError(forbidden)
        block = self.store.get_time_block(block_id)
        plan = self.store.get_daily_plan(block.plan_id) if block else None
        if block is None or plan is None or plan.user_id != user_id:
            raise StaleTimeBlockReferenceError(block_id)
        merged = block.metadata.merge(patch)
        return self.store.update_time_block(block_id, {"metadata": merged})

    def update_step_status(
        self,
        user_id: str,
        block_id: str,
        status: Any,
        now: Optional[datetime] = None
    ) -> TimeBlock:
        try:
            new_status = StepStatus(str(status or "").strip().lower())
        except ValueError:
            raise InvalidPlanInputError(
                "status must be one of pending | in-progress | completed | skipped",
                code="INVALID_STEP_STATUS",
            )
        block = self.store.get_time_block(block_id)
        plan = self.store.get_daily_plan(block.plan_id) if block else None
        if block is None or plan is None or plan.user_id != user_id:
            raise StaleTimeBlockReferenceError(block_id)

        changes: Dict[str, Any] = {"status": new_status}
        if new_status == StepStatus.COMPLETED:
            stamp = (now or datetime.now(tz=block.end_time.tzinfo)).isoformat()
            changes["metadata"] = block.metadata.merge({"completed_at": stamp})
        return self.store.update_time_block(block_id, changes)

    # --- degradation ---

    def _droppable(self, block: TimeBlock) -> bool:
        return (
            block.status == StepStatus.PENDING
            and block.metadata.role.can_skip_when_late
            and block.activity_type not in _KEPT_WHEN_DEGRADED
        )

    def degrade_plan(self, user_id: str, plan_date: date) -> DailyPlan:
        """
        Lighten a plan the user is falling behind on.

        Pending blocks that may be skipped when late (optional prep steps,
        recovery, prep of optional anchors) are marked skipped. Travel,
        commitments, meals and the wake ramp stay. Dropped chain steps leave
        the chain view and each chain's remaining steps reflow against its
        deadline, so the chain starts later. Everything is committed at once
        and the plan is marked degraded.
        """
        plan = self._require_plan(user_id, plan_date)
        dropped = [b for b in plan.time_blocks if self._droppable(b)]
        dropped_ids = {b.id for b in dropped}

        updates = []
        for block in dropped:
            changes: Dict[str, Any] = {"status": StepStatus.SKIPPED, "skip_reason": DEGRADED_SKIP_REASON}
            if block.metadata.chain_view_only:
                changes["metadata"] = block.metadata.merge({"chain_view_only": False})
            updates.append((block.id, changes))

        exit_times = []
        chain_ids = sorted({b.metadata.resolved_chain_id for b in dropped if _is_chain_step(b)})
        for chain_id in chain_ids:
            chain_blocks = sorted(
                (b for b in plan.time_blocks if _is_chain_step(b) and b.metadata.resolved_chain_id == chain_id),
                key=lambda b: (b.start_time, b.sequence_order),
            )
            kept = [b for b in chain_blocks if b.id not in dropped_ids and b.status != StepStatus.SKIPPED]
            if not kept:
                continue
            deadline = max(b.end_time for b in chain_blocks)
            placed = self.reflow_engine.reflow(
                [ReflowStep(b.id, b.duration_minutes) for b in kept], [b.id for b in kept], deadline
            )
            updates.extend(
                (step.id, {"start_time": step.start_time, "end_time": step.end_time}) for step in placed
            )
            exit_times.extend(self._resynced_exit_times(plan, kept, placed))

        self.store.commit_plan_edit(plan.id, updates, exit_times, status=DEGRADED_STATUS)
        logger.info("Degraded plan %s: dropped %d block(s)", plan.id, len(dropped))
        return self.get_plan_for_date(user_id, plan_date)
