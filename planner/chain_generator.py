"""
ChainGenerator: builds an ExecutionChain around each anchor.

Backward from the anchor start:

    [prep sub-steps ... exit gate][travel there][ANCHOR][travel back][recovery]
                                               ^ chain_completion_deadline

Travel and prep durations come from injected estimators. Travel failures
degrade to the configured default rather than failing the chain.
"""
from datetime import datetime
from typing import List, Optional, Tuple

from planner.config_manager import SchedulerConfig, config as default_config
from planner.estimators import (
    PrepTimeEstimator,
    TemplatePrepTimeEstimator,
    TravelEstimator,
    create_travel_estimator,
)
from planner.exceptions import PlannerError
from planner.logger import get_logger
from planner.models import (
    Anchor,
    ChainStepInstance,
    CommitmentEnvelope,
    ExecutionChain,
    GenerationConfig,
    StepRole,
    add_minutes,
    minutes_between,
)
from planner.templates import fit_template, get_template

logger = get_logger("chain_generator")


def chain_id_for(anchor: Anchor) -> str:
    return f"chain-{anchor.id}"


class ChainGenerator:
    def __init__(
        self,
        travel_estimator: Optional[TravelEstimator] = None,
        prep_estimator: Optional[PrepTimeEstimator] = None,
        cfg: Optional[SchedulerConfig] = None
    ):
        self.cfg = cfg or default_config
        self.travel_estimator = travel_estimator or create_travel_estimator(self.cfg)
        self.prep_estimator = prep_estimator or TemplatePrepTimeEstimator(self.cfg)

    def generate_chains_for_date(
        self,
        anchors: List[Anchor],
        gen_config: GenerationConfig
    ) -> List[ExecutionChain]:
        """Generate one chain per anchor, sorted by anchor start. Bad anchors are skipped."""
        chains = []
        for anchor in sorted(anchors, key=lambda a: a.start):
            try:
                chains.append(self.generate_chain(anchor, gen_config))
            except (PlannerError, ValueError) as e:
                logger.warning("Skipping chain for anchor %s (%s): %s", anchor.id, anchor.title, e)
        logger.info("Generated %d chain(s) for %s", len(chains), gen_config.plan_date)
        return chains

    def generate_chain(self, anchor: Anchor, gen_config: GenerationConfig) -> ExecutionChain:
        if anchor.end <= anchor.start:
            raise ValueError(f"Anchor {anchor.id} ends before it starts")

        min_step = self.cfg.MIN_STEP_MINUTES
        chain_id = chain_id_for(anchor)
        origin = gen_config.current_location.label()

        travel, travel_method = self._travel_minutes(origin, anchor.location)
        travel_back, _ = self._travel_minutes(anchor.location, origin, reverse=True)
        prep = max(min_step, int(self.prep_estimator.estimate(anchor.type, gen_config.user_energy)))

        prep, travel, compressed = self._fit_lead_time(
            prep, travel, anchor.start, gen_config.earliest_start
        )
        if compressed:
            logger.warning(
                "Chain %s compressed to prep=%d travel=%d (anchor at %s)",
                chain_id, prep, travel, anchor.start.isoformat()
            )

        travel_start = add_minutes(anchor.start, -travel)
        prep_start = add_minutes(travel_start, -prep)

        steps = self._prep_steps(anchor, chain_id, prep_start, prep)
        travel_there = ChainStepInstance(
            step_id=f"{chain_id}-travel-there",
            chain_id=chain_id,
            name=f"Travel to {anchor.title}",
            start_time=travel_start,
            end_time=anchor.start,
            duration_minutes=travel,
            is_required=anchor.must_attend,
            can_skip_when_late=not anchor.must_attend,
            role=StepRole.CHAIN_STEP,
            metadata={"travel_method": travel_method},
        )
        steps.append(travel_there)

        envelope = self._envelope(anchor, chain_id, prep_start, travel_there, travel_back)
        return ExecutionChain(
            chain_id=chain_id,
            anchor_id=anchor.id,
            anchor=anchor,
            chain_completion_deadline=anchor.start,
            steps=steps,
            commitment_envelope=envelope,
            metadata={
                "compressed": compressed,
                "prep_minutes": prep,
                "travel_minutes": travel,
                "travel_method": travel_method,
            },
        )

    def _travel_minutes(
        self,
        origin: Optional[str],
        destination: Optional[str],
        reverse: bool = False
    ) -> Tuple[int, str]:
        default = self.cfg.DEFAULT_TRAVEL_MINUTES
        if not origin or not destination:
            return default, "default"
        try:
            estimate = self.travel_estimator.estimate(origin, destination)
        except PlannerError as e:
            logger.warning(
                "Travel estimate %s -> %s failed, using %d min: %s",
                origin, destination, default, e.message
            )
            return default, "default"
        if estimate.minutes <= 0:
            direction = "back" if reverse else "there"
            logger.warning("Non-positive travel estimate (%s), using %d min", direction, default)
            return default, "default"
        return estimate.minutes, estimate.method

    def _fit_lead_time(
        self,
        prep: int,
        travel: int,
        anchor_start: datetime,
        earliest_start: Optional[datetime]
    ) -> Tuple[int, int, bool]:
        """Shrink prep, then travel, so the chain starts no earlier than earliest_start."""
        if earliest_start is None:
            return prep, travel, False
        available = minutes_between(earliest_start, anchor_start)
        if available >= prep + travel:
            return prep, travel, False
        min_step = self.cfg.MIN_STEP_MINUTES
        prep = max(min_step, min(prep, available - travel))
        travel = max(min_step, min(travel, available - prep))
        return prep, travel, True

    def _prep_steps(
        self,
        anchor: Anchor,
        chain_id: str,
        prep_start: datetime,
        prep_minutes: int
    ) -> List[ChainStepInstance]:
        steps = []
        cursor = prep_start
        fitted = fit_template(get_template(anchor.type), prep_minutes, self.cfg.MIN_STEP_MINUTES)
        for template, minutes in fitted:
            end = add_minutes(cursor, minutes)
            metadata = {"template_step_id": template.id}
            if template.role == StepRole.EXIT_GATE:
                metadata["gate_conditions"] = {tag: False for tag in template.gate_tags}
            steps.append(ChainStepInstance(
                step_id=f"{chain_id}-{template.id}",
                chain_id=chain_id,
                name=template.name,
                start_time=cursor,
                end_time=end,
                duration_minutes=minutes,
                is_required=template.is_required and anchor.must_attend,
                can_skip_when_late=template.can_skip_when_late or not anchor.must_attend,
                role=template.role,
                metadata=metadata,
            ))
            logger.debug("%s: %s %s-%s", chain_id, template.name, cursor.time(), end.time())
            cursor = end
        return steps

    def _envelope(
        self,
        anchor: Anchor,
        chain_id: str,
        prep_start: datetime,
        travel_there: ChainStepInstance,
        travel_back_minutes: int
    ) -> CommitmentEnvelope:
        if anchor.duration_minutes >= self.cfg.LONG_ANCHOR_MINUTES:
            recovery_minutes = self.cfg.RECOVERY_LONG_MINUTES
        else:
            recovery_minutes = self.cfg.RECOVERY_MINUTES

        back_end = add_minutes(anchor.end, travel_back_minutes)
        return CommitmentEnvelope(
            envelope_id=f"{chain_id}-envelope",
            prep=ChainStepInstance(
                step_id=f"{chain_id}-prep",
                chain_id=chain_id,
                name="Preparation",
                start_time=prep_start,
                end_time=travel_there.start_time,
                duration_minutes=minutes_between(prep_start, travel_there.start_time),
                is_required=anchor.must_attend,
            ),
            travel_there=travel_there,
            anchor=ChainStepInstance(
                step_id=f"{chain_id}-anchor",
                chain_id=chain_id,
                name=anchor.title,
                start_time=anchor.start,
                end_time=anchor.end,
                duration_minutes=anchor.duration_minutes,
                is_required=anchor.must_attend,
                role=StepRole.ANCHOR,
                metadata={"anchor_id": anchor.id, "anchor_type": anchor.type.value},
            ),
            travel_back=ChainStepInstance(
                step_id=f"{chain_id}-travel-back",
                chain_id=chain_id,
                name=f"Travel from {anchor.title}",
                start_time=anchor.end,
                end_time=back_end,
                duration_minutes=travel_back_minutes,
                is_required=False,
            ),
            recovery=ChainStepInstance(
                step_id=f"{chain_id}-recovery",
                chain_id=chain_id,
                name="Recovery",
                start_time=back_end,
                end_time=add_minutes(back_end, recovery_minutes),
                duration_minutes=recovery_minutes,
                is_required=False,
                can_skip_when_late=True,
                role=StepRole.RECOVERY,
            ),
        )
