"""
MealPlanner: places breakfast, lunch and dinner into the day's home time.

For each meal, in order:
    target time -> clamp into meal window -> spacing from previous meal
    -> slot search around target (no clash with chains, wholly inside a home interval)

Home intervals stop at sleep time, so a placed meal always ends by then.

A meal that cannot be placed is kept as a skipped MealPlacement with a reason.
"""
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from planner.config_manager import SchedulerConfig, config as default_config
from planner.location_state import LocationStateTracker
from planner.logger import get_logger
from planner.models import Anchor, ExecutionChain, HomeInterval, MealPlacement, add_minutes, minutes_between

logger = get_logger("meals")

MEALS = ("breakfast", "lunch", "dinner")
MEAL_NAMES = {"breakfast": "Breakfast", "lunch": "Lunch", "dinner": "Dinner"}

PAST_WINDOW_REASON = "Past meal window"
SPACING_REASON = "Spacing constraint"
NO_SLOT_REASON = "No valid slot"
NO_HOME_REASON = "No home interval"

Span = Tuple[datetime, datetime]


def _at(reference: datetime, hhmm: str) -> datetime:
    hour, minute = map(int, str(hhmm).split(":"))
    return reference.replace(hour=hour, minute=minute, second=0, microsecond=0)


def _overlaps(start: datetime, end: datetime, spans: List[Span]) -> bool:
    return any(start < span_end and end > span_start for span_start, span_end in spans)


def _fits_home(start: datetime, end: datetime, intervals: List[HomeInterval]) -> bool:
    return any(interval.start <= start and end <= interval.end for interval in intervals)


class MealPlanner:
    def __init__(self, cfg: Optional[SchedulerConfig] = None):
        self.cfg = cfg or default_config
        self.location_tracker = LocationStateTracker(self.cfg)

    def target_time(self, meal: str, anchors: List[Anchor], wake_time: datetime) -> datetime:
        cfg = self.cfg
        after_wake = add_minutes(wake_time, cfg.BREAKFAST_AFTER_WAKE_MINUTES)
        if not anchors:
            if meal == "breakfast" and wake_time >= _at(wake_time, cfg.LATE_WAKE_TIME):
                return after_wake
            return _at(wake_time, cfg.MEAL_DEFAULT_TIMES[meal])

        if meal == "breakfast":
            return after_wake
        if meal == "lunch":
            cutoff = _at(wake_time, cfg.LUNCH_ANCHOR_CUTOFF)
            morning = [a for a in anchors if a.end < cutoff]
            if morning:
                return add_minutes(max(a.end for a in morning), cfg.MEAL_AFTER_ANCHOR_MINUTES)
            return _at(wake_time, cfg.LUNCH_FALLBACK_TIME)

        cutoff = _at(wake_time, cfg.DINNER_ANCHOR_CUTOFF)
        evening = [a for a in anchors if a.end > cutoff]
        if evening:
            return add_minutes(max(a.end for a in evening), cfg.MEAL_AFTER_ANCHOR_MINUTES)
        return _at(wake_time, cfg.MEAL_DEFAULT_TIMES["dinner"])

    def clamp_to_window(self, target: datetime, meal: str, now: datetime) -> Optional[datetime]:
        """Move target into the meal window and not before now; None once the window has passed."""
        window_start, window_end = (_at(target, t) for t in self.cfg.MEAL_WINDOWS[meal])
        if now > window_end:
            return None
        clamped = min(max(target, window_start), window_end)
        if clamped < now:
            clamped = now
        return clamped if clamped <= window_end else None

    def find_slot(
        self,
        target: datetime,
        duration: int,
        busy: List[Span],
        home: List[HomeInterval],
        now: datetime
    ) -> Optional[datetime]:
        step = self.cfg.MEAL_SLOT_STEP_MINUTES
        search = self.cfg.MEAL_SLOT_SEARCH_MINUTES
        offsets = [0] + list(range(step, search + 1, step)) + [-o for o in range(step, search + 1, step)]
        for offset in offsets:
            start = target + timedelta(minutes=offset)
            end = add_minutes(start, duration)
            if start < now:
                continue
            if not _overlaps(start, end, busy) and _fits_home(start, end, home):
                return start
        return None

    def busy_spans(self, chains: List[ExecutionChain]) -> List[Span]:
        spans = []
        for chain in chains:
            envelope = chain.commitment_envelope
            spans.append((chain.chain_start, envelope.recovery.end_time))
        return spans

    def place_meals(
        self,
        chains: List[ExecutionChain],
        anchors: List[Anchor],
        wake_time: datetime,
        sleep_time: datetime,
        plan_start: datetime
    ) -> List[MealPlacement]:
        now = max(plan_start, wake_time)
        home = self.location_tracker.meal_eligible_intervals(chains, plan_start, sleep_time)
        busy = self.busy_spans(chains)
        reason = "anchor-aware" if anchors else "default"

        placements = []
        previous_end = None
        for meal in MEALS:
            target = self.target_time(meal, anchors, wake_time)
            placement = self._place(meal, target, now, previous_end, busy, home)
            if not placement.skipped:
                placement.placement_reason = reason
                previous_end = placement.end_time
            else:
                logger.info("Skipping %s: %s", meal, placement.skip_reason)
            placements.append(placement)
        return placements

    def _place(
        self,
        meal: str,
        target: datetime,
        now: datetime,
        previous_end: Optional[datetime],
        busy: List[Span],
        home: List[HomeInterval]
    ) -> MealPlacement:
        def skipped(reason: str) -> MealPlacement:
            return MealPlacement(meal=meal, target_time=target, skipped=True, skip_reason=reason)

        start = self.clamp_to_window(target, meal, now)
        if start is None:
            return skipped(PAST_WINDOW_REASON)
        if previous_end is not None and minutes_between(previous_end, start) < self.cfg.MIN_MEAL_GAP_MINUTES:
            return skipped(SPACING_REASON)
        if not home:
            return skipped(NO_HOME_REASON)

        duration = int(self.cfg.MEAL_DURATIONS[meal])
        slot = self.find_slot(start, duration, busy, home, now)
        if slot is None:
            return skipped(NO_SLOT_REASON)
        return MealPlacement(meal=meal, start_time=slot, end_time=add_minutes(slot, duration), target_time=target)
