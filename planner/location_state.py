"""
LocationStateTracker: where the user is across the planning window.

Away = travel_there + anchor + travel_back of each chain (recovery happens at
home). Home intervals and away intervals exactly tile [plan_start, sleep_time].
"""
from datetime import datetime
from typing import List, Optional, Tuple

from planner.config_manager import SchedulerConfig, config as default_config
from planner.models import ExecutionChain, HomeInterval, LocationPeriod, LocationState

Span = Tuple[datetime, datetime]


def _merge_spans(spans: List[Span]) -> List[Span]:
    merged: List[Span] = []
    for start, end in sorted(spans):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


class LocationStateTracker:
    def __init__(self, cfg: Optional[SchedulerConfig] = None):
        self.cfg = cfg or default_config

    def away_spans(
        self,
        chains: List[ExecutionChain],
        plan_start: datetime,
        sleep_time: datetime
    ) -> List[Span]:
        spans = []
        for chain in chains:
            envelope = chain.commitment_envelope
            start = max(envelope.travel_there.start_time, plan_start)
            end = min(envelope.travel_back.end_time, sleep_time)
            if start < end:
                spans.append((start, end))
        # 重叠的外出区间 (如日程冲突) 合并为一段
        return _merge_spans(spans)

    def calculate_location_periods(
        self,
        chains: List[ExecutionChain],
        plan_start: datetime,
        sleep_time: datetime
    ) -> List[LocationPeriod]:
        if plan_start >= sleep_time:
            return []

        periods = []
        cursor = plan_start
        for start, end in self.away_spans(chains, plan_start, sleep_time):
            if cursor < start:
                periods.append(LocationPeriod(cursor, start, LocationState.AT_HOME))
            periods.append(LocationPeriod(start, end, LocationState.NOT_HOME))
            cursor = end
        if cursor < sleep_time:
            periods.append(LocationPeriod(cursor, sleep_time, LocationState.AT_HOME))
        return periods

    def home_intervals(
        self,
        chains: List[ExecutionChain],
        plan_start: datetime,
        sleep_time: datetime,
        min_minutes: int = 0
    ) -> List[HomeInterval]:
        """Home periods with touching ones merged. min_minutes > 0 filters short gaps (e.g. for meals)."""
        spans = [
            (p.start, p.end)
            for p in self.calculate_location_periods(chains, plan_start, sleep_time)
            if p.state == LocationState.AT_HOME
        ]
        intervals = [HomeInterval(start, end) for start, end in _merge_spans(spans)]
        if min_minutes > 0:
            intervals = [i for i in intervals if i.duration_minutes >= min_minutes]
        return intervals

    def meal_eligible_intervals(
        self,
        chains: List[ExecutionChain],
        plan_start: datetime,
        sleep_time: datetime
    ) -> List[HomeInterval]:
        return self.home_intervals(
            chains, plan_start, sleep_time, min_minutes=self.cfg.MIN_MEAL_INTERVAL_MINUTES
        )

    def away_intervals(
        self,
        chains: List[ExecutionChain],
        plan_start: datetime,
        sleep_time: datetime
    ) -> List[HomeInterval]:
        if plan_start >= sleep_time:
            return []
        return [HomeInterval(start, end) for start, end in self.away_spans(chains, plan_start, sleep_time)]


def location_state_at(periods: List[LocationPeriod], moment: datetime) -> Optional[LocationState]:
    for period in periods:
        if period.start <= moment < period.end:
            return period.state
    return None


def is_home_at(intervals: List[HomeInterval], moment: datetime) -> bool:
    return any(interval.contains(moment) for interval in intervals)


def total_home_minutes(intervals: List[HomeInterval]) -> int:
    return sum(interval.duration_minutes for interval in intervals)


def next_home_interval(intervals: List[HomeInterval], moment: datetime) -> Optional[HomeInterval]:
    upcoming = [i for i in intervals if i.start > moment]
    return min(upcoming, key=lambda i: i.start) if upcoming else None


def current_or_next_home_interval(intervals: List[HomeInterval], moment: datetime) -> Optional[HomeInterval]:
    for interval in intervals:
        if interval.contains(moment):
            return interval
    return next_home_interval(intervals, moment)
