"""
WakeRampGenerator: gentle pre-wake steps filling [ramp start, wake time).

Each energy state has a profile of (name, base minutes). The profile is
stretched or squeezed so the steps exactly cover the span; inner step
boundaries fall on whole minutes and the last step ends at wake time.

The ramp never starts earlier than wake time minus the energy state's cap,
so a plan generated the night before still gets a morning-sized ramp.
"""
import math
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from planner.config_manager import SchedulerConfig, config as default_config
from planner.models import EnergyState, WakeRamp, WakeRampStep, add_minutes, minutes_between

ALREADY_AWAKE_REASON = "Already awake"


class WakeRampGenerator:
    def __init__(self, cfg: Optional[SchedulerConfig] = None):
        self.cfg = cfg or default_config

    def profile(self, energy_state: EnergyState) -> List[Tuple[str, int]]:
        return [(str(name), int(minutes)) for name, minutes in self.cfg.WAKE_RAMP_PROFILES[energy_state.value]]

    def max_minutes(self, energy_state: EnergyState) -> int:
        cap = (self.cfg.WAKE_RAMP_MAX_MINUTES or {}).get(energy_state.value)
        if cap is None:
            cap = sum(minutes for _, minutes in self.profile(energy_state))
        return max(1, int(cap))

    def ramp_start(self, plan_start: datetime, wake_time: datetime, energy_state: EnergyState) -> datetime:
        earliest = wake_time - timedelta(minutes=self.max_minutes(energy_state))
        return max(plan_start, earliest)

    def generate(
        self,
        plan_start: datetime,
        wake_time: datetime,
        energy_state: EnergyState
    ) -> WakeRamp:
        if plan_start >= wake_time:
            return WakeRamp(
                start=wake_time,
                end=wake_time,
                energy_state=energy_state,
                skipped=True,
                skip_reason=ALREADY_AWAKE_REASON,
            )

        start = self.ramp_start(plan_start, wake_time, energy_state)
        span = (wake_time - start).total_seconds() / 60
        whole = math.floor(span)
        # 每步至少 1 分钟，跨度不够时丢弃后面的步骤
        profile = self.profile(energy_state)[:max(1, whole)]
        count = len(profile)
        weight_total = sum(max(minutes, 1) for _, minutes in profile)

        steps = []
        cursor = start
        cumulative = 0.0
        boundary = 0
        for index, (name, minutes) in enumerate(profile):
            cumulative += span * max(minutes, 1) / weight_total
            if index == count - 1:
                end = wake_time
            else:
                boundary = max(boundary + 1, int(round(cumulative)))
                boundary = min(boundary, whole - (count - 1 - index))
                end = add_minutes(start, boundary)
            steps.append(WakeRampStep(
                name=name,
                start_time=cursor,
                end_time=end,
                duration_minutes=minutes_between(cursor, end),
            ))
            cursor = end

        return WakeRamp(start=start, end=wake_time, energy_state=energy_state, steps=steps)
