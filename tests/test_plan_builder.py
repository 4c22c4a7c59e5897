import threading
from datetime import date, datetime

import pytest

from planner.anchor_service import AnchorProvider, StaticAnchorProvider
from planner.chain_generator import ChainGenerator
from planner.estimators import FixedPrepTimeEstimator, FixedTravelEstimator, TravelEstimator
from planner.exceptions import (
    DuplicatePlanError,
    ForbiddenMetadataFieldError,
    InvalidPlanInputError,
    ManualAnchorRequiredError,
    PlanConflictError,
    PlanNotFoundError,
    StaleTimeBlockReferenceError,
    TravelEstimationError,
)
from planner.models import ActivityType, Anchor, AnchorType, EnergyState, StepRole, StepStatus
from planner.plan_builder import PlanBuilder
from planner.plan_store import InMemoryPlanStore

DAY = date(2026, 10, 19)
NOW = datetime(2026, 10, 19, 6, 12)


def _at(hhmm: str) -> datetime:
    hour, minute = map(int, hhmm.split(":"))
    return datetime(2026, 10, 19, hour, minute)


def _anchor(anchor_id="a1", start="09:00", end="10:00", title="Algorithms lecture") -> Anchor:
    return Anchor(
        id=anchor_id, title=title, start=_at(start), end=_at(end), type=AnchorType.CLASS, location="Campus"
    )


def _builder(anchors=None, store=None, travel=None, provider=None, sleep=None, prep=10) -> PlanBuilder:
    return PlanBuilder(
        store=store or InMemoryPlanStore(),
        anchor_provider=provider or StaticAnchorProvider(anchors or []),
        chain_generator=ChainGenerator(travel or FixedTravelEstimator(18), FixedPrepTimeEstimator(prep)),
        sleep=sleep or (lambda seconds: None),
    )


def _input(builder, energy="medium"):
    return builder.validate_plan_request("u1", "2026-10-19T07:00", "2026-10-19T23:00", energy)


def _chain_step_ids(plan, chain_index=0):
    return [step.step_id for step in plan.chains[chain_index].steps]


class _BrokenCalendar(AnchorProvider):
    def get_anchors_for_date(self, plan_date, user_id):
        raise RuntimeError("calendar offline")


class _FailingTravel(TravelEstimator):
    def estimate(self, origin, destination):
        raise TravelEstimationError("service down")


class _BarrierStore(InMemoryPlanStore):
    """Holds every generator at the swap until all of them have arrived."""

    def __init__(self, parties: int):
        super().__init__()
        self.barrier = threading.Barrier(parties)

    def replace_daily_plan(self, plan, blocks, exit_times, expected_previous_id=None):
        self.barrier.wait(timeout=5)
        return super().replace_daily_plan(plan, blocks, exit_times, expected_previous_id)


class _InterleavingStore(InMemoryPlanStore):
    """Runs `interleave` once, just before the next plan swap."""

    def __init__(self):
        super().__init__()
        self.interleave = None

    def replace_daily_plan(self, plan, blocks, exit_times, expected_previous_id=None):
        hook, self.interleave = self.interleave, None
        if hook is not None:
            hook()
        return super().replace_daily_plan(plan, blocks, exit_times, expected_previous_id)


class _AlwaysDuplicateStore(InMemoryPlanStore):
    def replace_daily_plan(self, plan, blocks, exit_times, expected_previous_id=None):
        raise DuplicatePlanError(plan.user_id, plan.plan_date.isoformat())


def test_generate_daily_plan_persists_blocks_chains_and_exit_times():
    builder = _builder([_anchor()])

    plan = builder.generate_daily_plan(_input(builder), now=NOW)

    assert plan.plan_start == _at("07:00")
    assert plan.generated_after_now is False
    assert len(plan.chains) == 1
    assert plan.chains[0].chain_completion_deadline == _at("09:00")
    assert [e.exit_time for e in plan.exit_times] == [_at("08:42")]
    assert [(i.start, i.end) for i in plan.home_intervals] == [
        (_at("07:00"), _at("08:42")),
        (_at("10:18"), _at("23:00")),
    ]
    commitment = [b for b in plan.time_blocks if b.activity_type == ActivityType.COMMITMENT]
    assert [b.activity_id for b in commitment] == ["a1"]
    assert [b.sequence_order for b in plan.time_blocks] == list(range(len(plan.time_blocks)))
    assert builder.store.get_daily_plan_by_date_with_blocks("u1", DAY).id == plan.id


def test_generate_daily_plan_builds_wake_ramp_from_now_to_wake():
    builder = _builder([_anchor()])

    plan = builder.generate_daily_plan(_input(builder), now=NOW)

    assert plan.wake_ramp.skipped is False
    assert plan.wake_ramp.start == _at("06:15")
    assert plan.wake_ramp.end == _at("07:00")
    ramp_blocks = [b for b in plan.time_blocks if b.activity_type == ActivityType.WAKE_RAMP]
    assert len(ramp_blocks) == 4
    assert all(b.status == StepStatus.PENDING for b in ramp_blocks)


def test_generate_after_wake_starts_at_rounded_now_and_compresses():
    builder = _builder([_anchor()])

    plan = builder.generate_daily_plan(_input(builder), now=_at("08:47"))

    assert plan.plan_start == _at("08:50")
    assert plan.generated_after_now is True
    assert plan.wake_ramp.skipped is True
    assert plan.chains[0].metadata["compressed"] is True
    assert plan.chains[0].chain_start == _at("08:50")


def test_generate_without_anchors_requires_manual_anchor():
    builder = _builder([])

    with pytest.raises(ManualAnchorRequiredError) as exc:
        builder.generate_daily_plan(_input(builder), now=NOW)

    assert exc.value.code == "MANUAL_ANCHOR_REQUIRED"
    assert builder.store.get_daily_plan_by_date_with_blocks("u1", DAY) is None


def test_manual_anchor_is_used_and_remembered():
    builder = _builder([])
    manual = builder.validate_manual_anchor({
        "title": "Dentist",
        "start_time": "2026-10-19T11:00",
        "end_time": "2026-10-19T11:30",
        "anchor_type": "appointment",
    })

    first = builder.generate_daily_plan(_input(builder), manual_anchor=manual, now=NOW)
    second = builder.generate_daily_plan(_input(builder), now=NOW)

    assert [c.anchor.title for c in first.chains] == ["Dentist"]
    assert first.chains[0].anchor.must_attend is True
    assert [c.anchor.title for c in second.chains] == ["Dentist"]


def test_calendar_failure_degrades_to_manual_anchor():
    builder = _builder(provider=_BrokenCalendar())
    manual = builder.validate_manual_anchor({
        "title": "Study group",
        "start_time": "2026-10-19T14:00",
        "end_time": "2026-10-19T15:00",
    })

    plan = builder.generate_daily_plan(_input(builder), manual_anchor=manual, now=NOW)

    assert len(plan.chains) == 1


def test_travel_failure_degrades_to_default_travel():
    builder = _builder([_anchor()], travel=_FailingTravel())

    plan = builder.generate_daily_plan(_input(builder), now=NOW)

    assert [e.exit_time for e in plan.exit_times] == [_at("08:30")]


def test_regenerating_replaces_previous_plan():
    store = InMemoryPlanStore()
    builder = _builder([_anchor()], store=store)

    old = builder.generate_daily_plan(_input(builder), now=NOW)
    new = builder.generate_daily_plan(_input(builder, energy="high"), now=NOW)

    assert new.id != old.id
    assert new.energy_state == EnergyState.HIGH
    assert store.get_daily_plan(old.id) is None
    assert all(store.get_time_block(b.id) is None for b in old.time_blocks)
    assert store.get_daily_plan_by_date_with_blocks("u1", DAY).id == new.id


def test_concurrent_generation_returns_the_same_plan():
    store = _BarrierStore(parties=2)
    builder = _builder([_anchor()], store=store)
    plan_input = _input(builder)
    results, errors = [], []

    def run():
        try:
            results.append(builder.generate_daily_plan(plan_input, now=NOW))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=run) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert len(results) == 2
    assert results[0].id == results[1].id
    assert store.get_daily_plan_by_date_with_blocks("u1", DAY).id == results[0].id


def test_regeneration_racing_another_regeneration_keeps_one_complete_plan():
    store = _InterleavingStore()
    builder = _builder([_anchor()], store=store)
    original = builder.generate_daily_plan(_input(builder), now=NOW)
    inner = []
    store.interleave = lambda: inner.append(
        builder.generate_daily_plan(_input(builder, energy="high"), now=NOW)
    )

    outer = builder.generate_daily_plan(_input(builder), now=NOW)

    current = store.get_daily_plan_by_date_with_blocks("u1", DAY)
    assert outer.id == inner[0].id == current.id
    assert current.energy_state == EnergyState.HIGH
    assert store.get_daily_plan(original.id) is None
    assert all(store.get_time_block(b.id) is None for b in original.time_blocks)
    assert [b.id for b in current.time_blocks] == [b.id for b in inner[0].time_blocks]
    assert len(current.exit_times) == 1


def test_duplicate_retry_gives_up_after_configured_delays():
    delays = []
    builder = _builder([_anchor()], store=_AlwaysDuplicateStore(), sleep=delays.append)

    with pytest.raises(PlanConflictError) as exc:
        builder.generate_daily_plan(_input(builder), now=NOW)

    assert exc.value.code == "DUPLICATE_PLAN"
    assert delays == [0.05, 0.1, 0.15]


def test_get_plan_for_date_reconstructs_chains_from_blocks():
    builder = _builder([_anchor()])
    generated = builder.generate_daily_plan(_input(builder), now=NOW)

    loaded = builder.get_plan_for_date("u1", DAY)

    assert loaded.chains[0].metadata["reconstructed_from_time_blocks"] is True
    assert [(s.name, s.start_time, s.end_time) for s in loaded.chains[0].steps] == [
        (s.name, s.start_time, s.end_time) for s in generated.chains[0].steps
    ]
    assert len(loaded.wake_ramp.steps) == len(generated.wake_ramp.steps)
    assert [(i.start, i.end) for i in loaded.home_intervals][0] == (_at("07:00"), _at("08:30"))


def test_get_plan_for_date_survives_reconstruction_failure(monkeypatch):
    builder = _builder([_anchor()])
    builder.generate_daily_plan(_input(builder), now=NOW)

    def boom(blocks):
        raise ValueError("corrupt metadata")

    monkeypatch.setattr(builder.reconstructor, "reconstruct", boom)
    loaded = builder.get_plan_for_date("u1", DAY)

    assert loaded.chains == []
    assert loaded.time_blocks


def test_get_plan_for_date_returns_none_without_plan():
    assert _builder().get_plan_for_date("u1", DAY) is None


def test_reorder_step_keeps_deadline_and_durations():
    builder = _builder([_anchor()])
    plan = builder.generate_daily_plan(_input(builder), now=NOW)
    before = {s.step_id: s.duration_minutes for s in plan.chains[0].steps}
    first, second = _chain_step_ids(plan)[:2]

    updated = builder.reorder_step("u1", DAY, second, first)

    chain = updated.chains[0]
    assert [s.step_id for s in chain.steps][:2] == [second, first]
    assert chain.steps[0].start_time == _at("08:32")
    assert chain.chain_completion_deadline == _at("09:00")
    assert {s.step_id: s.duration_minutes for s in chain.steps} == before


def test_reorder_step_to_same_position_changes_nothing():
    builder = _builder([_anchor()])
    plan = builder.generate_daily_plan(_input(builder), now=NOW)
    step_id = _chain_step_ids(plan)[1]

    updated = builder.reorder_step("u1", DAY, step_id, step_id)

    assert [(b.id, b.start_time) for b in updated.time_blocks] == [(b.id, b.start_time) for b in plan.time_blocks]


def test_reorder_step_with_stale_reference():
    builder = _builder([_anchor()])
    plan = builder.generate_daily_plan(_input(builder), now=NOW)

    with pytest.raises(StaleTimeBlockReferenceError) as exc:
        builder.reorder_step("u1", DAY, "block-from-old-plan", _chain_step_ids(plan)[0])

    assert exc.value.code == "STALE_TIME_BLOCK_REFERENCE"


def test_reorder_step_across_chains_is_rejected():
    builder = _builder([_anchor("a1", "09:00", "10:00"), _anchor("a2", "14:00", "15:00")])
    plan = builder.generate_daily_plan(_input(builder), now=NOW)

    with pytest.raises(InvalidPlanInputError) as exc:
        builder.reorder_step("u1", DAY, _chain_step_ids(plan, 0)[0], _chain_step_ids(plan, 1)[0])

    assert exc.value.code == "STEP_NOT_IN_SAME_CHAIN"


def test_reorder_step_accepts_block_ids_from_current_plan():
    builder = _builder([_anchor()])
    plan = builder.generate_daily_plan(_input(builder), now=NOW)
    blocks = [b for b in plan.time_blocks if b.metadata.chain_view_only]

    updated = builder.reorder_step("u1", DAY, blocks[1].id, blocks[0].id)

    assert updated.chains[0].steps[0].metadata["time_block_id"] == blocks[1].id


def test_edit_step_duration_reflows_against_deadline():
    builder = _builder([_anchor()])
    plan = builder.generate_daily_plan(_input(builder), now=NOW)
    first = plan.chains[0].steps[0]

    updated = builder.edit_step_duration(
        "u1", DAY, first.step_id, first.duration_minutes + 5, now=_at("07:10")
    )

    chain = updated.chains[0]
    assert chain.steps[0].start_time == _at("08:27")
    assert chain.chain_completion_deadline == _at("09:00")
    edited = builder.store.get_time_block(chain.steps[0].metadata["time_block_id"])
    assert edited.metadata.extra["custom_duration_minutes"] == first.duration_minutes + 5
    assert edited.metadata.extra["custom_updated_at"] == _at("07:10").isoformat()


def test_merge_block_metadata_merges_gate_conditions():
    builder = _builder([_anchor()])
    plan = builder.generate_daily_plan(_input(builder), now=NOW)
    gate = next(b for b in plan.time_blocks if b.metadata.role.kind == StepRole.EXIT_GATE)

    updated = builder.merge_block_metadata("u1", gate.id, {"gate_conditions": {"keys": True}})

    assert updated.metadata.gate_conditions["keys"] is True
    assert updated.metadata.gate_conditions["phone"] is False
    assert updated.metadata.chain_id == gate.metadata.chain_id
    assert updated.metadata.role == gate.metadata.role
    assert updated.metadata.chain_view_only is True


def test_merge_block_metadata_rejects_identity_fields():
    builder = _builder([_anchor()])
    plan = builder.generate_daily_plan(_input(builder), now=NOW)

    with pytest.raises(ForbiddenMetadataFieldError) as exc:
        builder.merge_block_metadata("u1", plan.time_blocks[0].id, {"user_id": "someone-else"})

    assert exc.value.code == "FORBIDDEN_METADATA_FIELD"


def test_merge_block_metadata_hides_other_users_blocks():
    builder = _builder([_anchor()])
    plan = builder.generate_daily_plan(_input(builder), now=NOW)

    with pytest.raises(StaleTimeBlockReferenceError):
        builder.merge_block_metadata("intruder", plan.time_blocks[0].id, {"note": "x"})


def test_update_step_status_drives_chain_status():
    builder = _builder([_anchor()])
    plan = builder.generate_daily_plan(_input(builder), now=NOW)
    first_block_id = builder.get_plan_for_date("u1", DAY).chains[0].steps[0].metadata["time_block_id"]

    block = builder.update_step_status("u1", first_block_id, "in-progress")
    loaded = builder.get_plan_for_date("u1", DAY)

    assert block.status == StepStatus.IN_PROGRESS
    assert loaded.chains[0].status.value == "in-progress"
    assert plan.id == loaded.id


def test_validate_plan_request_rolls_sleep_past_midnight():
    builder = _builder()

    plan_input = builder.validate_plan_request("u1", "2026-10-19T07:00", "2026-10-19T01:00", "LOW")

    assert plan_input.sleep_time == datetime(2026, 10, 20, 1, 0)
    assert plan_input.energy_state == EnergyState.LOW
    assert plan_input.plan_date == DAY


def test_validate_plan_request_rejects_bad_input():
    builder = _builder()

    with pytest.raises(InvalidPlanInputError) as exc:
        builder.validate_plan_request("u1", "2026-10-19T07:00", "2026-10-17T23:00", "medium")
    assert exc.value.code == "INVALID_TIME_RANGE"

    with pytest.raises(InvalidPlanInputError) as exc:
        builder.validate_plan_request("u1", "not-a-time", "2026-10-19T23:00", "medium")
    assert exc.value.code == "INVALID_TIME_RANGE"

    with pytest.raises(InvalidPlanInputError) as exc:
        builder.validate_plan_request("u1", "2026-10-19T07:00", "2026-10-19T23:00", "exhausted")
    assert exc.value.code == "INVALID_ENERGY_STATE"


def test_validate_manual_anchor_rejects_bad_input():
    builder = _builder()

    assert builder.validate_manual_anchor(None) is None
    for bad in (
        {"title": "", "start_time": "2026-10-19T09:00", "end_time": "2026-10-19T10:00"},
        {"title": "Gym", "start_time": "2026-10-19T10:00", "end_time": "2026-10-19T09:00"},
        {"title": "Gym", "start_time": "2026-10-19T09:00", "end_time": "2026-10-19T10:00", "anchor_type": "party"},
    ):
        with pytest.raises(InvalidPlanInputError) as exc:
            builder.validate_manual_anchor(bad)
        assert exc.value.code == "INVALID_MANUAL_ANCHOR"


def test_preview_chains_does_not_persist():
    builder = _builder([_anchor()])

    preview = builder.preview_chains(_input(builder), now=NOW)

    assert len(preview.chains) == 1
    assert [(i.start, i.end) for i in preview.away_intervals] == [(_at("08:42"), _at("10:18"))]
    assert builder.store.get_daily_plan_by_date_with_blocks("u1", DAY) is None


def test_generate_the_night_before_caps_wake_ramp():
    builder = _builder([_anchor()])

    plan = builder.generate_daily_plan(_input(builder), now=datetime(2026, 10, 18, 22, 0))

    assert plan.plan_start == _at("07:00")
    assert plan.wake_ramp.start == _at("05:30")
    assert plan.wake_ramp.end == _at("07:00")
    ramp_blocks = [b for b in plan.time_blocks if b.activity_type == ActivityType.WAKE_RAMP]
    assert ramp_blocks[0].start_time == _at("05:30")
    assert sum(b.duration_minutes for b in ramp_blocks) == 90


def test_generate_places_meals_in_home_time():
    builder = _builder([_anchor()])

    plan = builder.generate_daily_plan(_input(builder), now=NOW)

    meals = [b for b in plan.time_blocks if b.activity_type == ActivityType.MEAL]
    assert [(b.activity_name, b.start_time, b.end_time) for b in meals] == [
        ("Breakfast", _at("07:45"), _at("08:00")),
        ("Lunch", _at("11:30"), _at("12:00")),
        ("Dinner", _at("19:00"), _at("19:45")),
    ]
    assert all(b.metadata.extra["placement_reason"] == "anchor-aware" for b in meals)
    for block in meals:
        assert any(i.start <= block.start_time and block.end_time <= i.end for i in plan.home_intervals)
    assert all(not b.metadata.chain_view_only for b in meals)
    assert len(builder.get_plan_for_date("u1", DAY).chains[0].steps) == len(plan.chains[0].steps)


def test_reorder_travel_step_moves_exit_time_with_it():
    builder = _builder([_anchor()])
    plan = builder.generate_daily_plan(_input(builder), now=NOW)
    step_ids = _chain_step_ids(plan)

    updated = builder.reorder_step("u1", DAY, step_ids[-1], step_ids[0])

    travel = next(b for b in updated.time_blocks if b.metadata.step_id == step_ids[-1])
    assert (travel.start_time, travel.end_time) == (_at("08:32"), _at("08:50"))
    assert [(e.exit_time, e.travel_minutes, e.prep_minutes) for e in updated.exit_times] == [
        (_at("08:32"), 18, 10)
    ]
    stored = builder.store.get_daily_plan_by_date_with_blocks("u1", DAY)
    assert [(e.id, e.exit_time) for e in stored.exit_times] == [(plan.exit_times[0].id, _at("08:32"))]
    assert stored.exit_times[0].time_block_id == travel.id


def test_edit_travel_duration_moves_exit_time():
    builder = _builder([_anchor()])
    plan = builder.generate_daily_plan(_input(builder), now=NOW)
    travel_step = plan.chains[0].steps[-1]

    updated = builder.edit_step_duration("u1", DAY, travel_step.step_id, 25, now=_at("07:10"))

    assert [(e.exit_time, e.travel_minutes, e.prep_minutes) for e in updated.exit_times] == [
        (_at("08:35"), 25, 10)
    ]
    assert updated.chains[0].chain_start == _at("08:25")


def test_degrade_plan_drops_optional_steps_and_keeps_essentials():
    builder = _builder([_anchor()], prep=60)
    plan = builder.generate_daily_plan(_input(builder), now=NOW)
    assert "Shower" in [s.name for s in plan.chains[0].steps]

    degraded = builder.degrade_plan("u1", DAY)

    assert degraded.status == "degraded"
    assert builder.store.get_daily_plan(plan.id).status == "degraded"
    chain = degraded.chains[0]
    assert "Shower" not in [s.name for s in chain.steps]
    assert chain.chain_start == _at("07:59")
    assert chain.chain_completion_deadline == _at("09:00")
    for previous, current in zip(chain.steps, chain.steps[1:]):
        assert previous.end_time == current.start_time

    shower = next(b for b in degraded.time_blocks if b.activity_name == "Shower")
    assert shower.status == StepStatus.SKIPPED
    assert shower.skip_reason == "Dropped during degradation"
    recovery = next(b for b in degraded.time_blocks if b.activity_type == ActivityType.RECOVERY)
    assert recovery.status == StepStatus.SKIPPED

    essential = (ActivityType.TRAVEL, ActivityType.COMMITMENT, ActivityType.MEAL, ActivityType.WAKE_RAMP)
    kept = [b for b in degraded.time_blocks if b.activity_type in essential]
    assert kept and all(b.status == StepStatus.PENDING for b in kept)
    assert [(e.exit_time, e.prep_minutes) for e in degraded.exit_times] == [(_at("08:42"), 43)]


def test_degrade_plan_twice_drops_nothing_more():
    builder = _builder([_anchor()], prep=60)
    builder.generate_daily_plan(_input(builder), now=NOW)

    first = builder.degrade_plan("u1", DAY)
    second = builder.degrade_plan("u1", DAY)

    assert [(b.id, b.status, b.start_time) for b in second.time_blocks] == [
        (b.id, b.status, b.start_time) for b in first.time_blocks
    ]


def test_degrade_plan_requires_a_plan():
    with pytest.raises(PlanNotFoundError):
        _builder().degrade_plan("u1", DAY)
