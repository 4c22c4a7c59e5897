from datetime import datetime

import pytest
from fastapi import HTTPException

from planner.anchor_service import StaticAnchorProvider
from planner.chain_generator import ChainGenerator
from planner.estimators import FixedPrepTimeEstimator, FixedTravelEstimator
from planner.models import Anchor, AnchorType
from planner.plan_builder import PlanBuilder
from planner.plan_store import InMemoryPlanStore
from web.backend import deps
from web.backend.routers import chains, daily_plan, time_blocks

NOW = datetime(2026, 10, 19, 6, 12)


class _FixedClockBuilder(PlanBuilder):
    def generate_daily_plan(self, plan_input, current_location=None, manual_anchor=None, now=None):
        return super().generate_daily_plan(plan_input, current_location, manual_anchor, now=now or NOW)

    def preview_chains(self, plan_input, current_location=None, manual_anchor=None, now=None):
        return super().preview_chains(plan_input, current_location, manual_anchor, now=now or NOW)


def _install(monkeypatch, anchors=None) -> PlanBuilder:
    builder = _FixedClockBuilder(
        store=InMemoryPlanStore(),
        anchor_provider=StaticAnchorProvider(anchors or []),
        chain_generator=ChainGenerator(FixedTravelEstimator(18), FixedPrepTimeEstimator(10)),
        sleep=lambda seconds: None,
    )
    monkeypatch.setattr(deps, "_builder", builder)
    return builder


def _lecture() -> Anchor:
    return Anchor(
        id="a1",
        title="Algorithms lecture",
        start=datetime(2026, 10, 19, 9, 0),
        end=datetime(2026, 10, 19, 10, 0),
        type=AnchorType.CLASS,
        location="Campus",
    )


def _generate(**overrides):
    payload = {
        "wake_time": "2026-10-19T07:00:00",
        "sleep_time": "2026-10-19T23:00:00",
        "energy_state": "medium",
    }
    payload.update(overrides)
    return daily_plan.generate_plan(daily_plan.GeneratePlanRequest(**payload), x_user_id="u1")


def _error(excinfo):
    return excinfo.value.status_code, excinfo.value.detail["error_code"]


def test_generate_then_read_today(monkeypatch):
    _install(monkeypatch, [_lecture()])

    created = _generate()["plan"]
    today = daily_plan.get_today_plan(plan_date="2026-10-19", x_user_id="u1")["plan"]

    assert today["id"] == created["id"]
    assert [e["exit_time"] for e in created["exit_times"]] == ["2026-10-19T08:42:00"]
    assert len(today["chains"]) == 1


def test_today_without_plan_returns_null(monkeypatch):
    _install(monkeypatch)

    assert daily_plan.get_today_plan(plan_date="2026-10-19", x_user_id="u1") == {"plan": None}


def test_generate_without_anchor_is_422(monkeypatch):
    _install(monkeypatch)

    with pytest.raises(HTTPException) as exc:
        _generate()

    assert _error(exc) == (422, "MANUAL_ANCHOR_REQUIRED")


def test_generate_with_manual_anchor(monkeypatch):
    _install(monkeypatch)

    plan = _generate(manual_anchor={
        "title": "Dentist",
        "start_time": "2026-10-19T11:00:00",
        "end_time": "2026-10-19T11:30:00",
        "anchor_type": "appointment",
    })["plan"]

    assert [c["anchor"]["title"] for c in plan["chains"]] == ["Dentist"]


@pytest.mark.parametrize("overrides,code", [
    ({"energy_state": "sleepy"}, "INVALID_ENERGY_STATE"),
    ({"wake_time": "soon"}, "INVALID_TIME_RANGE"),
])
def test_generate_rejects_bad_input(monkeypatch, overrides, code):
    _install(monkeypatch, [_lecture()])

    with pytest.raises(HTTPException) as exc:
        _generate(**overrides)

    assert _error(exc) == (422, code)


def test_reorder_step_route(monkeypatch):
    _install(monkeypatch, [_lecture()])
    _generate()

    plan = daily_plan.reorder_step(
        daily_plan.ReorderStepRequest(
            source_step_id="chain-a1-hygiene", target_step_id="chain-a1-bathroom", plan_date="2026-10-19"
        ),
        x_user_id="u1",
    )["plan"]

    steps = plan["chains"][0]["steps"]
    assert [s["step_id"] for s in steps][:2] == ["chain-a1-hygiene", "chain-a1-bathroom"]
    assert plan["chains"][0]["chain_completion_deadline"] == "2026-10-19T09:00:00"


def test_reorder_stale_reference_is_404(monkeypatch):
    _install(monkeypatch, [_lecture()])
    _generate()

    with pytest.raises(HTTPException) as exc:
        daily_plan.reorder_step(
            daily_plan.ReorderStepRequest(
                source_step_id="gone", target_step_id="chain-a1-bathroom", plan_date="2026-10-19"
            ),
            x_user_id="u1",
        )

    assert _error(exc) == (404, "STALE_TIME_BLOCK_REFERENCE")


def test_reorder_without_plan_is_404(monkeypatch):
    _install(monkeypatch)

    with pytest.raises(HTTPException) as exc:
        daily_plan.reorder_step(
            daily_plan.ReorderStepRequest(source_step_id="a", target_step_id="b", plan_date="2026-10-19"),
            x_user_id="u1",
        )

    assert _error(exc) == (404, "PLAN_NOT_FOUND")


def test_edit_step_rejects_out_of_range_duration(monkeypatch):
    _install(monkeypatch, [_lecture()])
    _generate()

    with pytest.raises(HTTPException) as exc:
        daily_plan.edit_step(
            daily_plan.EditStepRequest(step_id="chain-a1-bathroom", duration_minutes=0, plan_date="2026-10-19"),
            x_user_id="u1",
        )

    assert _error(exc) == (422, "INVALID_STEP_DURATION")


def test_chains_today_reports_status(monkeypatch):
    _install(monkeypatch, [_lecture()])
    _generate()

    body = chains.get_chains_for_today(plan_date="2026-10-19", x_user_id="u1")

    assert [c["chain_id"] for c in body["chains"]] == ["chain-a1"]
    assert body["statuses"][0]["chain_id"] == "chain-a1"
    assert body["home_intervals"][0]["start"] == "2026-10-19T07:00:00"


def test_chains_today_without_plan_is_404(monkeypatch):
    _install(monkeypatch)

    with pytest.raises(HTTPException) as exc:
        chains.get_chains_for_today(plan_date="2026-10-19", x_user_id="u1")

    assert _error(exc) == (404, "PLAN_NOT_FOUND")


def test_chains_preview_does_not_store(monkeypatch):
    builder = _install(monkeypatch, [_lecture()])

    body = chains.preview_chains(
        wake_time="2026-10-19T07:00:00", sleep_time="2026-10-19T23:00:00", x_user_id="u1"
    )

    assert len(body["chains"]) == 1
    assert builder.get_plan_for_date("u1", NOW.date()) is None


def test_patch_metadata_and_status(monkeypatch):
    _install(monkeypatch, [_lecture()])
    plan = _generate()["plan"]
    gate = next(b for b in plan["time_blocks"] if b["metadata"]["role"]["type"] == "exit-gate")

    patched = time_blocks.patch_block_metadata(
        gate["id"], time_blocks.MetadataPatchRequest(metadata={"gate_conditions": {"keys": True}}), x_user_id="u1"
    )["time_block"]
    done = time_blocks.update_block_status(
        gate["id"], time_blocks.StatusRequest(status="completed"), x_user_id="u1"
    )["time_block"]

    assert patched["metadata"]["gate_conditions"]["keys"] is True
    assert patched["metadata"]["chain_view_only"] is True
    assert done["status"] == "completed"
    assert "completed_at" in done["metadata"]


def test_patch_metadata_identity_field_is_400(monkeypatch):
    _install(monkeypatch, [_lecture()])
    plan = _generate()["plan"]

    with pytest.raises(HTTPException) as exc:
        time_blocks.patch_block_metadata(
            plan["time_blocks"][0]["id"],
            time_blocks.MetadataPatchRequest(metadata={"plan_id": "other"}),
            x_user_id="u1",
        )

    assert _error(exc) == (400, "FORBIDDEN_METADATA_FIELD")


def test_bad_status_is_422(monkeypatch):
    _install(monkeypatch, [_lecture()])
    plan = _generate()["plan"]

    with pytest.raises(HTTPException) as exc:
        time_blocks.update_block_status(
            plan["time_blocks"][0]["id"], time_blocks.StatusRequest(status="done-ish"), x_user_id="u1"
        )

    assert _error(exc) == (422, "INVALID_STEP_STATUS")


def test_bad_plan_date_is_400(monkeypatch):
    _install(monkeypatch)

    with pytest.raises(HTTPException) as exc:
        daily_plan.get_today_plan(plan_date="19/10/2026", x_user_id="u1")

    assert exc.value.status_code == 400


def test_degrade_route_skips_recovery_and_marks_plan(monkeypatch):
    _install(monkeypatch, [_lecture()])
    _generate()

    body = daily_plan.degrade_plan(daily_plan.DegradePlanRequest(plan_date="2026-10-19"), x_user_id="u1")

    assert body["plan"]["status"] == "degraded"
    recovery = [b for b in body["plan"]["time_blocks"] if b["activity_type"] == "recovery"]
    assert [b["status"] for b in recovery] == ["skipped"]
    assert [b["skip_reason"] for b in recovery] == ["Dropped during degradation"]


def test_degrade_without_plan_is_404(monkeypatch):
    _install(monkeypatch)

    with pytest.raises(HTTPException) as exc:
        daily_plan.degrade_plan(daily_plan.DegradePlanRequest(plan_date="2026-10-19"), x_user_id="u1")

    assert _error(exc) == (404, "PLAN_NOT_FOUND")
