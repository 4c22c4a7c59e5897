from typing import List, Optional

from fastapi import APIRouter, Header
from pydantic import BaseModel

from planner.exceptions import PlannerError
from planner.models import Location
from web.backend.deps import DEFAULT_USER_ID, get_plan_builder, parse_plan_date, to_http_error

router = APIRouter()


class ManualAnchorPayload(BaseModel):
    title: str
    start_time: str
    end_time: str
    anchor_type: Optional[str] = None
    must_attend: Optional[bool] = None
    location: Optional[str] = None
    notes: Optional[str] = None


class LocationPayload(BaseModel):
    name: str = "Home"
    address: Optional[str] = None
    coordinates: Optional[List[float]] = None


class GeneratePlanRequest(BaseModel):
    wake_time: str
    sleep_time: str
    energy_state: str
    plan_date: Optional[str] = None
    manual_anchor: Optional[ManualAnchorPayload] = None
    current_location: Optional[LocationPayload] = None


class ReorderStepRequest(BaseModel):
    source_step_id: str
    target_step_id: str
    plan_date: Optional[str] = None


class EditStepRequest(BaseModel):
    step_id: str
    duration_minutes: int
    plan_date: Optional[str] = None


class DegradePlanRequest(BaseModel):
    plan_date: Optional[str] = None


def _manual_anchor_dict(payload: Optional[ManualAnchorPayload]) -> Optional[dict]:
    if payload is None:
        return None
    return {
        "title": payload.title,
        "start_time": payload.start_time,
        "end_time": payload.end_time,
        "anchor_type": payload.anchor_type,
        "must_attend": payload.must_attend,
        "location": payload.location,
        "notes": payload.notes,
    }


def _location(payload: Optional[LocationPayload]) -> Optional[Location]:
    if payload is None:
        return None
    coords = tuple(payload.coordinates) if payload.coordinates else None
    return Location(name=payload.name, address=payload.address, coordinates=coords)


@router.get("/today")
def get_today_plan(plan_date: Optional[str] = None, x_user_id: str = Header(default=DEFAULT_USER_ID)):
    builder = get_plan_builder()
    plan = builder.get_plan_for_date(x_user_id, parse_plan_date(plan_date))
    return {"plan": plan.to_dict() if plan else None}


@router.post("/generate", status_code=201)
def generate_plan(req: GeneratePlanRequest, x_user_id: str = Header(default=DEFAULT_USER_ID)):
    builder = get_plan_builder()
    try:
        plan_input = builder.validate_plan_request(
            x_user_id,
            req.wake_time,
            req.sleep_time,
            req.energy_state,
            plan_date=parse_plan_date(req.plan_date) if req.plan_date else None,
        )
        manual = builder.validate_manual_anchor(_manual_anchor_dict(req.manual_anchor))
        plan = builder.generate_daily_plan(
            plan_input,
            current_location=_location(req.current_location),
            manual_anchor=manual,
        )
    except PlannerError as e:
        raise to_http_error(e)
    return {"plan": plan.to_dict()}


@router.post("/reorder-step")
def reorder_step(req: ReorderStepRequest, x_user_id: str = Header(default=DEFAULT_USER_ID)):
    builder = get_plan_builder()
    try:
        plan = builder.reorder_step(
            x_user_id, parse_plan_date(req.plan_date), req.source_step_id, req.target_step_id
        )
    except PlannerError as e:
        raise to_http_error(e)
    return {"plan": plan.to_dict()}


@router.post("/edit-step")
def edit_step(req: EditStepRequest, x_user_id: str = Header(default=DEFAULT_USER_ID)):
    builder = get_plan_builder()
    try:
        plan = builder.edit_step_duration(
            x_user_id, parse_plan_date(req.plan_date), req.step_id, req.duration_minutes
        )
    except PlannerError as e:
        raise to_http_error(e)
    return {"plan": plan.to_dict()}


@router.post("/degrade")
def degrade_plan(req: DegradePlanRequest, x_user_id: str = Header(default=DEFAULT_USER_ID)):
    builder = get_plan_builder()
    try:
        plan = builder.degrade_plan(x_user_id, parse_plan_date(req.plan_date))
    except PlannerError as e:
        raise to_http_error(e)
    return {"plan": plan.to_dict()}
