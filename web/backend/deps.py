import os
from datetime import date
from pathlib import Path
from typing import Optional

from fastapi import HTTPException

from planner.anchor_service import AnchorProvider, CalendarAnchorProvider, JsonFileCalendarSource, StaticAnchorProvider
from planner.exceptions import PlannerError
from planner.logger import get_logger
from planner.plan_builder import PlanBuilder
from planner.plan_store import JsonPlanStore

logger = get_logger("api")

DEFAULT_USER_ID = os.getenv("LIFE_PLANNER_DEFAULT_USER", "local-user")

STATUS_BY_CODE = {
    "INVALID_TIME_RANGE": 422,
    "INVALID_ENERGY_STATE": 422,
    "INVALID_MANUAL_ANCHOR": 422,
    "MANUAL_ANCHOR_REQUIRED": 422,
    "INVALID_STEP_DURATION": 422,
    "INVALID_STEP_STATUS": 422,
    "STEP_NOT_IN_SAME_CHAIN": 400,
    "NOT_A_CHAIN_STEP": 400,
    "INVALID_METADATA_PATCH": 400,
    "FORBIDDEN_METADATA_FIELD": 400,
    "STALE_TIME_BLOCK_REFERENCE": 404,
    "PLAN_NOT_FOUND": 404,
    "DUPLICATE_PLAN": 409,
}

_builder: Optional[PlanBuilder] = None


def _default_anchor_provider() -> AnchorProvider:
    calendar_file = os.getenv("LIFE_PLANNER_CALENDAR_FILE", "").strip()
    if calendar_file:
        return CalendarAnchorProvider(JsonFileCalendarSource(Path(calendar_file).expanduser()))
    return StaticAnchorProvider()


def get_plan_builder() -> PlanBuilder:
    global _builder
    if _builder is None:
        _builder = PlanBuilder(store=JsonPlanStore(), anchor_provider=_default_anchor_provider())
    return _builder


def set_plan_builder(builder: Optional[PlanBuilder]) -> None:
    global _builder
    _builder = builder


def to_http_error(err: PlannerError) -> HTTPException:
    status_code = STATUS_BY_CODE.get(err.code, 500)
    if status_code >= 500:
        logger.error("Unmapped planner error %s: %s", err.code, err.message)
    return HTTPException(status_code=status_code, detail=err.to_dict())


def parse_plan_date(raw: Optional[str]) -> date:
    if not raw:
        return date.today()
    try:
        return date.fromisoformat(str(raw).strip())
    except ValueError:
        raise HTTPException(status_code=400, detail="plan_date must be YYYY-MM-DD")
