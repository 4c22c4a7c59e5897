from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Header

from planner.chain_status import ChainStatusService
from planner.exceptions import PlanNotFoundError, PlannerError
from web.backend.deps import DEFAULT_USER_ID, get_plan_builder, parse_plan_date, to_http_error

router = APIRouter()


@router.get("/today")
def get_chains_for_today(plan_date: Optional[str] = None, x_user_id: str = Header(default=DEFAULT_USER_ID)):
    """Chains of the stored plan with live status (rebuilt from time blocks when not cached)."""
    builder = get_plan_builder()
    day = parse_plan_date(plan_date)
    plan = builder.get_plan_for_date(x_user_id, day)
    if plan is None:
        raise to_http_error(PlanNotFoundError(f"No plan for {day}", hint="Generate a plan first"))

    service = ChainStatusService()
    now = datetime.now(tz=plan.wake_time.tzinfo)
    return {
        "plan_id": plan.id,
        "chains": [chain.to_dict() for chain in plan.chains],
        "statuses": [service.evaluate(chain, now).to_dict() for chain in plan.chains],
        "home_intervals": [interval.to_dict() for interval in plan.home_intervals],
    }


@router.get("/preview")
def preview_chains(
    wake_time: str,
    sleep_time: str,
    energy_state: str = "medium",
    plan_date: Optional[str] = None,
    x_user_id: str = Header(default=DEFAULT_USER_ID),
):
    builder = get_plan_builder()
    try:
        plan_input = builder.validate_plan_request(
            x_user_id,
            wake_time,
            sleep_time,
            energy_state,
            plan_date=parse_plan_date(plan_date) if plan_date else None,
        )
        preview = builder.preview_chains(plan_input)
    except PlannerError as e:
        raise to_http_error(e)
    return preview.to_dict()
