from typing import Any, Dict

from fastapi import APIRouter, Header
from pydantic import BaseModel

from planner.exceptions import PlannerError
from web.backend.deps import DEFAULT_USER_ID, get_plan_builder, to_http_error

router = APIRouter()


class MetadataPatchRequest(BaseModel):
    metadata: Dict[str, Any]


class StatusRequest(BaseModel):
    status: str


@router.patch("/{block_id}/metadata")
def patch_block_metadata(
    block_id: str,
    req: MetadataPatchRequest,
    x_user_id: str = Header(default=DEFAULT_USER_ID),
):
    try:
        block = get_plan_builder().merge_block_metadata(x_user_id, block_id, req.metadata)
    except PlannerError as e:
        raise to_http_error(e)
    return {"time_block": block.to_dict()}


@router.post("/{block_id}/status")
def update_block_status(
    block_id: str,
    req: StatusRequest,
    x_user_id: str = Header(default=DEFAULT_USER_ID),
):
    try:
        block = get_plan_builder().update_step_status(x_user_id, block_id, req.status)
    except PlannerError as e:
        raise to_http_error(e)
    return {"time_block": block.to_dict()}
