"""
Case endpoints: create and read cases, submit outputs, read citation targets
and the activity log.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from typing import Any, Dict, Optional

from ..core.errors import NotFound
from ..core.schema import to_iso
from ..core.submission import SubmissionPipeline
from .deps import get_api_key, get_pipeline
from .schemas import ActivityListResponse, CaseCreateRequest, ErrorResponse, OutputSubmitRequest, OutputSubmitResult

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
}


def success(data: Dict[str, Any], status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": data})


@router.post("/cases", status_code=201, responses=ERROR_RESPONSES)
def create_case_endpoint(
    request: CaseCreateRequest,
    api_key: Optional[str] = Depends(get_api_key),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Create a case (requires auth, rate limited per agent)."""
    agent = pipeline.authenticate(api_key)
    case = pipeline.create_case(
        agent,
        title=request.title,
        case_type=request.type,
        input_value=request.input,
        tags=request.tags,
    )
    return success({
        "message": "Case created",
        "case": {
            "id": case.id,
            "title": case.title,
            "type": case.type,
            "status": case.status,
            "createdAt": to_iso(case.created_at),
        },
    }, status_code=201)


@router.get("/cases/{case_id}", responses={404: {"model": ErrorResponse}})
def get_case_endpoint(
    case_id: str,
    api_key: Optional[str] = Depends(get_api_key),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Get one case with its retained outputs and audit trail. Auth is optional."""
    if api_key:
        agent = pipeline.agents.resolve(api_key)
        if agent is not None:
            pipeline.agents.touch(agent.id, f"get_case:{case_id}")

    case = pipeline.cases.get(case_id)
    if case is None:
        raise NotFound(f"Case not found: {case_id}")
    return success({"case": case.to_dict()})


@router.post(
    "/cases/{case_id}/outputs",
    status_code=201,
    responses={200: {"model": OutputSubmitResult}, 201: {"model": OutputSubmitResult}, **ERROR_RESPONSES},
)
def submit_output_endpoint(
    case_id: str,
    request: OutputSubmitRequest,
    api_key: Optional[str] = Depends(get_api_key),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Add an output to a case. Reusing a requestId replays the first response (200)."""
    agent = pipeline.authenticate(api_key)
    result = pipeline.submit_output(
        case_id,
        agent,
        kind=request.kind,
        content=request.content,
        citations=request.citations,
        flags=request.flags,
        request_id=request.request_id if isinstance(request.request_id, str) else None,
    )
    return success(result.payload, status_code=200 if result.replayed else 201)


@router.get("/policies/{policy_id}", responses={404: {"model": ErrorResponse}})
def get_policy_endpoint(policy_id: str, pipeline: SubmissionPipeline = Depends(get_pipeline)):
    """Get a policy and its chunk ids, the targets citations must reference."""
    policy = pipeline.cases.get_policy(policy_id)
    if policy is None:
        raise NotFound(f"Policy not found: {policy_id}")
    return success({"policy": policy.to_dict()})


@router.get("/activity")
def list_activity_endpoint(
    limit: int = Query(20, description="Page size, clamped to 1..100"),
    offset: int = Query(0, description="Entries to skip"),
    case_id: Optional[str] = Query(None, alias="caseId", description="Only entries for this case"),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    """Activity log for observability (no auth), newest first."""
    limit = min(max(limit, 1), 100)
    offset = max(offset, 0)
    entries, total = pipeline.activity.list(limit=limit, offset=offset, case_id=case_id)
    return success(ActivityListResponse(
        entries=[e.to_dict() for e in entries],
        total=total,
        limit=limit,
        offset=offset,
    ).model_dump())
