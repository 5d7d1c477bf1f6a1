import json

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from verifyflow.api.auth import require_api_key
from verifyflow.api.schemas import (
    InitiateRequest,
    InitiateResponse,
    ReviewDecisionCallback,
    StatusResponse,
    StepOutcomeResponse,
    SubmitStepRequest,
)
from verifyflow.core.session_manager import get_manager
from verifyflow.observability.logging import log
from verifyflow.review.client import SIGNATURE_HEADER, verify_signature

router = APIRouter(prefix="/verification", tags=["verification"])


@router.post("/initiate", response_model=InitiateResponse, dependencies=[Depends(require_api_key)])
async def initiate(req: InitiateRequest) -> InitiateResponse:
    session = await run_in_threadpool(get_manager().initiate, req.subject_id)
    return InitiateResponse(
        session_id=session.session_id,
        current_step=session.current_step,
        overall_status=session.overall_status,
    )


@router.post("/submit-step", response_model=StepOutcomeResponse, response_model_exclude_unset=True,
             dependencies=[Depends(require_api_key)])
async def submit_step(req: SubmitStepRequest) -> StepOutcomeResponse:
    outcome = await run_in_threadpool(get_manager().submit_step, req.session_id, req.step_id, req.provider_input)
    return StepOutcomeResponse.model_validate(outcome.to_dict())


@router.get("/status/{session_id}", response_model=StatusResponse, dependencies=[Depends(require_api_key)])
async def get_status(session_id: str) -> StatusResponse:
    snapshot = await run_in_threadpool(get_manager().get_status, session_id)
    return StatusResponse.model_validate(snapshot.to_dict())


@router.post("/review/decision", response_model=StepOutcomeResponse, response_model_exclude_unset=True)
async def review_decision(request: Request) -> StepOutcomeResponse:
    """Review desk callback. Authenticated by the body signature, not the API key."""
    body = await request.body()
    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER, "")):
        log(event="review_signature_rejected", path=str(request.url.path))
        raise HTTPException(status_code=401, detail="Invalid review signature")
    try:
        decision = ReviewDecisionCallback.model_validate(json.loads(body or b"{}"))
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid review decision: {e}")

    outcome = await run_in_threadpool(
        get_manager().resolve_review,
        decision.session_id,
        decision.step_id,
        decision.approved,
        decision.hard_fail,
        decision.reviewer or "review_desk",
    )
    return StepOutcomeResponse.model_validate(outcome.to_dict())
