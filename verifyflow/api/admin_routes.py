from typing import Optional

from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from verifyflow.api.auth import require_admin
from verifyflow.api.schemas import ResetRequest, ReviewDecision, StepOutcomeResponse
from verifyflow.core.session_manager import get_manager
from verifyflow.store import session_repo
import verifyflow.observability.metrics as metrics

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/session/{session_id}")
async def get_session_snapshot(session_id: str, _=Depends(require_admin)):
    """Full session record for support tooling, including step result summaries."""
    snapshot = await run_in_threadpool(get_manager().get_status, session_id)
    return snapshot.to_dict(include_details=True)


@router.get("/subject/{subject_id}/history")
def get_subject_history(subject_id: str, _=Depends(require_admin)):
    return {
        "subject_id": subject_id,
        "current_session_id": session_repo.find_subject_session_id(subject_id),
        "superseded_session_ids": session_repo.subject_history(subject_id),
    }


@router.post("/subject/{subject_id}/reset")
async def reset_subject(subject_id: str, req: Optional[ResetRequest] = None, _=Depends(require_admin)):
    reason = req.reason if req else ""
    session = await run_in_threadpool(get_manager().reset_subject, subject_id, reason)
    return {
        "session_id": session.session_id,
        "subject_id": session.subject_id,
        "current_step": session.current_step,
        "overall_status": session.overall_status,
    }


@router.post("/session/{session_id}/steps/{step_id}/review", response_model=StepOutcomeResponse,
             response_model_exclude_unset=True)
async def resolve_review(session_id: str, step_id: str, decision: ReviewDecision, _=Depends(require_admin)):
    outcome = await run_in_threadpool(
        get_manager().resolve_review,
        session_id,
        step_id,
        decision.approved,
        decision.hard_fail,
        decision.reviewer or "admin",
    )
    return StepOutcomeResponse.model_validate(outcome.to_dict())


@router.get("/metrics")
def get_metrics(_=Depends(require_admin)):
    return metrics.get_metrics_snapshot()
