from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field


class InitiateRequest(BaseModel):
    subject_id: str = Field(min_length=1)


class InitiateResponse(BaseModel):
    session_id: str
    current_step: Optional[str] = None
    overall_status: str


class SubmitStepRequest(BaseModel):
    session_id: str = Field(min_length=1)
    step_id: str = Field(min_length=1)
    provider_input: Dict[str, Any] = Field(default_factory=dict)


class ErrorBody(BaseModel):
    code: str
    message: str
    retryable: bool = False
    details: Optional[Dict[str, Any]] = None


class StepOutcomeResponse(BaseModel):
    step_id: str
    status: str
    attempts_used: int
    attempts_remaining: int
    overall_status: str
    current_step: Optional[str] = None
    session_version: int
    transaction_id: Optional[str] = None
    error: Optional[ErrorBody] = None


class StepStatus(BaseModel):
    step_id: str
    status: str
    attempts_used: int
    attempts_remaining: int


class StatusResponse(BaseModel):
    session_id: str
    overall_status: str
    current_step: Optional[str] = None
    steps: List[StepStatus] = Field(default_factory=list)


class ReviewDecision(BaseModel):
    approved: bool
    hard_fail: bool = False
    reviewer: str = ""


class ReviewDecisionCallback(ReviewDecision):
    """Decision posted back by the review desk (signed body)."""
    session_id: str
    step_id: str


class ResetRequest(BaseModel):
    reason: str = ""


class ErrorResponse(BaseModel):
    status: Literal["error"] = "error"
    error: ErrorBody
