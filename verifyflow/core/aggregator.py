"""
ResultAggregator: derives the session verdict from its step records.
Pure functions; never mutates the session.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from verifyflow.core.step_graph import StepDependencyGraph
from verifyflow.store import models as m

# Result-summary keys that carry a 0-100 score for the overall average
_SCORE_KEYS = ("confidence", "liveness_score", "match_score")


@dataclass
class FinalVerificationResult:
    overall_status: str
    required_steps: List[str] = field(default_factory=list)
    completed_steps: List[str] = field(default_factory=list)
    failed_steps: List[str] = field(default_factory=list)
    review_steps: List[str] = field(default_factory=list)
    overall_score: Optional[float] = None


def _is_failed(record: m.StepRecord) -> bool:
    return record.status == m.LOCKED or record.hard_failed


def compute(session: m.VerificationSession, graph: StepDependencyGraph) -> str:
    required = [session.steps[sid] for sid in graph.required_steps()]

    if any(_is_failed(r) for r in required):
        return m.SESSION_FAILED
    if any(r.status == m.MANUAL_REVIEW for r in required):
        return m.SESSION_MANUAL_REVIEW
    if all(r.status == m.SUCCESS for r in required):
        return m.SESSION_VERIFIED
    return m.SESSION_IN_PROGRESS


def _step_score(record: m.StepRecord) -> Optional[float]:
    for key in _SCORE_KEYS:
        v = record.result_summary.get(key)
        if isinstance(v, (int, float)):
            return float(v)
    return None


def summarize(session: m.VerificationSession, graph: StepDependencyGraph) -> FinalVerificationResult:
    required = list(graph.required_steps())
    out = FinalVerificationResult(overall_status=compute(session, graph), required_steps=required)
    scores = []
    for sid in required:
        record = session.steps[sid]
        if record.status == m.SUCCESS:
            out.completed_steps.append(sid)
            score = _step_score(record)
            if score is not None and sid not in m.OTP_STEPS and sid not in m.REGISTRY_STEPS:
                scores.append(score)
        elif _is_failed(record):
            out.failed_steps.append(sid)
        elif record.status == m.MANUAL_REVIEW:
            out.review_steps.append(sid)
    if scores:
        out.overall_score = round(sum(scores) / len(scores), 2)
    return out
