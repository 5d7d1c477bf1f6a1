from verifyflow.observability.logging import log
from verifyflow.review.client import notify_review_desk
from verifyflow.settings import settings


def notify_review_job(session_id: str, step_id: str):
    """
    Background job: hand a step that landed in manual_review to the review desk.
    Failures propagate so RQ's Retry policy re-runs the job.
    """
    if not settings.ENABLE_REVIEW_HANDOFF:
        return

    try:
        log(event="review_job_start", sessionId=session_id, stepId=step_id)
        notify_review_desk(session_id, step_id)
    except Exception as e:
        log(event="review_job_exception", sessionId=session_id, stepId=step_id, error=str(e))
        raise
