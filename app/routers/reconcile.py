# app/routers/reconcile.py

"""
Reconciliation routes.

Thin layer over ReconciliationService: runs the engine for a session,
returns the stored result and records human review decisions.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from app.config import get_settings
from app.core.session import ReconciliationService
from app.dependencies import get_reconciliation_service
from app.errors import (
    CapacityError,
    ConfigurationError,
    InvalidTransition,
    MatchNotFound,
    SessionNotFound,
)
from app.models import ReviewDecision

settings = get_settings()
router = APIRouter()


class ReviewRequest(BaseModel):
    decision: ReviewDecision


# ============================================
# Main Reconciliation Endpoint
# ============================================

@router.post("/sessions/{session_id}/reconcile")
def run_reconciliation(
    session_id: str,
    debounce: bool = Query(False, description="Queue behind an in-flight run instead of running now"),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Run reconciliation for a session.

    1. Loads a snapshot of the session's extracted receipts and statements
    2. Runs the matching engine
    3. Replaces the stored result and fires the notification hook
    """
    try:
        if debounce:
            result = service.request_reconciliation(session_id)
        else:
            result = service.run_reconciliation(session_id)
    except (CapacityError, ConfigurationError) as e:
        # Aborted run: nothing was written, the caller may retry
        raise HTTPException(
            status_code=503,
            detail=str(e),
            headers={"Retry-After": str(settings.retry_after_seconds)},
        )

    if result is None:
        return {"success": True, "queued": True, "session_id": session_id}

    return {
        "success": True,
        "queued": False,
        "session_id": session_id,
        "summary": {
            "total_pix_receipts": result.total_pix_receipts,
            "total_bank_transactions": result.total_bank_transactions,
            "auto_matched": result.auto_matched,
            "manual_review": result.manual_review,
            "unmatched": result.unmatched,
            "confirmed": result.confirmed,
            "rejected": result.rejected,
        },
        "warnings": len(result.warnings),
    }


# ============================================
# Get Reconciliation Results
# ============================================

@router.get("/sessions/{session_id}/reconciliation")
def get_reconciliation_result(
    session_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Latest stored reconciliation result for a session."""
    try:
        result = service.get_result(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {"success": True, "result": result.to_dict()}


# ============================================
# Human review
# ============================================

@router.post("/sessions/{session_id}/matches/{match_id}/review")
def review_match(
    session_id: str,
    match_id: str,
    request: ReviewRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Confirm or reject an auto-matched / manual-review match."""
    try:
        match = service.review_match(session_id, match_id, request.decision)
    except (SessionNotFound, MatchNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {"success": True, "match": match.model_dump(mode="json")}
