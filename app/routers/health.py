# app/routers/health.py

from fastapi import APIRouter, Depends

from app.core.session import ReconciliationService
from app.dependencies import get_reconciliation_service
from app.errors import ConfigurationError

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy",
        "service": "pixproof-api",
    }


@router.get("/ready")
def readiness_check(service: ReconciliationService = Depends(get_reconciliation_service)):
    """Readiness check - the matching configuration must be valid."""
    try:
        service.config.validate_config()
        config_status = "ok"
    except ConfigurationError as e:
        config_status = f"invalid: {e}"

    return {
        "status": "ready" if config_status == "ok" else "not_ready",
        "checks": {
            "matching_config": config_status,
            "document_store": type(service.documents).__name__,
            "result_sink": type(service.results).__name__,
        },
    }
