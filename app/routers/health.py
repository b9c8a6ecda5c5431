# app/routers/health.py

from fastapi import APIRouter

from app.config import get_settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy",
        "service": "ledger-link-api",
    }


@router.get("/ready")
async def readiness_check():
    """Readiness check - reports which optional integrations are configured."""
    settings = get_settings()
    return {
        "status": "ready",
        "checks": {
            "database": "configured" if settings.supabase_url else "missing",
            "ai_explanations": "enabled" if settings.enable_ai_explanations and settings.anthropic_api_key else "fallback",
            "learning": "enabled" if settings.enable_learning else "disabled",
        },
    }
