"""
CallTriage - Health Check Endpoints

System health monitoring endpoints for load balancers, monitoring,
and operational visibility.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from calltriage.config import Settings, get_settings

router = APIRouter(prefix="/api/system", tags=["system"])


def get_app_settings(request: Request) -> Settings:
    """Settings the app was created with, else the environment defaults."""
    return getattr(request.app.state, "settings", None) or get_settings()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@router.get("/health")
async def health_check(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> dict:
    """
    Overall system health check.

    Returns:
        - status: "healthy" or "degraded"
        - checks: Individual component statuses
        - timestamp: Current server time

    Used by load balancers and monitoring systems.
    """
    dispatcher = getattr(request.app.state, "dispatcher", None)
    checks = {}

    checks["dispatcher"] = {
        "status": "healthy" if dispatcher is not None else "unavailable",
    }

    checks["datastore"] = {
        "status": "healthy" if dispatcher is not None else "unavailable",
        "backend": settings.datastore_backend,
    }

    checks["sms"] = {
        "status": "healthy",
        "backend": settings.sms_backend,
    }

    checks["webhook_security"] = {
        "status": "healthy" if settings.webhook_secret else "disabled",
    }

    all_healthy = all(
        c.get("status") in ("healthy", "disabled")
        for c in checks.values()
    )

    return {
        "status": "healthy" if all_healthy else "degraded",
        "timestamp": _now(),
        "version": "0.1.0",
        "environment": settings.app_env,
        "checks": checks,
    }


@router.get("/ready")
async def readiness_check(request: Request) -> dict:
    """
    Readiness probe for Kubernetes/container orchestration.

    Ready once the lifespan has built the dispatcher.
    """
    return {
        "ready": getattr(request.app.state, "dispatcher", None) is not None,
        "timestamp": _now(),
    }


@router.get("/live")
async def liveness_check() -> dict:
    """
    Liveness probe for Kubernetes/container orchestration.

    Returns 200 if the service is alive.
    """
    return {
        "alive": True,
        "timestamp": _now(),
    }


@router.get("/config")
async def config_info(
    settings: Settings = Depends(get_app_settings),
) -> dict:
    """
    Non-sensitive configuration information.

    Useful for debugging and operational visibility.
    Excludes secrets, tokens, and connection strings.
    """
    return {
        "environment": settings.app_env,
        "debug": settings.app_debug,
        "log_level": settings.app_log_level,
        "backends": {
            "datastore": settings.datastore_backend,
            "sms": settings.sms_backend,
        },
        "triage": {
            "default_urgency_threshold": settings.default_urgency_threshold,
            "custom_lexicon": settings.lexicon_path is not None,
        },
        "alerts": {
            "max_concurrency": settings.alert_max_concurrency,
            "sms_timeout_seconds": settings.sms_timeout_seconds,
        },
        "webhook": {
            "signature_verification": settings.webhook_secret is not None,
            "max_age_seconds": settings.webhook_max_age_seconds,
        },
        "operator_api": {
            "key_required": settings.operator_api_key is not None,
        },
        "privacy": {
            "anonymize_logs": settings.anonymize_logs,
            "store_transcripts": settings.store_raw_transcripts,
        },
        "timestamp": _now(),
    }
