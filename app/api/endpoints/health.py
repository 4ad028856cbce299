"""
Health check and monitoring endpoints.

Provides health status for the database and the rate-limit store.
"""

import logging
from typing import Dict, Any
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from sqlalchemy import text
from datetime import datetime, timezone

from app.core.database import get_db
from app.core.deps import get_rate_limiter
from app.core.rate_limiter import RateLimiter

router = APIRouter(tags=["Health"])
logger = logging.getLogger(__name__)


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> Dict[str, str]:
    """
    Basic health check endpoint.

    Returns 200 OK if the service is running.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/health/detailed", status_code=status.HTTP_200_OK)
def detailed_health_check(
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> Dict[str, Any]:
    """
    Detailed health check with dependency status.

    Checks:
    - Database connectivity
    - Rate limiter backend (Redis ping when configured)
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {}
    }

    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {
            "status": "healthy",
            "message": "Database connection successful"
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = {
            "status": "unhealthy",
            "message": f"Database error: {str(e)}"
        }

    if limiter.redis_client is None:
        health_status["checks"]["rate_limiter"] = {
            "status": "healthy",
            "message": "In-memory rate limiter"
        }
    else:
        try:
            limiter.redis_client.ping()
            health_status["checks"]["rate_limiter"] = {
                "status": "healthy",
                "message": "Redis reachable"
            }
        except Exception as e:
            # Rate limiting fails open, so Redis loss degrades but does not take the API down
            logger.error(f"Redis health check failed: {e}")
            health_status["status"] = "degraded"
            health_status["checks"]["rate_limiter"] = {
                "status": "unhealthy",
                "message": f"Redis error: {str(e)}"
            }

    return health_status
