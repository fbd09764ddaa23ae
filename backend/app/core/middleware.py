"""Middleware configuration for FastAPI application"""
import logging
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core import security
from app.db import redis as redis_store

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

# The gateway redelivers callbacks; throttling them would only delay reconciliation
RATE_LIMIT_EXEMPT_PATHS = (
    "/api/mmg/webhook",
    "/metrics",
    "/health",
)


def get_allowed_origins():
    """Get list of allowed CORS origins"""
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000"
        ])
    return allowed_origins


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


async def security_middleware(request: Request, call_next):
    """Middleware for rate limiting and API access logging"""
    token = security.get_bearer_token(request.headers.get("Authorization"))
    status_code = 500
    error = None

    try:
        path = request.url.path
        if request.method != "OPTIONS" and not path.startswith(RATE_LIMIT_EXEMPT_PATHS):
            identifier = security.get_client_identifier(request, token)
            is_state_changing = request.method in ["POST", "PATCH", "DELETE", "PUT"]
            if not redis_store.check_rate_limit(identifier, strict=is_state_changing):
                error = "Rate limit exceeded"
                status_code = 429
                security_logger.warning(f"Rate limit exceeded - Identifier: {identifier}, Path: {path}")
                return JSONResponse(
                    status_code=429,
                    content={"success": False, "error": "Rate limit exceeded. Please try again later.", "code": "RATE_LIMITED"}
                )

        response = await call_next(request)
        status_code = response.status_code
        return response

    except Exception as e:
        error = str(e)
        security_logger.error(f"Security middleware error: {error}", exc_info=True)
        raise
    finally:
        security.log_api_access(request, token, status_code, error)
