"""Security dependencies and API access logging"""
import json
from datetime import datetime, timezone
from typing import Optional
from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from app.core.errors import AuthenticationError, NotFoundError
from app.core.logging import security_logger, api_access_logger
from app.db.redis import get_session
from app.db.session import get_db
from app.models.user import User
from app.services.auth_service import get_user_by_id


def get_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header"""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_auth(authorization: Optional[str] = Header(None)) -> str:
    """Dependency: Require a valid bearer token, return user_id"""
    token = get_bearer_token(authorization)
    if not token:
        raise AuthenticationError("Missing or invalid authorization token")

    user_id = get_session(token)
    if not user_id:
        security_logger.warning("Rejected bearer token with no active session")
        raise AuthenticationError("Invalid token")

    return user_id


def require_user(user_id: str = Depends(require_auth), db: Session = Depends(get_db)) -> User:
    """Dependency: Require auth and load the user row (for role checks)"""
    user = get_user_by_id(user_id, db=db)
    if not user:
        raise NotFoundError("User profile not found")
    return user


def get_client_identifier(request: Request, token: Optional[str] = None) -> str:
    """Get a unique identifier for rate limiting"""
    if token:
        return f"token:{token[:32]}"

    # Fallback to IP address
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"


def log_api_access(
    request: Request,
    token: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log detailed API access information"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "token": token[:8] + "..." if token else None,
        "client_ip": client_ip,
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
