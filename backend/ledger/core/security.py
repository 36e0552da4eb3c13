"""Session auth dependencies, origin checks and API access logging"""
import json
import logging
from typing import List, Optional
from urllib.parse import urlparse

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from ledger.core.config import settings
from ledger.db.redis import get_csrf_token, get_session
from ledger.db.session import get_db
from ledger.models.user import User

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")

SESSION_COOKIE = "session_id"
DEV_ORIGINS = ("http://localhost:3000", "http://127.0.0.1:3000")


def client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, else the socket peer"""
    forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.client.host if request.client else "unknown"


def allowed_origins() -> List[str]:
    """Origins that may call state-changing routes with a session cookie"""
    origins = [settings.FRONTEND_URL.rstrip("/")]
    if settings.ENVIRONMENT == "development":
        origins.extend(DEV_ORIGINS)
    return origins


def require_auth(request: Request) -> int:
    """Dependency: session cookie resolved to a user id"""
    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = get_session(session_id)
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")
    return user_id


def require_csrf(
    request: Request,
    user_id: int = Depends(require_auth),
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token")
) -> int:
    """Dependency: authenticated user whose X-CSRF-Token matches the session"""
    expected = get_csrf_token(request.cookies.get(SESSION_COOKIE))
    if not expected or x_csrf_token != expected:
        security_logger.warning(
            f"CSRF validation failed - User: {user_id}, IP: {client_ip(request)}, Path: {request.url.path}"
        )
        raise HTTPException(403, "Invalid or missing CSRF token")
    return user_id


def _admin(user_id: int, db: Session) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_admin:
        security_logger.warning(f"Admin access denied - User: {user_id}")
        raise HTTPException(403, "Admin access required")
    return user


def require_admin(user_id: int = Depends(require_csrf), db: Session = Depends(get_db)) -> User:
    """Dependency: admin for refunds, holds and manual payouts"""
    return _admin(user_id, db)


def require_admin_get(user_id: int = Depends(require_auth), db: Session = Depends(get_db)) -> User:
    """Dependency: admin for read-only reports (no CSRF)"""
    return _admin(user_id, db)


def rate_limit_identifier(request: Request) -> str:
    """Session if the caller has one, otherwise client IP"""
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        return f"session:{session_id}"
    return f"ip:{client_ip(request)}"


def origin_allowed(request: Request) -> bool:
    """Origin, or failing that Referer, must be one of ``allowed_origins()``.

    Development accepts requests carrying neither header (curl, test clients).
    """
    origin = request.headers.get("Origin")
    referer = request.headers.get("Referer")
    if not origin and not referer:
        return settings.ENVIRONMENT == "development"

    if origin:
        candidate = origin.rstrip("/")
    else:
        parsed = urlparse(referer)
        candidate = f"{parsed.scheme}://{parsed.netloc}"
    return candidate in allowed_origins()


def log_api_access(request: Request, status_code: int, duration_ms: float, error: Optional[str] = None):
    session_id = request.cookies.get(SESSION_COOKIE)
    entry = {
        "method": request.method,
        "path": request.url.path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 1),
        "client_ip": client_ip(request),
        "session": session_id[:16] + "..." if session_id else None,
        "error": error,
    }
    level = logging.WARNING if error or status_code >= 400 else logging.INFO
    api_access_logger.log(level, f"API Access: {json.dumps(entry)}")
