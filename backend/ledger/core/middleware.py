"""HTTP middleware and exception handlers for the ledger API"""
import logging
import time

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ledger.core.errors import LedgerError
from ledger.core.security import allowed_origins, log_api_access, origin_allowed, rate_limit_identifier
from ledger.db.redis import check_rate_limit

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

# Called by the gateway or by infrastructure, never from a browser session.
# Webhook deliveries are signed and arrive in bursts.
PUBLIC_PATHS = ("/api/webhooks/stripe", "/metrics", "/health")
STATE_CHANGING_METHODS = frozenset({"POST", "PATCH", "PUT", "DELETE"})


def setup_cors_middleware(app):
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _reject(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _screen(request: Request):
    """Rate limit and origin check; returns a rejection response or None"""
    path = request.url.path
    if path in PUBLIC_PATHS:
        return None

    state_changing = request.method in STATE_CHANGING_METHODS
    identifier = rate_limit_identifier(request)
    if not check_rate_limit(identifier, strict=state_changing):
        security_logger.warning(f"Rate limit exceeded - Identifier: {identifier}, Path: {path}")
        return _reject(429, "Rate limit exceeded. Please try again later.")

    if state_changing and not origin_allowed(request):
        security_logger.warning(f"Origin/Referer validation failed - Path: {path}")
        return _reject(403, "Invalid origin or referer")
    return None


async def security_middleware(request: Request, call_next):
    """Screen the request, then log it with status and latency"""
    started = time.monotonic()
    status_code = 500
    error = None
    try:
        rejection = _screen(request)
        if rejection is not None:
            status_code = rejection.status_code
            error = rejection.body.decode()
            return rejection

        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        security_logger.error(f"Security middleware error: {error}", exc_info=True)
        raise
    finally:
        log_api_access(request, status_code, (time.monotonic() - started) * 1000, error)


async def ledger_error_handler(request: Request, exc: LedgerError):
    """Ledger errors that escape a route: reason string, 400 unless retriable"""
    logger.warning(f"Unhandled ledger error on {request.url.path}: {exc.reason}")
    return _reject(503 if exc.retriable else 400, exc.reason)


async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _reject(500, "Internal server error")
