"""
Security module for the GrantMatch worker API.

- Rate limiting (IP-based using slowapi) on the batch triggers
- Request ID generation and security headers
- Secure error responses (details hidden in production)
- Audit logging of security events

Configuration via environment variables:
- BATCH_RATE_LIMIT: limit applied to batch trigger endpoints (default: 30/minute)
- TRUSTED_PROXY_COUNT: proxies appending to X-Forwarded-For (default: 1)
- ENVIRONMENT: 'production' or 'development' (affects error detail exposure)
"""

import ipaddress
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

BATCH_RATE_LIMIT = os.getenv("BATCH_RATE_LIMIT", "30/minute")
TRUSTED_PROXY_COUNT = int(os.getenv("TRUSTED_PROXY_COUNT", "1"))

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
IS_PRODUCTION = ENVIRONMENT.lower() == "production"


# =============================================================================
# Client IP + Rate Limiter
# =============================================================================


def _is_valid_ip(ip_str: str) -> bool:
    if not ip_str or len(ip_str) > 45:
        return False
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str:
    """Client IP using the rightmost non-trusted X-Forwarded-For entry."""
    direct_ip = request.client.host if request.client else None

    if forwarded_for := request.headers.get("X-Forwarded-For"):
        if ips := [ip.strip() for ip in forwarded_for.split(",") if ip.strip()]:
            if len(ips) > TRUSTED_PROXY_COUNT:
                client_ip = ips[-(TRUSTED_PROXY_COUNT + 1)]
            else:
                client_ip = ips[0]
            if _is_valid_ip(client_ip):
                return client_ip
            logger.warning(
                f"Invalid IP in X-Forwarded-For header: {client_ip[:50]!r}",
                extra={"direct_ip": direct_ip},
            )

    if direct_ip and (_is_valid_ip(direct_ip) or direct_ip == "testclient"):
        return direct_ip
    return "unknown"


limiter = Limiter(
    key_func=get_client_ip,
    storage_uri="memory://",
    strategy="fixed-window",
)


def rate_limit_batch():
    """Decorator for batch trigger endpoints."""
    return limiter.limit(BATCH_RATE_LIMIT)


# =============================================================================
# Request ID + Security Headers
# =============================================================================


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.time()

        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if IS_PRODUCTION:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        response.headers["X-Request-ID"] = request_id
        if not response.headers.get("Cache-Control"):
            response.headers["Cache-Control"] = "no-store"

        logger.info(
            f"Request completed: {request.method} {request.url.path} "
            f"status={response.status_code} duration={time.time() - started:.3f}s "
            f"request_id={request_id} client_ip={get_client_ip(request)}"
        )
        return response


# =============================================================================
# Exception Handlers
# =============================================================================


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


async def secure_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions without leaking internals in production."""
    request_id = _request_id(request)
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc} "
        f"request_id={request_id} path={request.url.path} method={request.method}",
        exc_info=True,
    )
    if IS_PRODUCTION:
        content = {
            "detail": "An internal server error occurred. Please try again later.",
            "code": "INTERNAL_ERROR",
            "request_id": request_id,
        }
    else:
        content = {
            "detail": str(exc),
            "error_type": type(exc).__name__,
            "request_id": request_id,
        }
    return JSONResponse(status_code=500, content=content, headers={"X-Request-ID": request_id})


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    request_id = _request_id(request)
    log_security_event("rate_limit_exceeded", request, {"limit": str(exc.detail)})
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded. Please slow down your requests.",
            "code": "RATE_LIMIT_EXCEEDED",
            "request_id": request_id,
        },
        headers={"X-Request-ID": request_id, "Retry-After": "60"},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    request_id = _request_id(request)
    headers = dict(exc.headers or {})
    headers["X-Request-ID"] = request_id
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "request_id": request_id},
        headers=headers,
    )


def setup_security(app: FastAPI) -> None:
    """Attach the limiter, middleware and exception handlers to *app*."""
    app.state.limiter = limiter
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, secure_exception_handler)
    logger.info(
        f"Security configured: batch_rate_limit={BATCH_RATE_LIMIT}, environment={ENVIRONMENT}"
    )


# =============================================================================
# Audit Logging
# =============================================================================


def log_security_event(
    event_type: str, request: Request, details: Optional[dict] = None
) -> None:
    """Log a security-relevant event for audit purposes."""
    log_data = {
        "event_type": event_type,
        "request_id": getattr(request.state, "request_id", "unknown"),
        "client_ip": get_client_ip(request),
        "path": request.url.path,
        "method": request.method,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if details:
        log_data |= details
    logger.warning(f"SECURITY_EVENT: {log_data}")
