"""
Security middleware: response hardening headers and request size limits.
"""

import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.security.audit_logger import audit_logger, get_client_ip

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all HTTP responses"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

        # JSON and TwiML only; nothing here is meant to be framed or scripted
        self.security_headers = {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
            "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
            "Referrer-Policy": "no-referrer",
        }

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        for header, value in self.security_headers.items():
            response.headers.setdefault(header, value)

        if response.headers.get("content-type", "").startswith("application/json"):
            response.headers["Cache-Control"] = "no-store"

        return response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose declared body is larger than max_size"""

    def __init__(self, app: ASGIApp, max_size: int = 10 * 1024 * 1024):
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                return JSONResponse(status_code=400, content={"error": "Invalid Content-Length header"})

            if size > self.max_size:
                client_ip = get_client_ip(request)
                logger.warning(f"⚠️ Request size limit exceeded: {size} bytes from IP: {client_ip}")
                audit_logger.log_suspicious_activity(
                    activity_type="oversized_request",
                    details={
                        "content_length": size,
                        "max_allowed": self.max_size,
                        "path": str(request.url.path),
                        "method": request.method
                    },
                    ip_address=client_ip
                )
                return JSONResponse(status_code=413, content={"error": "Request payload too large"})

        return await call_next(request)
