"""
Exception-to-response mapping for the API.

Renders every failure as a JSON {"error": message} body without leaking
internal details. Service errors carry their own status and message;
anything unexpected becomes a generic 500.
"""

import logging
import traceback
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.exceptions import ServiceError, Unauthenticated, Unauthorized, MethodNotAllowed
from app.security.audit_logger import audit_logger, get_client_ip

logger = logging.getLogger(__name__)


class SecureErrorHandler:
    """Handles errors securely without leaking sensitive information"""

    def __init__(self, debug_mode: bool = False):
        """
        Build the handler and its table of public messages

        Args:
            debug_mode: Whether to log full tracebacks (dev only)
        """
        self.debug_mode = debug_mode

        # Error messages that are safe to expose
        self.safe_error_messages = {
            400: "Invalid request",
            401: "Authentication required",
            403: "Not authorized",
            404: "Resource not found",
            405: "Method not allowed",
            413: "Request payload too large",
            415: "Unsupported media type",
            500: "Internal server error",
        }

    async def handle_service_error(self, request: Request, exc: ServiceError) -> JSONResponse:
        """Render a domain error with its own status and message"""
        client_ip = get_client_ip(request)
        logger.warning(
            f"{exc.status_code} {type(exc).__name__}: {request.method} {request.url.path} "
            f"from {client_ip} - {exc.message}"
        )

        if isinstance(exc, Unauthenticated):
            audit_logger.log_authentication_failure(
                ip_address=client_ip,
                user_agent=request.headers.get("user-agent", "unknown"),
                failure_reason=exc.message,
                path=str(request.url.path)
            )
        elif isinstance(exc, Unauthorized):
            audit_logger.log_authorization_denied(
                user_id=getattr(request.state, "principal_id", None),
                reason=exc.message,
                path=str(request.url.path)
            )

        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    async def handle_http_exception(self, request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle routing-level HTTP exceptions (unknown path, wrong method)"""
        if exc.status_code == 405:
            return await self.handle_service_error(request, MethodNotAllowed())

        status_code = exc.status_code
        client_ip = get_client_ip(request)
        logger.warning(
            f"HTTP {status_code} error: {request.method} {request.url.path} "
            f"from {client_ip} - {str(exc.detail)}"
        )

        safe_message = self.safe_error_messages.get(
            status_code,
            "An error occurred while processing your request"
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": safe_message},
            headers=getattr(exc, "headers", None)
        )

    async def handle_validation_error(self, request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle body/query validation errors as 400"""
        client_ip = get_client_ip(request)
        errors = exc.errors()
        logger.warning(
            f"Validation error: {request.method} {request.url.path} "
            f"from {client_ip} - {len(errors)} errors"
        )

        fields = sorted({
            str(error.get("loc", ["", "?"])[-1])
            for error in errors
            if error.get("loc")
        })
        message = "Invalid request"
        if fields:
            message = f"Invalid or missing fields: {', '.join(fields[:10])}"

        return JSONResponse(status_code=400, content={"error": message})

    async def handle_internal_error(self, request: Request, exc: Exception) -> JSONResponse:
        """Handle internal server errors securely"""
        client_ip = get_client_ip(request)

        logger.error(
            f"Internal server error: {request.method} {request.url.path} "
            f"from {client_ip} - {type(exc).__name__}: {str(exc)}"
        )
        if self.debug_mode:
            logger.error(f"Traceback: {traceback.format_exc()}")

        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"}
        )


# Global error handler instance
error_handler = SecureErrorHandler(debug_mode=False)  # Set to True only for development
