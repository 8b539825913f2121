# backend/app/core/exceptions.py
"""
Error taxonomy shared by the webhook processors and the authenticated
action endpoints. Each error carries the HTTP status it maps to; the
handlers in app.security.error_handlers render them as {"error": message}.
"""


class ServiceError(Exception):
    status_code: int = 500
    default_message: str = "Unexpected error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequest(ServiceError):
    status_code = 400
    default_message = "Invalid request"


class Unauthenticated(ServiceError):
    status_code = 401
    default_message = "Authentication required"


class Unauthorized(ServiceError):
    status_code = 403
    default_message = "Not authorized"


class NotFound(ServiceError):
    status_code = 404
    default_message = "Resource not found"


class MethodNotAllowed(ServiceError):
    status_code = 405
    default_message = "Method not allowed"


class UpstreamFailure(ServiceError):
    """A payment, telephony, e-mail or content-generation call failed or timed out."""
    status_code = 500
    default_message = "Upstream provider failure"


class InternalError(ServiceError):
    status_code = 500
    default_message = "Internal server error"


class ConfigurationError(InternalError):
    default_message = "Service is not configured"
