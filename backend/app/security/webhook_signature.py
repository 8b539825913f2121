# backend/app/security/webhook_signature.py
"""
Twilio webhook sender verification.

Twilio signs each callback with HMAC-SHA1 over the exact URL it requested
followed by the sorted form parameters, keyed by the account auth token.
The token is shared across tenants; a missing token is a configuration
error, never a reason to skip verification.
"""
import logging
from typing import Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

from fastapi import Request
from twilio.request_validator import RequestValidator

from app.core.config import settings
from app.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class TwilioSignatureVerifier:
    def __init__(self, auth_token: Optional[str] = None, public_base_url: Optional[str] = None):
        auth_token = auth_token if auth_token is not None else settings.TWILIO_AUTH_TOKEN
        if not auth_token:
            raise ConfigurationError("TWILIO_AUTH_TOKEN is not configured")
        self._validator = RequestValidator(auth_token)
        self.public_base_url = public_base_url if public_base_url is not None else settings.PUBLIC_BASE_URL

    def verify(self, params: Mapping[str, str], url: str, signature: Optional[str]) -> bool:
        """True iff ``signature`` matches ``url`` plus ``params``."""
        if not signature:
            return False
        return self._validator.validate(url, dict(params), signature)

    def public_url(self, request: Request) -> str:
        """URL the provider actually requested.

        Behind a proxy the request arrives on an internal host, so the path
        and query are re-based onto PUBLIC_BASE_URL.
        """
        received = str(request.url)
        if not self.public_base_url:
            return received
        base = urlsplit(self.public_base_url.rstrip("/"))
        parts = urlsplit(received)
        return urlunsplit((base.scheme, base.netloc, base.path + parts.path, parts.query, ""))

    async def verify_request(self, request: Request, params: Mapping[str, str]) -> bool:
        signature = request.headers.get("X-Twilio-Signature")
        url = self.public_url(request)
        valid = self.verify(params, url, signature)
        if not valid:
            logger.warning(f"❌ Twilio signature rejected for {request.url.path}")
        return valid


_verifier: Optional[TwilioSignatureVerifier] = None


def get_twilio_verifier() -> TwilioSignatureVerifier:
    """FastAPI dependency; built on first use so missing config surfaces as 500."""
    global _verifier
    if _verifier is None:
        _verifier = TwilioSignatureVerifier()
    return _verifier
