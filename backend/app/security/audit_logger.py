"""
Audit trail for security-relevant events in the funding-operations backend.
Tracks authentication failures, tenant authorization denials, webhook
signature rejections and suspicious activity such as tenant-resolution
disagreements between a payment customer and event metadata.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

from app.core.config import settings


class SecurityAuditLogger:
    """Security event logging"""

    def __init__(self, log_dir: Optional[str] = None):
        """
        Set up the security_audit logger and its handlers

        Args:
            log_dir: Directory for security_audit.log and the per-category
                     JSONL event files. Console only when not set.
        """
        self.logger = logging.getLogger("security_audit")
        self.logger.setLevel(logging.INFO)
        self.log_dir = Path(log_dir) if log_dir else None

        # Prevent duplicate handlers
        if not self.logger.handlers:
            if self.log_dir:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                handler = logging.FileHandler(self.log_dir / "security_audit.log")
                formatter = logging.Formatter(
                    '%(asctime)s [AUDIT] %(levelname)s %(message)s'
                    ' pid=%(process)d'
                )
                handler.setFormatter(formatter)
                self.logger.addHandler(handler)

            console_handler = logging.StreamHandler()
            console_formatter = logging.Formatter(
                '%(asctime)s [AUDIT] %(levelname)s %(message)s'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

    def log_authentication_failure(
        self,
        ip_address: str,
        user_agent: str,
        failure_reason: str = "invalid_token",
        path: Optional[str] = None
    ):
        """Log rejected bearer credentials"""
        event_data = {
            "event_type": "AUTH_FAILURE",
            "ip_address": ip_address,
            "user_agent": user_agent,
            "path": path,
            "failure_reason": failure_reason,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

        self.logger.warning(
            f"AUTH_FAILURE - IP: {ip_address} - Path: {path} - "
            f"Reason: {failure_reason} - UserAgent: {user_agent[:100]}"
        )

        self._write_security_event("auth_failure", event_data)

    def log_authorization_denied(
        self,
        user_id: Optional[str],
        reason: str,
        client_id: Optional[str] = None,
        path: Optional[str] = None
    ):
        """Log role or tenant-membership denials"""
        event_data = {
            "event_type": "AUTHORIZATION_DENIED",
            "user_id": user_id,
            "client_id": client_id,
            "path": path,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

        self.logger.warning(
            f"AUTHORIZATION_DENIED - User: {user_id} - Client: {client_id} - "
            f"Path: {path} - Reason: {reason}"
        )

        self._write_security_event("authorization_denied", event_data)

    def log_webhook_signature_rejected(
        self,
        provider: str,
        path: str,
        ip_address: str,
        reason: str = "invalid_signature"
    ):
        """Log webhook deliveries that failed sender verification"""
        event_data = {
            "event_type": "WEBHOOK_SIGNATURE_REJECTED",
            "provider": provider,
            "path": path,
            "ip_address": ip_address,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

        self.logger.warning(
            f"WEBHOOK_SIGNATURE_REJECTED - Provider: {provider} - "
            f"Path: {path} - IP: {ip_address} - Reason: {reason}"
        )

        self._write_security_event("webhook_signature", event_data)

    def log_suspicious_activity(
        self,
        activity_type: str,
        details: Dict[str, Any],
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None
    ):
        """Log general suspicious activity"""
        event_data = {
            "event_type": "SUSPICIOUS_ACTIVITY",
            "activity_type": activity_type,
            "user_id": user_id,
            "ip_address": ip_address,
            "details": details,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

        self.logger.warning(
            f"SUSPICIOUS_ACTIVITY - Type: {activity_type} - "
            f"User: {user_id} - IP: {ip_address} - "
            f"Details: {details}"
        )

        self._write_security_event("suspicious", event_data)

    def _write_security_event(self, event_category: str, event_data: Dict[str, Any]):
        """Write detailed security event to category-specific file"""
        if not self.log_dir:
            return
        try:
            event_file = self.log_dir / f"{event_category}_events.jsonl"

            with open(event_file, 'a', encoding='utf-8') as f:
                f.write(json.dumps(event_data, default=str) + '\n')

        except OSError as e:
            # Log to main security log if detailed logging fails
            self.logger.error(f"Failed to write security event to file: {e}")


def get_client_ip(request) -> str:
    """Extract client IP address from request"""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    if getattr(request, 'client', None):
        return request.client.host

    return "unknown"


# Global audit logger instance
audit_logger = SecurityAuditLogger(settings.SECURITY_LOG_DIR)
