"""
Startup checks for secrets and provider credentials.

Validates configuration at startup so a missing webhook secret or auth
secret fails the deploy instead of silently disabling verification.
"""

import re
import logging
from typing import Dict, Any, List, Optional

from app.core.config import settings
from app.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class EnvironmentValidator:
    """Validates environment variables for security and functionality"""

    def __init__(self, config=None):
        """Initialize the environment validator"""
        self.config = config or settings

        # Secrets without which sender verification or authentication is impossible
        self.required_secrets = {
            "JWT_SECRET_KEY": "Secret used to verify bearer tokens",
            "TWILIO_AUTH_TOKEN": "Twilio auth token for webhook signature verification",
            "STRIPE_WEBHOOK_SECRET": "Stripe signing secret for webhook verification",
        }

        # Optional API keys and their patterns
        self.api_key_validations = {
            "STRIPE_SECRET_KEY": {
                "pattern": r"^(sk|rk)_(test|live)_[a-zA-Z0-9]+$",
                "description": "Stripe secret key for checkout and portal sessions"
            },
            "STRIPE_WEBHOOK_SECRET": {
                "pattern": r"^whsec_[a-zA-Z0-9]+$",
                "description": "Stripe webhook signing secret"
            },
            "TWILIO_AUTH_TOKEN": {
                "pattern": r"^[a-f0-9]{32}$",
                "description": "Twilio auth token"
            },
            "OPENAI_API_KEY": {
                "pattern": r"^sk-(proj-)?[a-zA-Z0-9_-]{20,}$",
                "description": "OpenAI API key for document analysis"
            },
            "SENDGRID_API_KEY": {
                "pattern": r"^SG\.[a-zA-Z0-9_-]{22}\.[a-zA-Z0-9_-]{43}$",
                "description": "SendGrid API key for invitation e-mails"
            },
        }

        # Default/placeholder values that should never be used in production
        self.dangerous_defaults = [
            "your-secret-key",
            "changeme",
            "password",
            "secret",
            "default",
            "test123",
            "NOT_SET",
            "NONE",
        ]

    def validate_all_environment_vars(self) -> Dict[str, Any]:
        """
        Validate configuration

        Returns:
            Dictionary with status ("secure", "warning" or "critical"),
            critical_issues and warnings
        """
        critical_issues: List[str] = []
        warnings: List[str] = []

        for name, description in self.required_secrets.items():
            value = self._get(name)
            if not value:
                critical_issues.append(f"{name} is not set ({description})")
            elif value in self.dangerous_defaults:
                critical_issues.append(f"{name} uses a dangerous default value")

        jwt_secret = self._get("JWT_SECRET_KEY")
        if jwt_secret and len(jwt_secret) < 32:
            warnings.append("JWT_SECRET_KEY is shorter than 32 characters")

        for name, validation in self.api_key_validations.items():
            value = self._get(name)
            if value and not re.match(validation["pattern"], value):
                warnings.append(f"{name} has an unexpected format ({validation['description']})")

        if not self._get("SITE_URL"):
            warnings.append("SITE_URL is not set; checkout, portal and invite links are unavailable")

        if critical_issues:
            status = "critical"
        elif warnings:
            status = "warning"
        else:
            status = "secure"

        results = {
            "status": status,
            "critical_issues": critical_issues,
            "warnings": warnings,
        }
        self._log_validation_results(results)
        return results

    def ensure_valid(self) -> Dict[str, Any]:
        """Validate and raise ConfigurationError on critical issues"""
        results = self.validate_all_environment_vars()
        if results["status"] == "critical":
            raise ConfigurationError(
                "Invalid configuration: " + "; ".join(results["critical_issues"])
            )
        return results

    def _get(self, name: str) -> Optional[str]:
        return getattr(self.config, name, None)

    def _log_validation_results(self, results: Dict[str, Any]):
        """Log validation results for auditing"""
        status = results["status"]

        if status == "critical":
            logger.error(f"CRITICAL: Environment validation failed: {results['critical_issues']}")
        elif status == "warning":
            logger.warning(f"WARNING: Environment validation found issues: {results['warnings']}")
        else:
            logger.info("Environment validation passed - configuration appears secure")


# Global validator instance
env_validator = EnvironmentValidator()
