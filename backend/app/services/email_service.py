"""
SendGrid email service for client invitations
"""
import logging
from typing import Dict, Any, Optional

from jinja2 import Environment, BaseLoader, select_autoescape
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, From, To, Subject, PlainTextContent, HtmlContent

from app.core.config import settings
from app.core.exceptions import ConfigurationError, UpstreamFailure
from app.core.provider_calls import call_provider

logger = logging.getLogger(__name__)

INVITE_SUBJECT = "You're invited to {{ client_name }}"

INVITE_HTML = """\
<p>Hello{% if name %} {{ name }}{% endif %},</p>
<p>You have been invited to access the <strong>{{ client_name }}</strong> workspace.</p>
<p><a href="{{ accept_url }}">Accept your invitation</a></p>
<p>This link expires in {{ ttl_hours }} hours.</p>
"""

INVITE_TEXT = """\
Hello{% if name %} {{ name }}{% endif %},

You have been invited to access the {{ client_name }} workspace.
Accept your invitation: {{ accept_url }}

This link expires in {{ ttl_hours }} hours.
"""


class SendGridEmailService:
    """SendGrid email service with Jinja2-rendered templates"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.SENDGRID_API_KEY
        self.client = SendGridAPIClient(api_key=self.api_key) if self.api_key else None
        if not self.client:
            logger.warning("SENDGRID_API_KEY not configured; invitation e-mails are disabled")

        self.jinja_env = Environment(loader=BaseLoader(), autoescape=select_autoescape(default=True))
        self.text_env = Environment(loader=BaseLoader(), autoescape=False)
        self.from_email = settings.INVITE_FROM_EMAIL
        self.from_name = settings.PROJECT_NAME

    def is_configured(self) -> bool:
        """Check if SendGrid is properly configured"""
        return self.client is not None

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: str,
        to_name: Optional[str] = None
    ) -> Dict[str, Any]:
        """Send a single email"""
        if not self.is_configured():
            raise ConfigurationError("SendGrid is not configured")

        mail = Mail()
        mail.from_email = From(email=self.from_email, name=self.from_name)
        mail.to = To(email=to_email, name=to_name)
        mail.subject = Subject(subject)
        mail.content = [PlainTextContent(text_content), HtmlContent(html_content)]

        response = await call_provider("SendGrid", self.client.send, mail)
        if response.status_code >= 300:
            logger.error(f"SendGrid rejected email to {to_email}: {response.status_code}")
            raise UpstreamFailure("Failed to send invitation email")

        logger.info(f"Email sent successfully to {to_email}. Status: {response.status_code}")
        return {
            "status_code": response.status_code,
            "message_id": response.headers.get('X-Message-Id'),
        }

    async def send_invitation(
        self,
        to_email: str,
        client_name: str,
        accept_url: str,
        name: Optional[str] = None
    ) -> Dict[str, Any]:
        variables = {
            "name": name,
            "client_name": client_name,
            "accept_url": accept_url,
            "ttl_hours": settings.INVITE_TOKEN_TTL_HOURS,
        }
        return await self.send_email(
            to_email=to_email,
            subject=self.text_env.from_string(INVITE_SUBJECT).render(**variables),
            html_content=self.jinja_env.from_string(INVITE_HTML).render(**variables),
            text_content=self.text_env.from_string(INVITE_TEXT).render(**variables),
            to_name=name
        )


# Global service instance
email_service = SendGridEmailService()
