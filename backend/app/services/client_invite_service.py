# backend/app/services/client_invite_service.py
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from uuid import UUID

from jose import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.auth import AuthService
from app.core.config import settings
from app.core.exceptions import InvalidRequest, ConfigurationError
from app.models.models import Client, Profile, ClientUser, AuditLog, Role
from app.services.email_service import SendGridEmailService, email_service

logger = logging.getLogger(__name__)

INVITE_TOKEN_TYPE = "client_invite"


def generate_temp_password() -> str:
    return secrets.token_hex(18)


class ClientInviteService:
    def __init__(self, mailer: SendGridEmailService):
        self.mailer = mailer

    def build_accept_url(self, user_id: UUID, email: str, client_id: UUID) -> str:
        if not settings.SITE_URL:
            raise ConfigurationError("SITE_URL is not configured")
        token = jwt.encode(
            {
                "typ": INVITE_TOKEN_TYPE,
                "sub": str(user_id),
                "email": email,
                "client_id": str(client_id),
                "exp": datetime.now(timezone.utc) + timedelta(hours=settings.INVITE_TOKEN_TTL_HOURS),
            },
            settings.JWT_SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM
        )
        return f"{settings.SITE_URL.rstrip('/')}/accept-invite?token={token}"

    async def invite_client_user(
        self,
        db: AsyncSession,
        inviter_id: UUID,
        client_name: Optional[str],
        email: Optional[str],
        name: Optional[str] = None,
        send_invite: bool = True
    ) -> Dict[str, Any]:
        """Create a client, its first client-role login and the membership link.

        The caller has already been checked for an internal role.
        """
        client_name = (client_name or "").strip()
        email = (email or "").strip().lower()
        name = (name or "").strip() or None
        if not client_name or not email:
            raise InvalidRequest("client_name and client_user_email are required")

        existing = await db.execute(select(Profile.id).where(Profile.email == email))
        if existing.scalar_one_or_none():
            raise InvalidRequest("A user with this email already exists")

        temp_password = None
        client = Client(name=client_name, created_by=inviter_id)
        profile = Profile(role=Role.CLIENT.value, name=name, email=email)
        if not send_invite:
            temp_password = generate_temp_password()
            profile.password_hash = AuthService.get_password_hash(temp_password)

        db.add_all([client, profile])
        await db.flush()
        db.add(ClientUser(user_id=profile.id, client_id=client.id))
        db.add(AuditLog(
            actor_user_id=inviter_id,
            client_id=client.id,
            action="client_user_invited",
            details={"user_id": str(profile.id), "invite_sent": send_invite}
        ))
        await db.flush()

        if send_invite:
            try:
                accept_url = self.build_accept_url(profile.id, email, client.id)
                await self.mailer.send_invitation(email, client_name, accept_url, name)
            except Exception:
                await db.rollback()
                raise

        await db.commit()
        logger.info(f"✅ Client {client.id} created with user {profile.id} (invite_sent={send_invite})")

        response = {
            "client_id": client.id,
            "user_id": profile.id,
            "invite_sent": send_invite,
        }
        if temp_password:
            response["temp_password"] = temp_password
        return response


client_invite_service = ClientInviteService(email_service)
