# backend/app/auth/auth.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import settings
from app.core.exceptions import Unauthenticated, Unauthorized, InternalError
from app.db.database import get_session_factory
from app.models.models import Profile, ClientUser, ClientStaff, Role

logger = logging.getLogger(__name__)

# Password hashing (temporary-password invites)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@dataclass(frozen=True)
class Principal:
    id: UUID
    email: Optional[str] = None


class AuthService:
    @staticmethod
    def verify_password(plain_password: str, hashed_password: str) -> bool:
        """Verify a password against a hash."""
        return pwd_context.verify(plain_password, hashed_password)

    @staticmethod
    def get_password_hash(password: str) -> str:
        """Generate password hash."""
        return pwd_context.hash(password)

    @staticmethod
    def decode_token(token: str) -> dict:
        """Decode and validate a JWT issued by the auth provider."""
        options = {"verify_aud": bool(settings.JWT_AUDIENCE)}
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM],
                audience=settings.JWT_AUDIENCE,
                options=options
            )
        except JWTError:
            raise Unauthenticated("Invalid or expired token")


def resolve_principal(authorization: Optional[str]) -> Principal:
    """Map an `Authorization: Bearer <token>` header to a principal."""
    if not authorization:
        raise Unauthenticated("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme != "Bearer" or not token:
        raise Unauthenticated("Invalid Authorization header format")

    payload = AuthService.decode_token(token)
    try:
        principal_id = UUID(str(payload.get("sub")))
    except ValueError:
        raise Unauthenticated("Invalid or expired token")
    return Principal(id=principal_id, email=payload.get("email"))


async def get_current_principal(request: Request) -> Principal:
    """Get the authenticated principal from the bearer token."""
    principal = resolve_principal(request.headers.get("Authorization"))
    request.state.principal_id = str(principal.id)
    return principal


class AccessResolver:
    """Role lookup and tenant access decisions. Read-only."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_role(self, principal_id: UUID) -> Role:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Profile.role).where(Profile.id == principal_id)
                )
                role = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load profile role for {principal_id}: {e}")
            raise InternalError("Failed to load profile role")
        # No profile is not an error; it just grants nothing
        return Role.parse(role)

    async def require_internal(self, principal_id: UUID) -> Role:
        role = await self.get_role(principal_id)
        if not role.is_internal:
            raise Unauthorized("Internal role required")
        return role

    async def _row_exists(self, model, principal_id: UUID, client_id: UUID) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(model.id).where(
                    model.user_id == principal_id,
                    model.client_id == client_id
                ).limit(1)
            )
            return result.first() is not None

    async def has_membership(self, principal_id: UUID, client_id: UUID) -> bool:
        """Client-user or client-staff link, both checks in parallel."""
        try:
            is_client_user, is_staff = await asyncio.gather(
                self._row_exists(ClientUser, principal_id, client_id),
                self._row_exists(ClientStaff, principal_id, client_id)
            )
        except SQLAlchemyError as e:
            logger.error(f"Membership check failed for {principal_id} on {client_id}: {e}")
            raise InternalError("Failed to verify client access")
        return is_client_user or is_staff

    async def authorize_tenant_access(self, principal_id: UUID, client_id: UUID) -> Role:
        role = await self.get_role(principal_id)
        if role == Role.ADMIN:
            return role
        if not await self.has_membership(principal_id, client_id):
            raise Unauthorized("Not authorized for this client")
        return role

    async def authorize_internal_tenant_access(self, principal_id: UUID, client_id: UUID) -> Role:
        """Internal role and tenant access with a single profile read."""
        role = await self.get_role(principal_id)
        if not role.is_internal:
            raise Unauthorized("Internal role required")
        if role == Role.ADMIN:
            return role
        if not await self.has_membership(principal_id, client_id):
            raise Unauthorized("Not authorized for this client")
        return role


def get_access_resolver(
    session_factory: async_sessionmaker = Depends(get_session_factory)
) -> AccessResolver:
    return AccessResolver(session_factory)
