# backend/app/api/clients.py
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.db.database import get_db
from app.auth.auth import Principal, AccessResolver, get_current_principal, get_access_resolver
from app.core.exceptions import Unauthorized
from app.schemas.schemas import ClientInviteRequest, ClientInviteResponse
from app.services.client_invite_service import client_invite_service

router = APIRouter(prefix="/api/clients", tags=["clients"])
logger = logging.getLogger(__name__)


@router.post("/invite", response_model=ClientInviteResponse, response_model_exclude_none=True)
async def invite_client_user(
    body: ClientInviteRequest,
    principal: Principal = Depends(get_current_principal),
    resolver: AccessResolver = Depends(get_access_resolver),
    db: AsyncSession = Depends(get_db)
):
    """Create a client and invite its first user"""
    role = await resolver.get_role(principal.id)
    if not role.is_internal:
        raise Unauthorized("Not authorized to invite client users")

    return await client_invite_service.invite_client_user(
        db,
        inviter_id=principal.id,
        client_name=body.client_name,
        email=body.client_user_email,
        name=body.client_user_name,
        send_invite=body.send_invite
    )
