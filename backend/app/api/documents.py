# backend/app/api/documents.py
from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from uuid import UUID
import mimetypes
import posixpath
import logging

from app.db.database import get_db
from app.auth.auth import Principal, AccessResolver, get_current_principal, get_access_resolver
from app.core.config import settings
from app.core.exceptions import InvalidRequest
from app.schemas.schemas import (
    AnalyzeDocumentRequest,
    AnalyzeDocumentResponse,
    DocumentExtractionResponse,
    SignedUrlResponse
)
from app.services.document_service import document_service

router = APIRouter(prefix="/api/documents", tags=["documents"])
logger = logging.getLogger(__name__)

MAX_SIGNED_URL_TTL_SECONDS = 3600


@router.post("/analyze", response_model=AnalyzeDocumentResponse)
async def analyze_document(
    body: AnalyzeDocumentRequest,
    principal: Principal = Depends(get_current_principal),
    resolver: AccessResolver = Depends(get_access_resolver),
    db: AsyncSession = Depends(get_db)
):
    """Extract structured data from a stored client document"""
    if not body.client_id or not body.path or not body.mime_type:
        raise InvalidRequest("client_id, path, and mime_type are required")

    await resolver.authorize_tenant_access(principal.id, body.client_id)

    return await document_service.analyze(
        db,
        principal_id=principal.id,
        client_id=body.client_id,
        path=body.path,
        mime_type=body.mime_type
    )


@router.get("/latest", response_model=DocumentExtractionResponse)
async def get_latest_extraction(
    client_id: UUID,
    path: str,
    principal: Principal = Depends(get_current_principal),
    resolver: AccessResolver = Depends(get_access_resolver),
    db: AsyncSession = Depends(get_db)
):
    """Most recent extraction for a document"""
    await resolver.authorize_tenant_access(principal.id, client_id)
    return await document_service.latest_extraction(db, client_id, path)


@router.get("/signed-url", response_model=SignedUrlResponse)
async def get_signed_url(
    client_id: UUID,
    path: str,
    request: Request,
    expires_in: Optional[int] = None,
    principal: Principal = Depends(get_current_principal),
    resolver: AccessResolver = Depends(get_access_resolver)
):
    """Short-lived download link; request a new one instead of caching it"""
    await resolver.authorize_tenant_access(principal.id, client_id)

    expires_in = expires_in or settings.SIGNED_URL_TTL_SECONDS
    if expires_in < 1 or expires_in > MAX_SIGNED_URL_TTL_SECONDS:
        raise InvalidRequest(f"expires_in must be between 1 and {MAX_SIGNED_URL_TTL_SECONDS}")

    token = document_service.issue_signed_token(client_id, path, expires_in)
    base = (settings.PUBLIC_BASE_URL or str(request.base_url)).rstrip("/")
    return {"url": f"{base}/api/documents/download?token={token}", "expires_in": expires_in}


@router.get("/download")
async def download_document(token: str):
    """Serve a document for a valid signed link"""
    path, data = await document_service.read_signed(token)
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    filename = posixpath.basename(path)
    return Response(
        content=data,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )
