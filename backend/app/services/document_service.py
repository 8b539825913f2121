# backend/app/services/document_service.py
"""
Document analysis gateway: tenant-scoped blob reads, AI extraction and
time-limited download links.
"""
import asyncio
import base64
import json
import logging
import posixpath
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Dict, Any
from uuid import UUID

import aiofiles
from jose import JWTError, jwt
from openai import AsyncOpenAI, OpenAIError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    InvalidRequest, NotFound, Unauthenticated, UpstreamFailure, ConfigurationError
)
from app.models.models import DocumentExtraction

logger = logging.getLogger(__name__)

SIGNED_URL_TOKEN_TYPE = "document_download"

EXTRACTION_PROMPT = (
    "Extract the key financial facts from this document (business name, "
    "statement period, revenue, deposits, expenses, balances and any loan or "
    "credit figures). Respond with a single JSON object; use null for values "
    "that are not present."
)


def tenant_prefix(client_id: UUID) -> str:
    return f"tenants/{client_id}/"


def ensure_tenant_path(client_id: UUID, path: str) -> str:
    """Normalize a blob path and require it to sit under the client's prefix."""
    normalized = posixpath.normpath(path.strip().lstrip("/"))
    if ".." in normalized.split("/") or not normalized.startswith(tenant_prefix(client_id)):
        raise InvalidRequest("path is outside the client's document folder")
    return normalized


class LocalBlobStore:
    """Blob store backed by a directory; keys are relative POSIX paths."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        full = (self.root / path).resolve()
        if self.root not in full.parents:
            raise InvalidRequest("Invalid document path")
        return full

    async def read(self, path: str) -> Optional[bytes]:
        full = self._resolve(path)
        try:
            async with aiofiles.open(full, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            return None
        except IsADirectoryError:
            return None

    async def write(self, path: str, data: bytes):
        full = self._resolve(path)
        full.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(full, "wb") as f:
            await f.write(data)


def get_openai_client() -> AsyncOpenAI:
    """Get an AsyncOpenAI client with the app's API key."""
    if not settings.OPENAI_API_KEY:
        raise ConfigurationError("OPENAI_API_KEY is not configured")
    return AsyncOpenAI(api_key=settings.OPENAI_API_KEY, max_retries=0)


class OpenAIDocumentAnalyzer:
    """Content-generation backend for document extraction."""

    def __init__(self, model: Optional[str] = None, client_factory=get_openai_client):
        self.model = model or settings.DOCUMENT_ANALYSIS_MODEL
        self.client_factory = client_factory

    def _document_part(self, data: bytes, mime_type: str, filename: str) -> Dict[str, Any]:
        encoded = base64.b64encode(data).decode("ascii")
        if mime_type.startswith("image/"):
            return {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}}
        if mime_type.startswith("text/") or mime_type in ("application/json", "text/csv"):
            return {"type": "text", "text": data.decode("utf-8", errors="replace")}
        return {
            "type": "file",
            "file": {"filename": filename, "file_data": f"data:{mime_type};base64,{encoded}"}
        }

    async def analyze(self, data: bytes, mime_type: str, filename: str = "document") -> Dict[str, Any]:
        client = self.client_factory()
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    messages=[{
                        "role": "user",
                        "content": [
                            {"type": "text", "text": EXTRACTION_PROMPT},
                            self._document_part(data, mime_type, filename)
                        ]
                    }],
                    temperature=0,
                    response_format={"type": "json_object"}
                ),
                timeout=settings.PROVIDER_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error(f"⏱️ Document analysis timed out after {settings.PROVIDER_TIMEOUT_SECONDS}s")
            raise UpstreamFailure("Document analysis timed out")
        except OpenAIError as e:
            logger.error(f"❌ Document analysis failed: {e}")
            raise UpstreamFailure("Document analysis failed")

        content = response.choices[0].message.content or "{}"
        try:
            extracted = json.loads(content)
        except json.JSONDecodeError:
            raise UpstreamFailure("Document analysis returned invalid JSON")
        if not isinstance(extracted, dict):
            extracted = {"result": extracted}
        return extracted


class DocumentService:
    def __init__(self, blob_store: LocalBlobStore, analyzer: OpenAIDocumentAnalyzer):
        self.blob_store = blob_store
        self.analyzer = analyzer

    async def analyze(
        self,
        db: AsyncSession,
        principal_id: UUID,
        client_id: UUID,
        path: str,
        mime_type: str
    ) -> Dict[str, Any]:
        """Run extraction on a stored document and append the result.

        The caller has already been authorized for ``client_id``.
        """
        path = ensure_tenant_path(client_id, path)
        data = await self.blob_store.read(path)
        if data is None:
            raise NotFound("Document not found in storage")

        extracted = await self.analyzer.analyze(data, mime_type, posixpath.basename(path))

        extraction = DocumentExtraction(
            client_id=client_id,
            path=path,
            mime_type=mime_type,
            extracted=extracted,
            created_by=principal_id
        )
        db.add(extraction)
        await db.commit()

        logger.info(f"✅ Stored extraction {extraction.id} for {path}")
        return {"extraction_id": extraction.id, "extracted": extracted}

    async def latest_extraction(self, db: AsyncSession, client_id: UUID, path: str) -> DocumentExtraction:
        path = ensure_tenant_path(client_id, path)
        result = await db.execute(
            select(DocumentExtraction)
            .where(DocumentExtraction.client_id == client_id, DocumentExtraction.path == path)
            .order_by(DocumentExtraction.created_at.desc())
            .limit(1)
        )
        extraction = result.scalar_one_or_none()
        if not extraction:
            raise NotFound("No extraction found for this document")
        return extraction

    def issue_signed_token(self, client_id: UUID, path: str, expires_in: Optional[int] = None) -> str:
        path = ensure_tenant_path(client_id, path)
        expires_in = expires_in or settings.SIGNED_URL_TTL_SECONDS
        payload = {
            "typ": SIGNED_URL_TOKEN_TYPE,
            "client_id": str(client_id),
            "path": path,
            "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        }
        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_signed_token(self, token: str) -> Dict[str, str]:
        try:
            payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        except JWTError:
            raise Unauthenticated("Invalid or expired download link")
        if payload.get("typ") != SIGNED_URL_TOKEN_TYPE or not payload.get("path"):
            raise Unauthenticated("Invalid or expired download link")
        return payload

    async def read_signed(self, token: str) -> tuple:
        payload = self.verify_signed_token(token)
        path = payload["path"]
        data = await self.blob_store.read(path)
        if data is None:
            raise NotFound("Document not found in storage")
        return path, data


document_service = DocumentService(
    LocalBlobStore(settings.DOCUMENT_STORAGE_ROOT),
    OpenAIDocumentAnalyzer()
)
