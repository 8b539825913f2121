import pytest
import uuid
from datetime import datetime, timedelta, timezone
from jose import jwt

from app.core.config import settings
from app.core.exceptions import InvalidRequest, NotFound, Unauthenticated, UpstreamFailure
from app.models.models import DocumentExtraction
from app.services.document_service import (
    DocumentService, LocalBlobStore, OpenAIDocumentAnalyzer, ensure_tenant_path, tenant_prefix
)


class FakeAnalyzer:
    def __init__(self, result=None, error=None):
        self.result = result or {"business_name": "Acme Funding", "revenue": 120000}
        self.error = error
        self.calls = []

    async def analyze(self, data, mime_type, filename="document"):
        self.calls.append((data, mime_type, filename))
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def store(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def documents(store, analyzer):
    return DocumentService(store, analyzer)


class TestTenantPaths:

    def test_accepts_path_under_prefix(self):
        client_id = uuid.uuid4()
        path = f"{tenant_prefix(client_id)}statements/jan.pdf"
        assert ensure_tenant_path(client_id, path) == path
        assert ensure_tenant_path(client_id, "/" + path) == path

    @pytest.mark.parametrize("suffix", ["../other/x.pdf", "a/../../x.pdf"])
    def test_rejects_traversal(self, suffix):
        client_id = uuid.uuid4()
        with pytest.raises(InvalidRequest):
            ensure_tenant_path(client_id, f"{tenant_prefix(client_id)}{suffix}")

    def test_rejects_other_tenant(self):
        with pytest.raises(InvalidRequest):
            ensure_tenant_path(uuid.uuid4(), f"{tenant_prefix(uuid.uuid4())}x.pdf")


class TestAnalyze:

    @pytest.mark.asyncio
    async def test_missing_blob_is_not_found(self, documents, analyzer, db, tenant):
        with pytest.raises(NotFound) as exc_info:
            await documents.analyze(
                db, tenant.staff_id, tenant.client_id,
                f"{tenant_prefix(tenant.client_id)}missing.pdf", "application/pdf"
            )
        assert exc_info.value.message == "Document not found in storage"
        assert analyzer.calls == []

    @pytest.mark.asyncio
    async def test_extraction_is_appended_and_latest_returned(self, documents, store, analyzer, db, tenant):
        path = f"{tenant_prefix(tenant.client_id)}statements/jan.pdf"
        await store.write(path, b"%PDF-1.4 fake")

        first = await documents.analyze(db, tenant.staff_id, tenant.client_id, path, "application/pdf")
        analyzer.result = {"business_name": "Acme Funding LLC"}
        second = await documents.analyze(db, tenant.staff_id, tenant.client_id, path, "application/pdf")

        assert first["extraction_id"] != second["extraction_id"]
        assert analyzer.calls[0] == (b"%PDF-1.4 fake", "application/pdf", "jan.pdf")

        # Pin timestamps so ordering does not depend on clock resolution
        now = datetime.now(timezone.utc)
        older = await db.get(DocumentExtraction, first["extraction_id"])
        newer = await db.get(DocumentExtraction, second["extraction_id"])
        older.created_at = now - timedelta(minutes=5)
        newer.created_at = now
        await db.commit()

        latest = await documents.latest_extraction(db, tenant.client_id, path)
        assert latest.id == second["extraction_id"]
        assert latest.extracted == {"business_name": "Acme Funding LLC"}

    @pytest.mark.asyncio
    async def test_analyzer_failure_stores_nothing(self, store, db, tenant):
        path = f"{tenant_prefix(tenant.client_id)}id.png"
        await store.write(path, b"\x89PNG")
        documents = DocumentService(store, FakeAnalyzer(error=UpstreamFailure("Document analysis failed")))

        with pytest.raises(UpstreamFailure):
            await documents.analyze(db, tenant.staff_id, tenant.client_id, path, "image/png")
        with pytest.raises(NotFound):
            await documents.latest_extraction(db, tenant.client_id, path)


class TestSignedTokens:

    def test_token_round_trip(self, documents):
        client_id = uuid.uuid4()
        path = f"{tenant_prefix(client_id)}a.pdf"
        payload = documents.verify_signed_token(documents.issue_signed_token(client_id, path, 60))
        assert payload["path"] == path
        assert payload["client_id"] == str(client_id)

    def test_bearer_token_is_not_a_download_token(self, documents):
        token = jwt.encode(
            {"sub": str(uuid.uuid4()), "path": "tenants/x/a.pdf",
             "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            settings.JWT_SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM
        )
        with pytest.raises(Unauthenticated):
            documents.verify_signed_token(token)

    def test_expired_token(self, documents):
        token = jwt.encode(
            {"typ": "document_download", "path": "tenants/x/a.pdf",
             "exp": datetime.now(timezone.utc) - timedelta(seconds=1)},
            settings.JWT_SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM
        )
        with pytest.raises(Unauthenticated):
            documents.verify_signed_token(token)

    @pytest.mark.asyncio
    async def test_read_signed(self, documents, store):
        client_id = uuid.uuid4()
        path = f"{tenant_prefix(client_id)}a.txt"
        await store.write(path, b"hello")
        assert await documents.read_signed(documents.issue_signed_token(client_id, path, 60)) == (path, b"hello")


class TestOpenAIDocumentAnalyzer:

    def test_document_parts_by_mime_type(self):
        analyzer = OpenAIDocumentAnalyzer(model="test-model", client_factory=lambda: None)
        assert analyzer._document_part(b"x", "image/png", "a.png")["type"] == "image_url"
        assert analyzer._document_part(b"x,y", "text/csv", "a.csv") == {"type": "text", "text": "x,y"}
        assert analyzer._document_part(b"%PDF", "application/pdf", "a.pdf")["type"] == "file"
