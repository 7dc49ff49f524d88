"""Tests for the attachment store and key utilities.

Tests cover:
- Key building with test prefix isolation and safe file names
- SupabaseAttachmentStore against mocked Storage endpoints
- FakeAttachmentStore behavior
- Store selection from settings
"""

from uuid import uuid4

import httpx
import pytest
import respx

from tutor.config import Environment
from tutor.storage import (
    FakeAttachmentStore,
    StorageError,
    SupabaseAttachmentStore,
    build_attachment_key,
    get_attachment_store,
    safe_file_name,
)

SUPABASE_URL = "https://project.supabase.co"
STORAGE_URL = f"{SUPABASE_URL}/storage/v1"


class TestKeyBuilding:
    def test_production_key(self, monkeypatch):
        monkeypatch.delenv("STORAGE_TEST_PREFIX", raising=False)
        attachment_id = uuid4()

        key = build_attachment_key(attachment_id, "notes.pdf")

        assert key == f"attachments/{attachment_id}/notes.pdf"

    def test_test_prefix_gets_trailing_slash(self, monkeypatch):
        monkeypatch.setenv("STORAGE_TEST_PREFIX", "test_runs/run-1")
        attachment_id = uuid4()

        key = build_attachment_key(attachment_id, "notes.pdf")

        assert key == f"test_runs/run-1/attachments/{attachment_id}/notes.pdf"

    @pytest.mark.parametrize(
        ("filename", "expected"),
        [
            ("../My Notes (1).pdf", "My_Notes_1_.pdf"),
            ("C:\\Users\\me\\diagram.png", "diagram.png"),
            ("...", "file"),
            ("", "file"),
        ],
    )
    def test_safe_file_name(self, filename, expected):
        assert safe_file_name(filename) == expected

    def test_long_name_keeps_extension(self):
        name = safe_file_name("a" * 300 + ".pdf")

        assert len(name) == 100
        assert name.endswith(".pdf")


class TestSupabaseAttachmentStore:
    @pytest.fixture
    def store(self, monkeypatch):
        monkeypatch.delenv("STORAGE_TEST_PREFIX", raising=False)
        return SupabaseAttachmentStore(SUPABASE_URL, "service-key", bucket="attachments")

    @respx.mock
    def test_store_uploads_and_signs(self, store):
        upload = respx.post(url__startswith=f"{STORAGE_URL}/object/attachments/").respond(
            200, json={"Key": "ok"}
        )
        sign = respx.post(url__startswith=f"{STORAGE_URL}/object/sign/attachments/").respond(
            200, json={"signedURL": "/object/sign/attachments/x/notes.pdf?token=abc"}
        )

        stored = store.store("notes.pdf", b"%PDF-1.7", "application/pdf")

        assert stored.access_key.startswith("attachments/")
        assert stored.access_key.endswith("/notes.pdf")
        assert stored.size == 8
        assert stored.mime_type == "application/pdf"
        assert stored.url == f"{STORAGE_URL}/object/sign/attachments/x/notes.pdf?token=abc"
        sent = upload.calls.last.request
        assert sent.headers["Authorization"] == "Bearer service-key"
        assert sent.headers["Content-Type"] == "application/pdf"
        assert sent.content == b"%PDF-1.7"
        assert sign.called

    @respx.mock
    def test_store_upload_failure(self, store):
        respx.post(url__startswith=f"{STORAGE_URL}/object/attachments/").respond(403)

        with pytest.raises(StorageError) as exc_info:
            store.store("notes.pdf", b"%PDF-1.7", "application/pdf")

        assert exc_info.value.code == "E_STORAGE_UPLOAD_FAILED"

    @respx.mock
    def test_store_network_error(self, store):
        respx.post(url__startswith=f"{STORAGE_URL}/object/attachments/").mock(
            side_effect=httpx.ConnectError("refused")
        )

        with pytest.raises(StorageError) as exc_info:
            store.store("notes.pdf", b"%PDF-1.7", "application/pdf")

        assert exc_info.value.code == "E_STORAGE_ERROR"

    @respx.mock
    def test_resolve_accepts_absolute_and_storage_paths(self, store):
        route = respx.post(f"{STORAGE_URL}/object/sign/attachments/k/a.png")
        route.side_effect = [
            httpx.Response(200, json={"signedURL": "https://cdn.example/a.png?t=1"}),
            httpx.Response(200, json={"signedUrl": "/storage/v1/object/sign/k/a.png?t=2"}),
        ]

        assert store.resolve("k/a.png") == "https://cdn.example/a.png?t=1"
        assert store.resolve("k/a.png") == f"{SUPABASE_URL}/storage/v1/object/sign/k/a.png?t=2"

    @respx.mock
    def test_resolve_missing_signed_url(self, store):
        respx.post(f"{STORAGE_URL}/object/sign/attachments/k/a.png").respond(200, json={})

        with pytest.raises(StorageError) as exc_info:
            store.resolve("k/a.png")

        assert exc_info.value.code == "E_SIGN_DOWNLOAD_FAILED"

    @respx.mock
    def test_delete_is_best_effort(self, store):
        respx.delete(f"{STORAGE_URL}/object/attachments/k/a.png").respond(500)

        store.delete("k/a.png")


class TestFakeAttachmentStore:
    def test_store_get_delete(self):
        store = FakeAttachmentStore()

        stored = store.store("a.png", b"data", "image/png")

        assert store.get_object(stored.access_key) == b"data"
        assert stored.url.startswith(f"https://fake-storage.test/{stored.access_key}")
        store.delete(stored.access_key)
        assert store.get_object(stored.access_key) is None
        assert store.keys == []

    def test_delete_missing_no_error(self):
        FakeAttachmentStore().delete("attachments/none/a.png")


class TestGetAttachmentStore:
    def test_configured_credentials_select_supabase(self, settings):
        configured = settings.model_copy(
            update={"supabase_url": SUPABASE_URL, "supabase_service_key": "service-key"}
        )

        assert isinstance(get_attachment_store(configured), SupabaseAttachmentStore)

    def test_local_without_credentials_uses_fake(self, settings):
        local = settings.model_copy(update={"supabase_url": None, "supabase_service_key": None})

        assert isinstance(get_attachment_store(local), FakeAttachmentStore)

    def test_prod_without_credentials_raises(self, settings):
        prod = settings.model_copy(
            update={
                "tutor_env": Environment.PROD,
                "supabase_url": None,
                "supabase_service_key": None,
            }
        )

        with pytest.raises(StorageError):
            get_attachment_store(prod)
