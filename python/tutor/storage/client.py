"""Attachment store abstraction.

The question pipeline only needs three operations against blob storage:

- store(filename, content, mime_type) -> StoredAttachment
- resolve(access_key) -> fetchable URL
- delete(access_key) (best-effort, for cleanup after a failed admission)

SupabaseAttachmentStore talks to Supabase Storage over httpx.
FakeAttachmentStore keeps objects in memory for local runs and tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import uuid4

import httpx

from tutor.config import Environment, Settings
from tutor.logging import get_logger
from tutor.storage.paths import build_attachment_key

logger = get_logger(__name__)


@dataclass(frozen=True)
class StoredAttachment:
    """Result of storing one attachment.

    url is a short-lived signed URL; persist access_key, not url.
    """

    access_key: str
    url: str
    size: int
    mime_type: str


class StorageError(Exception):
    """Storage operation error."""

    def __init__(self, message: str, code: str = "E_STORAGE_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code


class AttachmentStoreBase(ABC):
    """Abstract base class for attachment store implementations."""

    @abstractmethod
    def store(self, filename: str, content: bytes, mime_type: str) -> StoredAttachment:
        """Persist one attachment under a fresh access key.

        Raises:
            StorageError: If the upload fails.
        """
        ...

    @abstractmethod
    def resolve(self, access_key: str) -> str:
        """Return a fetchable URL for a stored attachment.

        Raises:
            StorageError: If signing fails.
        """
        ...

    @abstractmethod
    def delete(self, access_key: str) -> None:
        """Delete an attachment. Best-effort: logs failures, never raises."""
        ...


class SupabaseAttachmentStore(AttachmentStoreBase):
    """Production attachment store backed by Supabase Storage."""

    def __init__(
        self,
        supabase_url: str,
        service_key: str,
        bucket: str = "attachments",
        signed_url_expiry_s: int = 300,
    ):
        """Initialize the store.

        Args:
            supabase_url: Supabase project URL (e.g., https://xxx.supabase.co).
            service_key: Supabase service role key.
            bucket: Storage bucket name.
            signed_url_expiry_s: Validity of URLs returned by resolve().
        """
        self._base_url = supabase_url.rstrip("/")
        self._bucket = bucket
        self._storage_url = f"{self._base_url}/storage/v1"
        self._expiry_s = signed_url_expiry_s
        self._headers = {
            "Authorization": f"Bearer {service_key}",
            "apikey": service_key,
        }

    def store(self, filename: str, content: bytes, mime_type: str) -> StoredAttachment:
        """Upload via POST /object/{bucket}/{key}, then sign a download URL."""
        access_key = build_attachment_key(uuid4(), filename)
        url = f"{self._storage_url}/object/{self._bucket}/{access_key}"

        try:
            with httpx.Client() as client:
                response = client.post(
                    url,
                    headers={**self._headers, "Content-Type": mime_type, "x-upsert": "false"},
                    content=content,
                    timeout=60.0,
                )
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to upload attachment: {type(e).__name__}") from e

        if response.status_code not in (200, 201):
            raise StorageError(
                f"Failed to upload attachment: {response.status_code}",
                code="E_STORAGE_UPLOAD_FAILED",
            )

        return StoredAttachment(
            access_key=access_key,
            url=self.resolve(access_key),
            size=len(content),
            mime_type=mime_type,
        )

    def resolve(self, access_key: str) -> str:
        """Create signed download URL via POST /object/sign/{bucket}/{key}."""
        url = f"{self._storage_url}/object/sign/{self._bucket}/{access_key}"

        try:
            with httpx.Client() as client:
                response = client.post(
                    url,
                    headers=self._headers,
                    json={"expiresIn": self._expiry_s},
                    timeout=30.0,
                )
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to sign download: {type(e).__name__}") from e

        if response.status_code != 200:
            raise StorageError(
                f"Failed to sign download: {response.status_code}",
                code="E_SIGN_DOWNLOAD_FAILED",
            )

        data = response.json()
        signed_path = data.get("signedURL") or data.get("signedUrl") or ""
        if not signed_path:
            raise StorageError(
                "Failed to sign download: missing signed URL",
                code="E_SIGN_DOWNLOAD_FAILED",
            )

        # Supabase may return absolute URLs or paths with or without /storage/v1
        if signed_path.startswith(("http://", "https://")):
            return signed_path
        if signed_path.startswith("/storage/"):
            return f"{self._base_url}{signed_path}"
        return f"{self._storage_url}/{signed_path.lstrip('/')}"

    def delete(self, access_key: str) -> None:
        """Delete object from storage (best-effort)."""
        url = f"{self._storage_url}/object/{self._bucket}/{access_key}"

        try:
            with httpx.Client() as client:
                response = client.delete(url, headers=self._headers, timeout=30.0)
        except httpx.HTTPError as e:
            logger.warning("attachment_delete_error", error_type=type(e).__name__)
            return

        if response.status_code not in (200, 204, 404):
            logger.warning("attachment_delete_failed", status_code=response.status_code)


class FakeAttachmentStore(AttachmentStoreBase):
    """In-memory attachment store for local runs and tests."""

    def __init__(self):
        self._objects: dict[str, tuple[bytes, str]] = {}  # key -> (content, mime_type)

    def store(self, filename: str, content: bytes, mime_type: str) -> StoredAttachment:
        access_key = build_attachment_key(uuid4(), filename)
        self._objects[access_key] = (content, mime_type)
        return StoredAttachment(
            access_key=access_key,
            url=self.resolve(access_key),
            size=len(content),
            mime_type=mime_type,
        )

    def resolve(self, access_key: str) -> str:
        return f"https://fake-storage.test/{access_key}?token=fake-{uuid4()}"

    def delete(self, access_key: str) -> None:
        self._objects.pop(access_key, None)

    # Test helper methods

    def get_object(self, access_key: str) -> bytes | None:
        """Get object content directly (test helper)."""
        if access_key not in self._objects:
            return None
        return self._objects[access_key][0]

    @property
    def keys(self) -> list[str]:
        return list(self._objects)


def get_attachment_store(settings: Settings) -> AttachmentStoreBase:
    """Build the configured attachment store.

    Returns:
        SupabaseAttachmentStore if Supabase credentials are set, FakeAttachmentStore
        otherwise (never in staging/prod, where settings validation requires them).
    """
    if settings.supabase_url and settings.supabase_service_key:
        return SupabaseAttachmentStore(
            supabase_url=settings.supabase_url,
            service_key=settings.supabase_service_key,
            bucket=settings.storage_bucket,
            signed_url_expiry_s=settings.signed_url_expiry_s,
        )

    if settings.tutor_env in (Environment.STAGING, Environment.PROD):
        raise StorageError("Attachment storage is not configured")

    return FakeAttachmentStore()
