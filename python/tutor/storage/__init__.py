"""Attachment storage.

Provides:
- AttachmentStoreBase with Supabase and in-memory implementations
- Key building utilities with test isolation prefixes
"""

from tutor.storage.client import (
    AttachmentStoreBase,
    FakeAttachmentStore,
    StorageError,
    StoredAttachment,
    SupabaseAttachmentStore,
    get_attachment_store,
)
from tutor.storage.paths import build_attachment_key, safe_file_name

__all__ = [
    "AttachmentStoreBase",
    "SupabaseAttachmentStore",
    "FakeAttachmentStore",
    "StoredAttachment",
    "StorageError",
    "get_attachment_store",
    "build_attachment_key",
    "safe_file_name",
]
