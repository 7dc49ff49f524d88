"""Attachment key building utilities.

All attachment keys are built here so the test prefix is applied exactly
once.

Key Invariant:
    - Production: attachments/{attachment_id}/{safe_name}
    - Test: test_runs/{run_id}/attachments/{attachment_id}/{safe_name}

Rules:
    - No leading slash
    - No user identifiers in keys
    - The uploaded file name is reduced to a safe basename
"""

import os
import re
from uuid import UUID

# Environment variable for test run prefix
TEST_PREFIX_ENV_VAR = "STORAGE_TEST_PREFIX"

MAX_NAME_CHARS = 100

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _get_test_prefix() -> str:
    prefix = os.environ.get(TEST_PREFIX_ENV_VAR, "")
    if prefix and not prefix.endswith("/"):
        prefix = f"{prefix}/"
    return prefix


def safe_file_name(filename: str) -> str:
    """Reduce an uploaded file name to a storage-safe basename.

    >>> safe_file_name("../My Notes (1).pdf")
    'My_Notes_1_.pdf'
    """
    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
    if not cleaned:
        return "file"
    if len(cleaned) > MAX_NAME_CHARS:
        stem, dot, ext = cleaned.rpartition(".")
        if dot and len(ext) <= 10:
            cleaned = stem[: MAX_NAME_CHARS - len(ext) - 1] + "." + ext
        else:
            cleaned = cleaned[:MAX_NAME_CHARS]
    return cleaned


def build_attachment_key(attachment_id: UUID | str, filename: str) -> str:
    """Build the access key for a stored attachment.

    Returns:
        "attachments/{attachment_id}/{safe_name}", prefixed in test runs.
    """
    return f"{_get_test_prefix()}attachments/{attachment_id}/{safe_file_name(filename)}"
