"""Test helpers for gateway identity and common request payloads.

Provides:
- Viewer header generation for test requests
- Multipart payloads for POST /questions
"""

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
PDF_BYTES = b"%PDF-1.7\n" + b"0" * 64


def viewer_headers(user_id: int, role: str = "user") -> dict[str, str]:
    """Headers the upstream gateway would forward for this viewer."""
    return {"X-Viewer-Id": str(user_id), "X-Viewer-Role": role}


def admin_headers(user_id: int = 1) -> dict[str, str]:
    return viewer_headers(user_id, role="admin")


def question_form(subject_id: int, text: str = "Explain photosynthesis") -> dict[str, str]:
    return {"subjectId": str(subject_id), "question": text}
