"""Log guard utilities.

- safe_kv: log guard that blocks forbidden keys at call site

Never-log policy:
- API keys and the internal gateway secret
- Rendered prompts
- Question, follow-up and answer text
- Attachment bytes

Allowed (with suffix):
- _chars, _length: length of text
- _sha256, _hash: hash of text
- Token counts, credits, provider request ID
"""

import os

import structlog

FORBIDDEN_KEYS = frozenset(
    {
        "prompt",
        "content",
        "question",
        "question_text",
        "answer",
        "answer_text",
        "message_text",
        "api_key",
        "bearer",
        "token",
        "secret",
        "password",
        "raw_body",
    }
)

REDACTED_SUFFIXES = ("_sha256", "_hash", "_length", "_chars")


def _has_redacted_suffix(key: str) -> bool:
    return any(key.endswith(suffix) for suffix in REDACTED_SUFFIXES)


def safe_kv(*, _env: str | None = None, **kwargs) -> dict:
    """Validate that no forbidden keys are present unless already redacted.

    Raises ValueError in local/test environments if a forbidden key is used
    without a redacted suffix. In staging/prod, logs a warning instead.

    Usage:
        logger.info("llm.request.started", **safe_kv(
            provider="openai",
            model_name="gpt-4o",
            message_chars=1234,        # OK: _chars suffix
            question_sha256="abc123",  # OK: _sha256 suffix
            # prompt="hello world",    # BLOCKED: forbidden key
        ))

    Args:
        _env: Override for TUTOR_ENV (test-only). If None, reads from env.
        **kwargs: Keyword arguments to validate and return.

    Returns:
        The same kwargs dict, after validation.

    Raises:
        ValueError: In local/test, if a forbidden key is used without redacted suffix.
    """
    violations = [
        key for key in kwargs if key in FORBIDDEN_KEYS and not _has_redacted_suffix(key)
    ]

    if violations:
        msg = f"Forbidden log keys without redacted suffix: {violations}"
        env = _env or os.environ.get("TUTOR_ENV", "local")
        if env in ("local", "test"):
            raise ValueError(msg)
        structlog.get_logger("tutor.services.redact").warning(
            "safe_kv_violation", forbidden_keys=violations
        )

    return kwargs
