from __future__ import annotations

import re

SECRET_PATTERN = re.compile(r"(sk-[A-Za-z0-9]{6,})")
EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_PATTERN = re.compile(r"(?<!\d)(?:\+?\d{1,3}[ -]?)?\d{2,4}[ -]\d{3,4}[ -]\d{4}(?!\d)")


def redact_secrets(text: str) -> str:
    """Redact API keys and personal contact data from a string."""

    text = SECRET_PATTERN.sub("sk-***", text)
    text = EMAIL_PATTERN.sub("***@***", text)
    return PHONE_PATTERN.sub("***-****", text)


def sanitize_text(text: str, max_length: int) -> str:
    """Trim and clamp user-provided text to a safe length."""

    cleaned = text.strip()
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length]
    return cleaned


def preview(text: str, limit: int = 50) -> str:
    """Short redacted excerpt of memory content for log lines."""

    excerpt = text if len(text) <= limit else f"{text[:limit]}..."
    return redact_secrets(excerpt)
