"""Sanitization helpers for attempt diagnostics persisted in DB."""

from __future__ import annotations

import re
from collections.abc import Callable

_MAX_PREVIEW_CHARS = 2_000

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer|token)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-_]{8,})\b"),
        "[redacted-token]",
    ),
    (
        # code host personal/app tokens and chat bot tokens
        re.compile(r"\b(gh[pousr]_[A-Za-z0-9]{16,}|github_pat_[A-Za-z0-9_]{16,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(r"\bxox[abpors]-[A-Za-z0-9\-]{10,}\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b[a-z0-9_]*(api_key|apikey|secret|token|password)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
    (
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[redacted-email]",
    ),
)


def sanitize_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Redact obvious secrets/PII and clamp payload size."""

    compact = text.strip()
    if not compact:
        return ""

    redacted = compact
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars]


def tail_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Sanitize the end of a log, where the failure usually is."""

    compact = text.strip()
    if len(compact) > max_chars * 2:
        compact = compact[-max_chars * 2 :]
    sanitized = sanitize_preview(compact, max_chars=max_chars * 2)
    if len(sanitized) <= max_chars:
        return sanitized
    return sanitized[-max_chars:]
