"""
Utility functions for the Argus service.

Clock, path identity and the sanitizing applied to free text from push events.
"""
import hashlib
import os
import re
import time
from typing import Optional

# Maximum length of free text accepted from a push event
MAX_EVENT_TEXT_LENGTH = 4000

ELLIPSIS = "..."


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def normalize_path(path: Optional[str]) -> Optional[str]:
    """
    Normalize a declared workspace path for identity purposes.

    Pure string manipulation: never touches the filesystem and never tries to
    recover a path from an encoded directory name.
    """
    if not path or not isinstance(path, str) or not path.strip():
        return None
    normalized = os.path.normpath(os.path.expanduser(path.strip()))
    if len(normalized) > 1:
        normalized = normalized.rstrip("/\\") or normalized
    return normalized


def project_id(path: str) -> str:
    """Stable project id: first 12 hex chars of SHA-256 of the normalized path."""
    return hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]


def project_name_from_path(path: str) -> str:
    return os.path.basename(path.rstrip("/\\")) or path


def truncate(text: str, limit: int) -> str:
    """Cut text to limit characters, appending an ellipsis only when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + ELLIPSIS


def sanitize_text(text: Optional[str], limit: int = MAX_EVENT_TEXT_LENGTH) -> Optional[str]:
    """
    Sanitize free text received from the instrumentation hook.

    - Removes control characters (except tab, newline, carriage return)
    - Truncates to limit characters

    Non-string values are dropped rather than coerced.
    """
    if not isinstance(text, str):
        return None
    # Remove control chars except \t (0x09), \n (0x0a), \r (0x0d)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f]', '', text)
    text = truncate(text, limit).strip()
    return text or None
