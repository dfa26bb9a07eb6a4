"""
Security utilities for sttqueue.
- Display-name sanitization
- Path traversal protection for the storage directory
"""

import re
import pathlib
import logging

from sttqueue.core.constants import UNSAFE_FILENAME_CHARS, MAX_NAME_LEN

logger = logging.getLogger(__name__)


def sanitize_name(name: str) -> str:
    """Sanitize a user-supplied file name for display and storage metadata."""
    if not name:
        return ""
    # Replace unsafe characters with underscore
    safe = re.sub(UNSAFE_FILENAME_CHARS, '_', name)
    # Remove path traversal sequences
    safe = safe.replace('..', '')
    # Collapse runs of whitespace
    safe = re.sub(r'\s+', ' ', safe).strip()
    if len(safe) > MAX_NAME_LEN:
        safe = safe[:MAX_NAME_LEN].rstrip()
    # Remove leading/trailing dots (hidden files)
    safe = safe.strip('.')
    return safe


def safe_storage_path(storage_dir: pathlib.Path, filename: str) -> pathlib.Path:
    """
    Join ``filename`` onto ``storage_dir`` and ensure the result stays inside it.
    Raises ValueError on path traversal.
    """
    candidate = storage_dir / filename
    real_root = storage_dir.resolve(strict=False)
    real_candidate = candidate.resolve(strict=False)
    if real_candidate.parent != real_root:
        raise ValueError(f"Path traversal detected: {filename!r}")
    return candidate
