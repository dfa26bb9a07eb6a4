"""
Storage directory layout.

Every file is named with the owning job's UUID as a prefix:
    <uuid><ext>        raw audio (upload or download)
    <uuid>.src.wav     raw audio that already had a .wav extension
    <uuid>.wav         normalized audio
    <uuid>.wav.txt     recognition engine sidecar
    <uuid><ext>.part   download in progress
The orphan sweep relies on this prefix.
"""

import logging
import re
from pathlib import Path

from sttqueue.core.constants import JOB_FILE_PATTERN, NORM_EXT
from sttqueue.core.security_utils import safe_storage_path

logger = logging.getLogger(__name__)

_JOB_FILE_RE = re.compile(JOB_FILE_PATTERN)


def ensure_storage_dir(storage_dir: Path) -> Path:
    storage_dir.mkdir(parents=True, exist_ok=True)
    return storage_dir


def raw_audio_path(storage_dir: Path, job_id: str, ext: str) -> Path:
    """Where the raw audio for ``job_id`` lives."""
    ext = ext.lower()
    if ext == NORM_EXT:
        # Keep the source distinct from the normalized output
        return safe_storage_path(storage_dir, f"{job_id}.src{ext}")
    return safe_storage_path(storage_dir, f"{job_id}{ext}")


def wav_output_path(storage_dir: Path, job_id: str) -> Path:
    return safe_storage_path(storage_dir, f"{job_id}{NORM_EXT}")


def sidecar_path(wav_path: Path | str) -> Path:
    """The plain-text file the recognition engine writes next to its input."""
    return Path(f"{wav_path}.txt")


def extract_job_id(filename: str) -> str | None:
    """Return the job UUID a storage file belongs to, or None if it has none."""
    match = _JOB_FILE_RE.match(filename)
    return match.group(1) if match else None


def safe_delete(path: Path | str | None) -> bool:
    """
    Best-effort delete. A missing file is not an error; other failures are
    logged. Returns True if a file was removed.
    """
    if not path:
        return False
    try:
        Path(path).unlink()
        logger.debug("Deleted: %s", path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning("Failed to delete %s: %s", path, e)
        return False
