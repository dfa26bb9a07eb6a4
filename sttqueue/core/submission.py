"""
Job submission, retrieval and retry: the boundary the API layer calls.
"""

import logging
import shutil
import uuid
from pathlib import Path

from sttqueue.core.config import AppConfig
from sttqueue.core.constants import (
    ErrorCode, JobStatus, SourceType, SUPPORTED_UPLOAD_FORMATS, DEFAULT_DOWNLOAD_NAME,
)
from sttqueue.core.db_sqlite import Database
from sttqueue.core.error_codes import SubmissionError, RetryRejectedError
from sttqueue.core.models_sqlite import Job
from sttqueue.core.security_utils import sanitize_name
from sttqueue.core.storage import ensure_storage_dir, raw_audio_path, safe_delete

logger = logging.getLogger(__name__)


def _upload_extension(original_name: str) -> str:
    return Path(original_name).suffix.lower()


def validate_upload(source_path: Path, original_name: str, max_bytes: int) -> str:
    """Check format and size of an upload. Returns its extension."""
    if not source_path.is_file():
        raise SubmissionError(ErrorCode.MISSING_SOURCE, f"No file provided: {source_path}")

    ext = _upload_extension(original_name)
    if ext not in SUPPORTED_UPLOAD_FORMATS:
        raise SubmissionError(
            ErrorCode.UNSUPPORTED_FORMAT,
            f"Unsupported audio format. Allowed: {', '.join(SUPPORTED_UPLOAD_FORMATS)}",
        )

    if source_path.stat().st_size > max_bytes:
        raise SubmissionError(
            ErrorCode.FILE_TOO_LARGE,
            f"File exceeds maximum size of {max_bytes / (1024 * 1024):g}MB",
        )
    return ext


def validate_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        raise SubmissionError(ErrorCode.INVALID_URL, "No url provided")
    if not (url.startswith("http://") or url.startswith("https://")):
        raise SubmissionError(ErrorCode.INVALID_URL, "Invalid URL format")
    return url


def submit_upload(db: Database, config: AppConfig, source_path: Path,
                  original_name: str | None = None, language: str | None = None) -> Job:
    """
    Create a pending upload job and copy the audio into storage.
    The row is written before the file so the orphan sweep never sees a
    file without a job.
    """
    source_path = Path(source_path)
    original_name = sanitize_name(original_name or source_path.name) or "upload"
    ext = validate_upload(source_path, original_name, config.max_file_bytes)

    storage_dir = ensure_storage_dir(config.storage_dir)
    job_id = str(uuid.uuid4())
    file_path = raw_audio_path(storage_dir, job_id, ext)

    job = db.create_job(
        source_type=SourceType.UPLOAD,
        max_attempts=config.max_attempts,
        file_path=str(file_path),
        original_name=original_name,
        language=language or None,
        job_id=job_id,
    )
    try:
        shutil.copyfile(source_path, file_path)
    except OSError:
        safe_delete(file_path)
        db.delete_job(job_id)
        raise

    logger.info("Queued upload job %s (%s)", job_id, original_name)
    return job


def submit_url(db: Database, config: AppConfig, url: str,
               language: str | None = None) -> Job:
    """Create a pending url job; the worker downloads it."""
    url = validate_url(url)
    original_name = sanitize_name(url.rstrip('/').rsplit('/', 1)[-1]) or DEFAULT_DOWNLOAD_NAME
    job = db.create_job(
        source_type=SourceType.URL,
        max_attempts=config.max_attempts,
        source_url=url,
        original_name=original_name,
        language=language or None,
    )
    logger.info("Queued url job %s (%s)", job.id, url)
    return job


def get_job(db: Database, job_id: str) -> Job | None:
    return db.get_job(job_id)


def retry_job(db: Database, job_id: str) -> Job:
    """
    Move a failed job back to pending and clear its error.
    Rejected, without touching the row, unless the job failed and has
    attempts left.
    """
    if db.requeue_failed_job(job_id):
        logger.info("Job %s requeued for retry", job_id)
        return db.get_job(job_id)

    job = db.get_job(job_id)
    if job is None:
        raise RetryRejectedError(ErrorCode.JOB_NOT_FOUND, "Job not found")
    if job.status != JobStatus.FAILED:
        raise RetryRejectedError(ErrorCode.NOT_FAILED, "Job is not in a failed state")
    raise RetryRejectedError(ErrorCode.ATTEMPTS_EXHAUSTED,
                             "Job has reached maximum retry attempts")
