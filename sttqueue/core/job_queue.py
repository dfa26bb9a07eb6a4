"""
Job worker: claims one pending job at a time and drives it through
Acquire → Normalize → Transcribe.

Any number of workers may run against the same store; exclusivity comes
from Database.claim_next_job(). No store lock is held while a stage runs.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

import requests

from sttqueue.core.config import AppConfig
from sttqueue.core.constants import (
    JobStatus, JobStage, SourceType, ErrorCode, MAX_ERROR_LEN,
)
from sttqueue.core.db_sqlite import Database
from sttqueue.core.models_sqlite import Job
from sttqueue.core.error_codes import JobError, PersistenceError, is_timeout
from sttqueue.core.download_audio import acquire_job_audio
from sttqueue.core.normalize import normalize_audio
from sttqueue.core.transcribe_whisper import transcribe_audio
from sttqueue.core.stale_recovery import recover_stale_jobs
from sttqueue.core.storage import safe_delete

logger = logging.getLogger(__name__)


class JobWorker:
    """
    Single cooperative worker loop.
    run_once() is one step; run_forever() repeats it until stopped.
    """

    def __init__(self, db: Database, config: AppConfig,
                 session: requests.Session | None = None, name: str = "worker"):
        self.db = db
        self.config = config
        self.session = session
        self.name = name
        self._worker_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._stop_after_current = threading.Event()
        self._running = False
        self._current_job_id: Optional[str] = None
        self._stage: Optional[str] = None

    # ── Lifecycle ─────────────────────────────────────────────────────

    def recover_on_startup(self) -> list[str]:
        """Requeue jobs abandoned by a crashed worker."""
        return recover_stale_jobs(self.db, self.config.stale_grace_sec)

    def start(self, recover: bool = True):
        """Start the worker thread."""
        if self._running:
            return
        if recover:
            self.recover_on_startup()
        self._stop_event.clear()
        self._stop_after_current.clear()
        self._running = True
        self._worker_thread = threading.Thread(
            target=self.run_forever, name=self.name, daemon=True,
        )
        self._worker_thread.start()

    def stop(self, timeout: float | None = None):
        """Stop polling; a job already in a stage runs to the end of that stage's timeout."""
        self._stop_event.set()
        if self._worker_thread and self._worker_thread is not threading.current_thread():
            self._worker_thread.join(timeout)

    def stop_after_current(self):
        """Stop after the current job finishes."""
        self._stop_after_current.set()

    def is_running(self) -> bool:
        return self._running

    @property
    def current_job_id(self) -> Optional[str]:
        return self._current_job_id

    # ── Worker loop ───────────────────────────────────────────────────

    def run_forever(self):
        """Poll for jobs until stopped. Per-job errors never end the loop."""
        self._running = True
        logger.info("%s polling every %.1fs", self.name, self.config.poll_interval_sec)
        try:
            while not self._stop_event.is_set():
                if self._stop_after_current.is_set():
                    break
                try:
                    worked = self.run_once()
                except PersistenceError as e:
                    logger.error("%s: job store error: %s", self.name, e.message)
                    worked = False
                if not worked:
                    self._stop_event.wait(self.config.poll_interval_sec)
        finally:
            self._running = False
            self._current_job_id = None
            logger.info("%s stopped", self.name)

    def run_once(self) -> bool:
        """Claim and process at most one job. Returns False if none was pending."""
        job = self.db.claim_next_job()
        if job is None:
            return False

        logger.info("%s picked up job %s (attempt %d/%d)",
                    self.name, job.id, job.attempts, job.max_attempts)
        self._current_job_id = job.id
        try:
            self._process_job(job)
        finally:
            self._current_job_id = None
            self._stage = None
        return True

    # ── Job processing pipeline ───────────────────────────────────────

    def _process_job(self, job: Job):
        """Run every stage in order; the first failure ends the job as failed."""
        job_id = job.id
        acquired_path: Optional[Path] = None
        self._stage = JobStage.CLAIMED

        try:
            # ── Stage 1: Acquire ──
            self._stage = JobStage.ACQUIRING
            acquired = acquire_job_audio(
                job, self.config.storage_dir,
                self.config.download_timeout_sec, self.config.max_file_bytes,
                session=self.session,
            )
            if acquired:
                acquired_path, original_name = acquired
                self.db.update_job(job_id, file_path=str(acquired_path),
                                   original_name=original_name)
                source_path = acquired_path
            else:
                source_path = Path(job.file_path)

            # ── Stage 2: Normalize ──
            self._stage = JobStage.NORMALIZING
            wav_path = normalize_audio(
                source_path, job_id, self.config.storage_dir,
                self.config.convert_timeout_sec,
                ffmpeg_binary=self.config.get('ffmpeg_binary'),
            )
            self.db.update_job(job_id, wav_path=str(wav_path))

            # ── Stage 3: Transcribe ──
            self._stage = JobStage.TRANSCRIBING
            text = transcribe_audio(
                wav_path, self.config.transcribe_timeout_sec,
                language=job.language,
                whisper_binary=self.config.get('whisper_binary'),
                model_path=self.config.get('whisper_model_path'),
            )

            self.db.update_job(job_id, status=JobStatus.COMPLETED,
                               result_text=text, error=None)
            logger.info("Job %s completed (%d chars)", job_id, len(text))

        except PersistenceError:
            # Left in processing; stale recovery requeues it if nobody finishes it
            raise
        except JobError as e:
            self._handle_job_error(job, e, acquired_path)
        except Exception as e:
            logger.error("Unexpected error processing job %s: %s", job_id, e, exc_info=True)
            self._handle_job_error(job, JobError(ErrorCode.UNEXPECTED, str(e)), acquired_path)

    def _handle_job_error(self, job: Job, error: JobError, acquired_path: Optional[Path]):
        """Record the failure and drop files the worker itself downloaded."""
        if is_timeout(error):
            logger.warning("Job %s timed out during %s: %s", job.id, self._stage, error.message)
        else:
            logger.error("Job %s failed during %s: %s", job.id, self._stage, error)

        self.db.update_job(job.id, status=JobStatus.FAILED,
                           error=error.message[:MAX_ERROR_LEN],
                           result_text=None)

        # Uploaded files are kept as the user's evidence
        if job.source_type == SourceType.URL:
            safe_delete(acquired_path or job.file_path)
