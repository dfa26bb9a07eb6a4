"""
Retention sweep: delete expired finished jobs with their audio, then orphaned files.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from sttqueue.core.db_sqlite import Database, utcnow
from sttqueue.core.error_codes import PersistenceError
from sttqueue.core.storage import extract_job_id, safe_delete, sidecar_path

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    records_deleted: int = 0
    files_deleted: int = 0
    orphans_deleted: int = 0


def delete_job_files(file_path: str | None, wav_path: str | None) -> int:
    """Remove a job's raw, normalized and sidecar files. Returns how many existed."""
    removed = 0
    for path in (file_path, wav_path, sidecar_path(wav_path) if wav_path else None):
        if safe_delete(path):
            removed += 1
    return removed


def sweep_expired_jobs(db: Database, cutoff: datetime, report: SweepReport):
    """
    Delete finished jobs created before ``cutoff``, then their files.
    Records go first and only while still completed/failed, so a job that
    was retried meanwhile keeps both its row and its audio. Files of a
    record deleted just before a crash are reclaimed by the orphan pass.
    """
    expired = db.list_jobs_older_than(cutoff)
    if not expired:
        logger.info("No finished jobs created before %s", cutoff.isoformat())
        return

    deleted = set(db.delete_jobs(job.id for job in expired))
    report.records_deleted = len(deleted)
    for job in expired:
        if job.id in deleted:
            report.files_deleted += delete_job_files(job.file_path, job.wav_path)

    skipped = len(expired) - len(deleted)
    if skipped:
        logger.info("Kept %d expired job(s) that left a finished state", skipped)
    logger.info("Deleted %d expired job record(s)", report.records_deleted)


def sweep_orphan_files(db: Database, storage_dir: Path, report: SweepReport):
    """
    Delete storage files whose job id matches no live job.
    Files are listed before ids are read, so a job inserted meanwhile
    (its row always precedes its file) is never taken for an orphan.
    """
    if not storage_dir.exists():
        return
    try:
        files = [p for p in storage_dir.iterdir() if p.is_file()]
    except OSError as e:
        logger.error("Cannot list storage directory %s: %s", storage_dir, e)
        return

    live_ids = db.list_all_job_ids()
    for path in files:
        job_id = extract_job_id(path.name)
        if job_id is None or job_id in live_ids:
            continue
        if safe_delete(path):
            report.orphans_deleted += 1

    if report.orphans_deleted:
        logger.info("Deleted %d orphaned audio file(s)", report.orphans_deleted)


class RetentionSweeper:
    """Runs the retention sweep on a fixed interval in a background thread."""

    def __init__(self, db: Database, storage_dir: Path, retention_sec: float,
                 interval_sec: float):
        self.db = db
        self.storage_dir = Path(storage_dir)
        self.retention_sec = retention_sec
        self.interval_sec = interval_sec
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self, now: datetime | None = None) -> SweepReport:
        cutoff = (now or utcnow()) - timedelta(seconds=self.retention_sec)
        logger.info("Starting cleanup: jobs older than %s", cutoff.isoformat())
        report = SweepReport()
        sweep_expired_jobs(self.db, cutoff, report)
        sweep_orphan_files(self.db, self.storage_dir, report)
        logger.info("Cleanup finished: %s", report)
        return report

    def run_forever(self):
        while not self._stop_event.wait(self.interval_sec):
            try:
                self.sweep_once()
            except PersistenceError as e:
                logger.error("Cleanup failed: %s", e.message)

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="retention-sweeper",
                                        daemon=True)
        self._thread.start()
        logger.info("Cleanup scheduled every %.0fs", self.interval_sec)

    def stop(self, timeout: float | None = None):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
