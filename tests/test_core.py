#!/usr/bin/env python3
"""
Unit tests for sttqueue core modules.
Tests cover: config, error codes, security utils, storage naming,
subprocess runner, the SQLite job store and the submission boundary.
"""

import sys
import json
import tempfile
import threading
import time
import uuid
from datetime import timedelta
from pathlib import Path

# Add project root and this directory to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import unittest

from sttqueue.core.constants import (
    JobStatus, SourceType, ErrorCode, STALE_SAFETY_MARGIN_SEC,
)
from sttqueue.core.config import AppConfig
from sttqueue.core.error_codes import (
    JobError, DownloadError, TranscriptionError, PersistenceError,
    SubmissionError, RetryRejectedError, is_timeout,
)
from sttqueue.core.security_utils import sanitize_name, safe_storage_path
from sttqueue.core.storage import (
    raw_audio_path, wav_output_path, sidecar_path, extract_job_id, safe_delete,
)
from sttqueue.core.subprocess_runner import (
    ExitKind, classify_exit, run_with_timeout, spawn,
)
from sttqueue.core.db_sqlite import Database, utcnow
from sttqueue.core import submission

from fakes import make_config, write_script, backdate, skip_without_sh


class TestConfig(unittest.TestCase):
    """Test configuration loading and validation."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "config.json"

    def tearDown(self):
        self.tmp.cleanup()

    def test_defaults(self):
        config = AppConfig(self.path, environ={})
        self.assertEqual(config.max_attempts, 3)
        self.assertEqual(config.transcribe_timeout_sec, 300)
        self.assertEqual(config.download_timeout_sec, 120)
        self.assertEqual(config.max_file_bytes, 20 * 1024 * 1024)
        self.assertAlmostEqual(config.poll_interval_sec, 3.0)

    def test_file_values_merge_with_defaults(self):
        self.path.write_text(json.dumps({"max_attempts": 5, "retention_days": 1}))
        config = AppConfig(self.path, environ={})
        self.assertEqual(config.max_attempts, 5)
        self.assertEqual(config.retention_sec, 24 * 3600)
        self.assertEqual(config.transcribe_timeout_sec, 300)

    def test_env_overrides_file(self):
        self.path.write_text(json.dumps({"transcribe_timeout_sec": 100}))
        config = AppConfig(self.path, environ={"TRANSCRIBE_TIMEOUT_SEC": "42",
                                               "STORAGE_DIR": "/srv/audio"})
        self.assertEqual(config.transcribe_timeout_sec, 42)
        self.assertEqual(config.storage_dir, Path("/srv/audio"))

    def test_invalid_numbers_fall_back_to_default(self):
        config = AppConfig(self.path, environ={"MAX_ATTEMPTS": "lots",
                                               "DOWNLOAD_TIMEOUT_SEC": "-5"})
        self.assertEqual(config.max_attempts, 3)
        self.assertEqual(config.download_timeout_sec, 120)

    def test_max_attempts_at_least_one(self):
        config = AppConfig(self.path, overrides={"max_attempts": 0}, environ={})
        self.assertEqual(config.max_attempts, 3)

    def test_poll_interval_has_floor(self):
        config = AppConfig(self.path, overrides={"poll_interval_ms": 0},
                           environ={"WORKER_POLL_INTERVAL_MS": "0"})
        self.assertAlmostEqual(config.poll_interval_sec, 3.0)
        config = AppConfig(self.path, overrides={"poll_interval_ms": 10}, environ={})
        self.assertAlmostEqual(config.poll_interval_sec, 0.01)

    def test_corrupt_file_ignored(self):
        self.path.write_text("{not json")
        config = AppConfig(self.path, environ={})
        self.assertEqual(config.max_attempts, 3)

    def test_stale_grace_exceeds_all_stage_timeouts(self):
        config = AppConfig(self.path, environ={})
        total = (config.download_timeout_sec + config.convert_timeout_sec
                 + config.transcribe_timeout_sec)
        self.assertEqual(config.stale_grace_sec, total + STALE_SAFETY_MARGIN_SEC)

    def test_save_round_trip(self):
        config = AppConfig(self.path, environ={})
        config.set("max_attempts", 7)
        self.assertEqual(AppConfig(self.path, environ={}).max_attempts, 7)


class TestErrorCodes(unittest.TestCase):
    """Test error taxonomy."""

    def test_message_and_code(self):
        err = DownloadError("Download failed: boom")
        self.assertEqual(err.code, ErrorCode.DOWNLOAD_FAILED)
        self.assertEqual(err.message, "Download failed: boom")
        self.assertIn("ERR_DOWNLOAD_FAILED", str(err))
        self.assertIsInstance(err, JobError)

    def test_timeout_detection(self):
        self.assertTrue(is_timeout(TranscriptionError("x", code=ErrorCode.TRANSCRIBE_TIMEOUT)))
        self.assertTrue(is_timeout(DownloadError("x", code=ErrorCode.DOWNLOAD_TIMEOUT)))
        self.assertFalse(is_timeout(TranscriptionError("x")))
        self.assertFalse(is_timeout(PersistenceError("x")))


class TestSecurityUtils(unittest.TestCase):
    """Test security utilities."""

    def test_sanitize_name_basic(self):
        self.assertEqual(sanitize_name("voice note.ogg"), "voice note.ogg")

    def test_sanitize_name_special_chars(self):
        result = sanitize_name('clip: "a" <b>.mp3')
        self.assertNotIn('"', result)
        self.assertNotIn('<', result)

    def test_sanitize_name_traversal(self):
        self.assertNotIn('..', sanitize_name("../../etc/passwd"))
        self.assertNotIn('/', sanitize_name("../../etc/passwd"))

    def test_sanitize_name_empty(self):
        self.assertEqual(sanitize_name(""), "")
        self.assertEqual(sanitize_name("..."), "")

    def test_safe_storage_path_rejects_traversal(self):
        root = Path("/tmp/sttqueue_storage")
        self.assertEqual(safe_storage_path(root, "a.wav"), root / "a.wav")
        with self.assertRaises(ValueError):
            safe_storage_path(root, "../escape.wav")


class TestStorage(unittest.TestCase):
    """Test storage naming conventions."""

    def setUp(self):
        self.root = Path("/tmp/sttqueue_storage")
        self.job_id = str(uuid.uuid4())

    def test_raw_and_wav_paths(self):
        self.assertEqual(raw_audio_path(self.root, self.job_id, ".MP3").name, f"{self.job_id}.mp3")
        self.assertEqual(wav_output_path(self.root, self.job_id).name, f"{self.job_id}.wav")

    def test_raw_wav_does_not_collide_with_output(self):
        raw = raw_audio_path(self.root, self.job_id, ".wav")
        self.assertNotEqual(raw, wav_output_path(self.root, self.job_id))
        self.assertEqual(extract_job_id(raw.name), self.job_id)

    def test_sidecar_path(self):
        wav = wav_output_path(self.root, self.job_id)
        self.assertEqual(sidecar_path(wav).name, f"{self.job_id}.wav.txt")

    def test_extract_job_id(self):
        for name in (f"{self.job_id}.ogg", f"{self.job_id}.wav", f"{self.job_id}.wav.txt",
                     f"{self.job_id}.mp3.part"):
            self.assertEqual(extract_job_id(name), self.job_id)

    def test_extract_job_id_rejects_non_uuid_names(self):
        self.assertIsNone(extract_job_id("README.md"))
        self.assertIsNone(extract_job_id("deadbeef-dead-beef-dead-beefdeadbe.wav"))  # too short
        self.assertIsNone(extract_job_id("zzzzzzzz-zzzz-zzzz-zzzz-zzzzzzzzzzzz.wav"))
        self.assertIsNone(extract_job_id(f"backup-{self.job_id}.wav"))

    def test_safe_delete_missing_file(self):
        self.assertFalse(safe_delete(self.root / "does-not-exist.wav"))
        self.assertFalse(safe_delete(None))
        self.assertFalse(safe_delete(""))


@unittest.skipIf(skip_without_sh(), "requires /bin/sh")
class TestSubprocessRunner(unittest.TestCase):
    """Test spawning, timeouts and exit classification."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_classify_exit(self):
        self.assertIs(classify_exit(0), ExitKind.NORMAL)
        self.assertIs(classify_exit(1), ExitKind.NONZERO)
        self.assertIs(classify_exit(-9), ExitKind.KILLED)
        self.assertIs(classify_exit(137), ExitKind.KILLED)
        self.assertIs(classify_exit(0, timed_out=True), ExitKind.KILLED)
        self.assertIs(classify_exit(None), ExitKind.KILLED)

    def test_captures_output(self):
        script = write_script(self.dir, "echo", 'echo "out"\necho "err" >&2')
        result = run_with_timeout([script], timeout=5)
        self.assertIs(result.kind, ExitKind.NORMAL)
        self.assertEqual(result.stdout.strip(), "out")
        self.assertEqual(result.stderr.strip(), "err")
        self.assertTrue(result.ok)

    def test_nonzero_exit(self):
        script = write_script(self.dir, "fail", 'echo "bad input" >&2\nexit 2')
        result = run_with_timeout([script], timeout=5)
        self.assertIs(result.kind, ExitKind.NONZERO)
        self.assertEqual(result.returncode, 2)
        self.assertIn("bad input", result.stderr)

    def test_timeout_kills_process(self):
        script = write_script(self.dir, "hang", "exec sleep 30")
        result = run_with_timeout([script], timeout=0.5)
        self.assertTrue(result.timed_out)
        self.assertIs(result.kind, ExitKind.KILLED)

    def test_timeout_kills_children_of_wrapper(self):
        # Without exec the shell forks sleep, which inherits stdout/stderr
        script = write_script(self.dir, "wrapper", "sleep 6\necho done")
        started = time.monotonic()
        result = run_with_timeout([script], timeout=1)
        elapsed = time.monotonic() - started
        self.assertIs(result.kind, ExitKind.KILLED)
        self.assertNotIn("done", result.stdout)
        self.assertLess(elapsed, 4)

    def test_timeout_kills_background_grandchild(self):
        script = write_script(self.dir, "spawner", "(sleep 8; echo late) &\nsleep 8")
        started = time.monotonic()
        result = run_with_timeout([script], timeout=1)
        self.assertTrue(result.timed_out)
        self.assertLess(time.monotonic() - started, 4)

    def test_explicit_kill(self):
        script = write_script(self.dir, "hang", "exec sleep 30")
        handle = spawn([script])
        handle.kill()
        result = handle.wait(timeout=5)
        self.assertIs(result.kind, ExitKind.KILLED)
        self.assertFalse(result.timed_out)

    def test_string_args_rejected(self):
        with self.assertRaises(TypeError):
            spawn("ls -la")

    def test_missing_binary_raises(self):
        with self.assertRaises(FileNotFoundError):
            spawn([str(self.dir / "no-such-binary")])


class TestDatabase(unittest.TestCase):
    """Test SQLite job store operations."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "jobs.db"
        self.db = Database(self.db_path)

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def _create(self, **kwargs):
        values = dict(source_type=SourceType.UPLOAD, max_attempts=3, file_path="/x.mp3")
        values.update(kwargs)
        return self.db.create_job(**values)

    def test_create_job(self):
        job = self._create(language="de")
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual(job.attempts, 0)
        self.assertEqual(job.language, "de")
        uuid.UUID(job.id)

    def test_get_job(self):
        job = self._create()
        fetched = self.db.get_job(job.id)
        self.assertEqual(fetched, job)
        self.assertIsNone(self.db.get_job(str(uuid.uuid4())))

    def test_update_job_bumps_updated_at(self):
        job = self._create()
        backdate(self.db, job.id, 'updated_at', utcnow() - timedelta(hours=1))
        before = self.db.get_job(job.id).updated_at
        self.db.update_job(job.id, wav_path="/x.wav")
        after = self.db.get_job(job.id)
        self.assertEqual(after.wav_path, "/x.wav")
        self.assertGreater(after.updated_at, before)

    def test_update_job_rejects_unknown_columns(self):
        job = self._create()
        with self.assertRaises(ValueError):
            self.db.update_job(job.id, id="other")

    def test_claim_marks_processing_and_counts_attempt(self):
        job = self._create()
        claimed = self.db.claim_next_job()
        self.assertEqual(claimed.id, job.id)
        self.assertEqual(claimed.status, JobStatus.PROCESSING)
        self.assertEqual(claimed.attempts, job.attempts + 1)
        self.assertIsNone(self.db.claim_next_job())

    def test_claim_oldest_first(self):
        first = self._create()
        second = self._create()
        backdate(self.db, second.id, 'created_at', utcnow() - timedelta(minutes=5))
        self.assertEqual(self.db.claim_next_job().id, second.id)
        self.assertEqual(self.db.claim_next_job().id, first.id)

    def test_claim_skips_non_pending(self):
        job = self._create()
        self.db.update_job(job.id, status=JobStatus.FAILED, error="x")
        self.assertIsNone(self.db.claim_next_job())

    def test_claim_may_reach_max_attempts(self):
        job = self._create(max_attempts=1)
        claimed = self.db.claim_next_job()
        self.assertEqual(claimed.attempts, claimed.max_attempts)
        self.assertEqual(claimed.id, job.id)

    def test_concurrent_claims_of_one_job(self):
        """Two workers race for a single pending job; exactly one wins."""
        self._create()
        other = Database(self.db_path)
        barrier = threading.Barrier(2)
        results = {}

        def claim(name, db):
            barrier.wait()
            results[name] = db.claim_next_job()

        threads = [threading.Thread(target=claim, args=("a", self.db)),
                   threading.Thread(target=claim, args=("b", other))]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        other.close()

        winners = [job for job in results.values() if job is not None]
        self.assertEqual(len(results), 2)
        self.assertEqual(len(winners), 1)
        self.assertEqual(winners[0].status, JobStatus.PROCESSING)

    def test_delete_jobs_batch_only_finished(self):
        jobs = [self._create() for _ in range(3)]
        self.db.update_job(jobs[0].id, status=JobStatus.COMPLETED, result_text="hi")
        self.db.update_job(jobs[1].id, status=JobStatus.FAILED, error="boom")
        deleted = self.db.delete_jobs([j.id for j in jobs])
        self.assertEqual(sorted(deleted), sorted([jobs[0].id, jobs[1].id]))
        self.assertEqual(self.db.list_all_job_ids(), {jobs[2].id})
        self.assertEqual(self.db.delete_jobs([]), [])

    def test_delete_job(self):
        job = self._create()
        self.db.delete_job(job.id)
        self.assertIsNone(self.db.get_job(job.id))

    def test_update_vanished_job_raises(self):
        job = self._create()
        self.db.delete_job(job.id)
        with self.assertRaises(PersistenceError):
            self.db.update_job(job.id, status=JobStatus.FAILED, error="late")

    def test_list_jobs_older_than_skips_unfinished(self):
        old_done = self._create()
        old_busy = self._create()
        old_queued = self._create()
        new_done = self._create()
        self.db.update_job(old_done.id, status=JobStatus.COMPLETED, result_text="hi")
        self.db.update_job(new_done.id, status=JobStatus.COMPLETED, result_text="hi")
        self.db.update_job(old_busy.id, status=JobStatus.PROCESSING)
        for job in (old_done, old_busy, old_queued):
            backdate(self.db, job.id, 'created_at', utcnow() - timedelta(days=8))
        cutoff = utcnow() - timedelta(days=7)
        self.assertEqual([j.id for j in self.db.list_jobs_older_than(cutoff)], [old_done.id])

    def test_requeue_failed_job_respects_attempts(self):
        job = self._create(max_attempts=2)
        self.db.claim_next_job()
        self.db.update_job(job.id, status=JobStatus.FAILED, error="boom")
        self.assertTrue(self.db.requeue_failed_job(job.id))
        requeued = self.db.get_job(job.id)
        self.assertEqual(requeued.status, JobStatus.PENDING)
        self.assertIsNone(requeued.error)

        self.db.claim_next_job()
        self.db.update_job(job.id, status=JobStatus.FAILED, error="boom again")
        self.assertFalse(self.db.requeue_failed_job(job.id))
        self.assertEqual(self.db.get_job(job.id).error, "boom again")

    def test_unopenable_store_raises_persistence_error(self):
        blocker = Path(self.tmp.name) / "not-a-dir"
        blocker.write_text("file")
        with self.assertRaises((PersistenceError, OSError)):
            Database(blocker / "jobs.db")

    def test_closed_connection_raises_persistence_error(self):
        db = Database(self.db_path)
        db.close()
        with self.assertRaises(PersistenceError):
            db.claim_next_job()


class TestSubmission(unittest.TestCase):
    """Test the create / get / retry boundary."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)
        self.config = make_config(self.dir, max_file_size_mb=1)
        self.db = Database(self.config.db_path)
        self.audio = self.dir / "voice.ogg"
        self.audio.write_bytes(b"OggS fake audio")

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def test_submit_upload_copies_into_storage(self):
        job = submission.submit_upload(self.db, self.config, self.audio, language="en")
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual(job.source_type, SourceType.UPLOAD)
        self.assertEqual(job.original_name, "voice.ogg")
        self.assertEqual(job.max_attempts, 3)
        stored = Path(job.file_path)
        self.assertEqual(stored.parent, self.config.storage_dir)
        self.assertEqual(stored.name, f"{job.id}.ogg")
        self.assertEqual(stored.read_bytes(), b"OggS fake audio")
        self.assertEqual(self.db.get_job(job.id).file_path, str(stored))

    def test_submit_upload_unsupported_format(self):
        bad = self.dir / "notes.txt"
        bad.write_text("hi")
        with self.assertRaises(SubmissionError) as ctx:
            submission.submit_upload(self.db, self.config, bad)
        self.assertEqual(ctx.exception.code, ErrorCode.UNSUPPORTED_FORMAT)
        self.assertEqual(self.db.list_all_job_ids(), set())

    def test_submit_upload_too_large(self):
        big = self.dir / "big.mp3"
        big.write_bytes(b"\0" * (1024 * 1024 + 1))
        with self.assertRaises(SubmissionError) as ctx:
            submission.submit_upload(self.db, self.config, big)
        self.assertEqual(ctx.exception.code, ErrorCode.FILE_TOO_LARGE)

    def test_submit_upload_missing_file(self):
        with self.assertRaises(SubmissionError) as ctx:
            submission.submit_upload(self.db, self.config, self.dir / "gone.mp3")
        self.assertEqual(ctx.exception.code, ErrorCode.MISSING_SOURCE)

    def test_submit_url(self):
        job = submission.submit_url(self.db, self.config, "https://example.com/a/clip.mp3")
        self.assertEqual(job.source_type, SourceType.URL)
        self.assertEqual(job.source_url, "https://example.com/a/clip.mp3")
        self.assertEqual(job.original_name, "clip.mp3")
        self.assertEqual(job.file_path, "")

    def test_submit_url_rejects_bad_scheme(self):
        for url in ("", "ftp://example.com/a.mp3", "example.com/a.mp3"):
            with self.assertRaises(SubmissionError):
                submission.submit_url(self.db, self.config, url)

    def test_retry_failed_job(self):
        job = submission.submit_url(self.db, self.config, "https://example.com/a.mp3")
        self.db.claim_next_job()
        self.db.update_job(job.id, status=JobStatus.FAILED, error="Download failed")
        retried = submission.retry_job(self.db, job.id)
        self.assertEqual(retried.status, JobStatus.PENDING)
        self.assertIsNone(retried.error)
        self.assertEqual(retried.attempts, 1)

    def test_retry_rejected_when_not_failed(self):
        job = submission.submit_url(self.db, self.config, "https://example.com/a.mp3")
        before = self.db.get_job(job.id)
        with self.assertRaises(RetryRejectedError) as ctx:
            submission.retry_job(self.db, job.id)
        self.assertEqual(ctx.exception.code, ErrorCode.NOT_FAILED)
        self.assertEqual(self.db.get_job(job.id), before)

    def test_retry_rejected_when_attempts_exhausted(self):
        job = submission.submit_url(self.db, self.config, "https://example.com/a.mp3")
        for _ in range(job.max_attempts):
            self.db.update_job(job.id, status=JobStatus.PENDING, error=None)
            self.db.claim_next_job()
            self.db.update_job(job.id, status=JobStatus.FAILED, error="boom")
        before = self.db.get_job(job.id)
        self.assertEqual(before.attempts, before.max_attempts)
        with self.assertRaises(RetryRejectedError) as ctx:
            submission.retry_job(self.db, job.id)
        self.assertEqual(ctx.exception.code, ErrorCode.ATTEMPTS_EXHAUSTED)
        self.assertEqual(self.db.get_job(job.id), before)

    def test_retry_unknown_job(self):
        with self.assertRaises(RetryRejectedError) as ctx:
            submission.retry_job(self.db, str(uuid.uuid4()))
        self.assertEqual(ctx.exception.code, ErrorCode.JOB_NOT_FOUND)


if __name__ == "__main__":
    unittest.main()
