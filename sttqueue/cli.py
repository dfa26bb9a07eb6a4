"""
Command-line front end: run workers, sweep storage, submit and inspect jobs.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from sttqueue.core.constants import APP_NAME, APP_VERSION
from sttqueue.core.config import AppConfig
from sttqueue.core.db_sqlite import Database
from sttqueue.core.error_codes import JobError, PersistenceError
from sttqueue.core.job_queue import JobWorker
from sttqueue.core.cleanup import RetentionSweeper
from sttqueue.core.diagnostics import get_diagnostics, missing_prerequisites
from sttqueue.core import submission

logger = logging.getLogger(APP_NAME)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(config: AppConfig, verbose: bool = False):
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.log_dir:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.log_dir / f"{APP_NAME}.log", encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
    )


def _print_json(data):
    print(json.dumps(data, indent=2, ensure_ascii=False))


# ── Commands ──────────────────────────────────────────────────────────

def cmd_worker(config: AppConfig, args) -> int:
    missing = missing_prerequisites(config)
    if missing:
        logger.warning("Missing tools: %s; jobs will fail until installed", ', '.join(missing))

    workers = []
    for i in range(max(1, args.workers)):
        # One connection per worker, as separate processes would have
        workers.append(JobWorker(Database(config.db_path), config, name=f"worker-{i + 1}"))

    workers[0].recover_on_startup()

    sweeper = None
    if not args.no_cleanup:
        sweeper = RetentionSweeper(Database(config.db_path), config.storage_dir,
                                   config.retention_sec, config.cleanup_interval_sec)
        sweeper.start()

    for worker in workers:
        worker.start(recover=False)

    shutdown = threading.Event()

    def _on_signal(signum, _frame):
        logger.info("Received signal %d, shutting down", signum)
        shutdown.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    shutdown.wait()
    for worker in workers:
        worker.stop(timeout=5)
    if sweeper:
        sweeper.stop(timeout=5)
    return 0


def cmd_cleanup(config: AppConfig, args) -> int:
    sweeper = RetentionSweeper(Database(config.db_path), config.storage_dir,
                               config.retention_sec, config.cleanup_interval_sec)
    report = sweeper.sweep_once()
    _print_json(vars(report))
    return 0


def cmd_submit_file(config: AppConfig, args) -> int:
    job = submission.submit_upload(Database(config.db_path), config, Path(args.path),
                                   original_name=args.name, language=args.language)
    _print_json({"id": job.id, "status": job.status})
    return 0


def cmd_submit_url(config: AppConfig, args) -> int:
    job = submission.submit_url(Database(config.db_path), config, args.url,
                                language=args.language)
    _print_json({"id": job.id, "status": job.status})
    return 0


def cmd_status(config: AppConfig, args) -> int:
    job = submission.get_job(Database(config.db_path), args.job_id)
    if job is None:
        _print_json({"error": "Job not found"})
        return 1
    _print_json(job.to_dict())
    return 0


def cmd_retry(config: AppConfig, args) -> int:
    job = submission.retry_job(Database(config.db_path), args.job_id)
    _print_json({"id": job.id, "status": job.status})
    return 0


def cmd_diagnostics(config: AppConfig, args) -> int:
    info = get_diagnostics(config, Database(config.db_path))
    _print_json(info)
    return 0 if info["status"] == "ok" else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=APP_NAME, description="Speech-to-text job queue")
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("--config", type=Path, help="path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("worker", help="process queued jobs")
    p.add_argument("--workers", type=int, default=1, help="worker loops in this process")
    p.add_argument("--no-cleanup", action="store_true", help="do not run the retention sweep")
    p.set_defaults(func=cmd_worker)

    p = sub.add_parser("cleanup", help="run one retention sweep")
    p.set_defaults(func=cmd_cleanup)

    p = sub.add_parser("submit-file", help="queue a local audio file")
    p.add_argument("path")
    p.add_argument("--name", help="display name (defaults to the file name)")
    p.add_argument("--language")
    p.set_defaults(func=cmd_submit_file)

    p = sub.add_parser("submit-url", help="queue a remote audio URL")
    p.add_argument("url")
    p.add_argument("--language")
    p.set_defaults(func=cmd_submit_url)

    p = sub.add_parser("status", help="show a job")
    p.add_argument("job_id")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("retry", help="requeue a failed job")
    p.add_argument("job_id")
    p.set_defaults(func=cmd_retry)

    p = sub.add_parser("diagnostics", help="check tools and store")
    p.set_defaults(func=cmd_diagnostics)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = AppConfig(args.config)
    setup_logging(config, args.verbose)
    logger.debug("Config: %s", config.as_dict())

    try:
        return args.func(config, args)
    except PersistenceError as e:
        logger.critical("Job store unavailable: %s", e.message)
        return 1
    except JobError as e:
        _print_json({"error": e.message, "code": e.code})
        return 2


if __name__ == "__main__":
    sys.exit(main())
