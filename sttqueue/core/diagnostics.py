"""
Diagnostics: tool availability and store checks.
"""

import shutil
import logging
from pathlib import Path

from sttqueue.core.config import AppConfig
from sttqueue.core.db_sqlite import Database
from sttqueue.core.error_codes import PersistenceError
from sttqueue.core.subprocess_runner import run_with_timeout

logger = logging.getLogger(__name__)


def get_ffmpeg_version(ffmpeg_binary: str) -> str:
    """Return ffmpeg version string, or error message."""
    if not shutil.which(ffmpeg_binary):
        return "Not installed"
    try:
        result = run_with_timeout([ffmpeg_binary, "-version"], timeout=10)
    except OSError as e:
        return f"Error: {e}"
    if result.ok and result.stdout.strip():
        return result.stdout.strip().splitlines()[0]
    return f"Error (rc={result.returncode})"


def check_binary(binary: str) -> dict:
    path = shutil.which(binary)
    return {"binary": binary, "found": path is not None, "path": path}


def check_model(model_path: str) -> dict:
    path = Path(model_path)
    return {"path": str(path), "exists": path.is_file()}


def check_store(db: Database) -> dict:
    try:
        db.ping()
        return {"ok": True, "path": str(db.db_path)}
    except PersistenceError as e:
        logger.error("Job store unreachable: %s", e.message)
        return {"ok": False, "path": str(db.db_path), "error": e.message}


def get_diagnostics(config: AppConfig, db: Database | None = None) -> dict:
    """Gather all diagnostic information."""
    info = {
        "status": "ok",
        "ffmpeg": check_binary(config.get('ffmpeg_binary')),
        "ffmpeg_version": get_ffmpeg_version(config.get('ffmpeg_binary')),
        "whisper": check_binary(config.get('whisper_binary')),
        "whisper_model": check_model(config.get('whisper_model_path')),
        "storage_dir": str(config.storage_dir),
    }
    if db is not None:
        info["store"] = check_store(db)

    healthy = (info["ffmpeg"]["found"] and info["whisper"]["found"]
               and info["whisper_model"]["exists"]
               and info.get("store", {}).get("ok", True))
    if not healthy:
        info["status"] = "degraded"
    return info


def missing_prerequisites(config: AppConfig) -> list[str]:
    """Names of external tools the worker needs but cannot find."""
    missing = []
    for key in ('ffmpeg_binary', 'whisper_binary'):
        if not shutil.which(config.get(key)):
            missing.append(config.get(key))
    if not Path(config.get('whisper_model_path')).is_file():
        missing.append(f"model file {config.get('whisper_model_path')}")
    return missing
