"""
Application configuration manager.
Stores settings in a JSON file; environment variables override the file.
"""

import json
import logging
import os
from pathlib import Path

from sttqueue.core.constants import (
    CONFIG_PATH, DEFAULT_DB_PATH, DEFAULT_STORAGE_DIR,
    DEFAULT_MAX_FILE_SIZE_MB, DEFAULT_POLL_INTERVAL_MS, MIN_POLL_INTERVAL_MS,
    DEFAULT_DOWNLOAD_TIMEOUT_SEC, DEFAULT_CONVERT_TIMEOUT_SEC,
    DEFAULT_TRANSCRIBE_TIMEOUT_SEC, DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETENTION_DAYS, DEFAULT_CLEANUP_INTERVAL_HOURS,
    DEFAULT_FFMPEG_BINARY, DEFAULT_WHISPER_BINARY, DEFAULT_WHISPER_MODEL_PATH,
    STALE_SAFETY_MARGIN_SEC,
)

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'db_path': str(DEFAULT_DB_PATH),
    'storage_dir': str(DEFAULT_STORAGE_DIR),
    'log_dir': None,
    'max_file_size_mb': DEFAULT_MAX_FILE_SIZE_MB,
    'ffmpeg_binary': DEFAULT_FFMPEG_BINARY,
    'whisper_binary': DEFAULT_WHISPER_BINARY,
    'whisper_model_path': DEFAULT_WHISPER_MODEL_PATH,
    'poll_interval_ms': DEFAULT_POLL_INTERVAL_MS,
    'download_timeout_sec': DEFAULT_DOWNLOAD_TIMEOUT_SEC,
    'convert_timeout_sec': DEFAULT_CONVERT_TIMEOUT_SEC,
    'transcribe_timeout_sec': DEFAULT_TRANSCRIBE_TIMEOUT_SEC,
    'max_attempts': DEFAULT_MAX_ATTEMPTS,
    'retention_days': DEFAULT_RETENTION_DAYS,
    'cleanup_interval_hours': DEFAULT_CLEANUP_INTERVAL_HOURS,
}

# Environment variable → config key
_ENV_OVERRIDES = {
    'DATABASE_PATH': 'db_path',
    'STORAGE_DIR': 'storage_dir',
    'LOG_DIR': 'log_dir',
    'MAX_FILE_SIZE_MB': 'max_file_size_mb',
    'FFMPEG_BINARY_PATH': 'ffmpeg_binary',
    'WHISPER_BINARY_PATH': 'whisper_binary',
    'WHISPER_MODEL_PATH': 'whisper_model_path',
    'WORKER_POLL_INTERVAL_MS': 'poll_interval_ms',
    'DOWNLOAD_TIMEOUT_SEC': 'download_timeout_sec',
    'CONVERT_TIMEOUT_SEC': 'convert_timeout_sec',
    'TRANSCRIBE_TIMEOUT_SEC': 'transcribe_timeout_sec',
    'MAX_ATTEMPTS': 'max_attempts',
    'CLEANUP_RETENTION_DAYS': 'retention_days',
    'CLEANUP_INTERVAL_HOURS': 'cleanup_interval_hours',
}

_NUMERIC_KEYS = {
    'max_file_size_mb', 'poll_interval_ms', 'download_timeout_sec',
    'convert_timeout_sec', 'transcribe_timeout_sec', 'max_attempts',
    'retention_days', 'cleanup_interval_hours',
}

# Lower bounds for numeric keys; anything below falls back to the default
_MINIMUMS = {
    'max_attempts': 1,
    'poll_interval_ms': MIN_POLL_INTERVAL_MS,
}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None, overrides: dict | None = None,
                 environ: dict | None = None):
        self.path = config_path or CONFIG_PATH
        self._environ = os.environ if environ is None else environ
        self._data: dict = {}
        self.load()
        for key, value in (overrides or {}).items():
            self._data[key] = self._validate(key, value)

    def load(self):
        """Load config from disk, merging with defaults, then apply env overrides."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config: %s", e)

        for env_name, key in _ENV_OVERRIDES.items():
            raw = self._environ.get(env_name)
            if raw is None or raw == '':
                continue
            self._data[key] = self._validate(key, raw)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _NUMERIC_KEYS:
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            if value < 0:
                logger.warning("Negative %s %r, using default", key, value)
                return _DEFAULTS[key]
            minimum = _MINIMUMS.get(key)
            if minimum is not None and value < minimum:
                logger.warning("%s must be at least %d, got %r, using default",
                               key, minimum, value)
                return _DEFAULTS[key]
            if key == 'max_attempts':
                return int(value)
            return int(value) if value.is_integer() else value

        if key in ('db_path', 'storage_dir'):
            return str(Path(str(value)).expanduser())

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    # ── Derived settings ─────────────────────────────────────────────

    @property
    def db_path(self) -> Path:
        return Path(self._data['db_path'])

    @property
    def storage_dir(self) -> Path:
        return Path(self._data['storage_dir'])

    @property
    def log_dir(self) -> Path | None:
        value = self._data.get('log_dir')
        return Path(value).expanduser() if value else None

    @property
    def max_file_bytes(self) -> int:
        return int(self._data['max_file_size_mb'] * 1024 * 1024)

    @property
    def poll_interval_sec(self) -> float:
        return self._data['poll_interval_ms'] / 1000.0

    @property
    def download_timeout_sec(self) -> float:
        return self._data['download_timeout_sec']

    @property
    def convert_timeout_sec(self) -> float:
        return self._data['convert_timeout_sec']

    @property
    def transcribe_timeout_sec(self) -> float:
        return self._data['transcribe_timeout_sec']

    @property
    def max_attempts(self) -> int:
        return self._data['max_attempts']

    @property
    def retention_sec(self) -> float:
        return self._data['retention_days'] * 24 * 3600

    @property
    def cleanup_interval_sec(self) -> float:
        return self._data['cleanup_interval_hours'] * 3600

    @property
    def stale_grace_sec(self) -> float:
        """Longest a job can legitimately stay in processing, plus a margin."""
        return (self.download_timeout_sec
                + self.convert_timeout_sec
                + self.transcribe_timeout_sec
                + STALE_SAFETY_MARGIN_SEC)
