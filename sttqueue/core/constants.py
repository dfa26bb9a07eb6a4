"""
Shared constants for sttqueue.
Single source of truth, imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "sttqueue"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_CONFIG_DIR = HOME / ".config" / APP_NAME
APP_DATA_DIR = HOME / ".local" / "share" / APP_NAME
CONFIG_PATH = APP_CONFIG_DIR / "config.json"
DEFAULT_DB_PATH = APP_DATA_DIR / "jobs.db"
DEFAULT_STORAGE_DIR = APP_DATA_DIR / "audio"


# ── Job status values ─────────────────────────────────────────────────
class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Jobs the retention sweep may delete
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


# ── Job source types ──────────────────────────────────────────────────
class SourceType:
    UPLOAD = "upload"
    URL = "url"


# ── Pipeline stages (ordered) ─────────────────────────────────────────
class JobStage:
    CLAIMED = "claimed"
    ACQUIRING = "acquiring"
    NORMALIZING = "normalizing"
    TRANSCRIBING = "transcribing"


# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Pipeline stages (terminal for the current attempt)
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    DOWNLOAD_TIMEOUT = "ERR_DOWNLOAD_TIMEOUT"
    DOWNLOAD_TOO_LARGE = "ERR_DOWNLOAD_TOO_LARGE"
    FFMPEG_CONVERT = "ERR_FFMPEG_CONVERT"
    FFMPEG_TIMEOUT = "ERR_FFMPEG_TIMEOUT"
    TRANSCRIBE_FAILED = "ERR_TRANSCRIBE_FAILED"
    TRANSCRIBE_TIMEOUT = "ERR_TRANSCRIBE_TIMEOUT"

    # Store
    PERSISTENCE = "ERR_PERSISTENCE"

    # Submission boundary
    INVALID_URL = "ERR_INVALID_URL"
    UNSUPPORTED_FORMAT = "ERR_UNSUPPORTED_FORMAT"
    FILE_TOO_LARGE = "ERR_FILE_TOO_LARGE"
    MISSING_SOURCE = "ERR_MISSING_SOURCE"

    # Retry boundary
    JOB_NOT_FOUND = "ERR_JOB_NOT_FOUND"
    NOT_FAILED = "ERR_NOT_FAILED"
    ATTEMPTS_EXHAUSTED = "ERR_ATTEMPTS_EXHAUSTED"

    UNEXPECTED = "ERR_UNEXPECTED"


# ── Worker / pipeline defaults ────────────────────────────────────────
DEFAULT_MAX_FILE_SIZE_MB = 20
DEFAULT_POLL_INTERVAL_MS = 3000
# Shorter idle waits would spin on the job store
MIN_POLL_INTERVAL_MS = 10
DEFAULT_DOWNLOAD_TIMEOUT_SEC = 120
DEFAULT_CONVERT_TIMEOUT_SEC = 120
DEFAULT_TRANSCRIBE_TIMEOUT_SEC = 300
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETENTION_DAYS = 7
DEFAULT_CLEANUP_INTERVAL_HOURS = 1

# Added on top of the stage timeouts before a processing job counts as stale
STALE_SAFETY_MARGIN_SEC = 60

MAX_ERROR_LEN = 2000
MAX_DIAGNOSTIC_LEN = 1000

# ── External binaries ─────────────────────────────────────────────────
DEFAULT_FFMPEG_BINARY = "ffmpeg"
DEFAULT_WHISPER_BINARY = "whisper-cli"
DEFAULT_WHISPER_MODEL_PATH = "/models/ggml-small.bin"

# Normalization target: mono, 16 kHz, 16-bit linear PCM
NORM_CHANNELS = 1
NORM_SAMPLE_RATE = 16000
NORM_CODEC = "pcm_s16le"
NORM_EXT = ".wav"

# Exit codes that mean the engine was killed rather than failing on its own
KILLED_EXIT_CODES = {137, 143, 9, 15}

# How long to wait for pipes to drain after a timed-out process group is killed
REAP_TIMEOUT_SEC = 5

# ── Storage naming ────────────────────────────────────────────────────
SUPPORTED_UPLOAD_FORMATS = (".mp3", ".ogg", ".wav", ".m4a", ".webm")

CONTENT_TYPE_EXTENSIONS = [
    ("audio/ogg", ".ogg"),
    ("audio/mpeg", ".mp3"),
    ("audio/wav", ".wav"),
    ("audio/x-wav", ".wav"),
    ("audio/wave", ".wav"),
    ("audio/mp4", ".m4a"),
    ("audio/webm", ".webm"),
]
# Voice-message containers (e.g. Telegram) are usually Ogg
FALLBACK_AUDIO_EXT = ".ogg"
DEFAULT_DOWNLOAD_NAME = "audio_download"

# Canonical lower-case UUID prefix used to map storage files to jobs
JOB_FILE_PATTERN = r'^([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})'

# Characters forbidden in display names
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
MAX_NAME_LEN = 200

DOWNLOAD_CHUNK_BYTES = 8 * 1024
