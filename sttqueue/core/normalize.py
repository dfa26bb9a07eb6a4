"""
Normalize stage: convert raw audio to mono, 16 kHz, 16-bit PCM WAV with ffmpeg.
"""

import logging
from pathlib import Path

from sttqueue.core.subprocess_runner import run_with_timeout
from sttqueue.core.error_codes import ConversionError
from sttqueue.core.constants import (
    ErrorCode, NORM_CHANNELS, NORM_SAMPLE_RATE, NORM_CODEC,
    DEFAULT_FFMPEG_BINARY, MAX_DIAGNOSTIC_LEN,
)
from sttqueue.core.storage import ensure_storage_dir, wav_output_path

logger = logging.getLogger(__name__)


def build_ffmpeg_args(input_path: Path, output_path: Path,
                      ffmpeg_binary: str = DEFAULT_FFMPEG_BINARY) -> list[str]:
    return [
        ffmpeg_binary,
        "-y",                               # overwrite
        "-i", str(input_path),
        "-ar", str(NORM_SAMPLE_RATE),       # 16kHz
        "-ac", str(NORM_CHANNELS),          # mono
        "-c:a", NORM_CODEC,                 # 16-bit linear PCM
        str(output_path),
    ]


def normalize_audio(input_path: Path, job_id: str, storage_dir: Path,
                    timeout_sec: float,
                    ffmpeg_binary: str = DEFAULT_FFMPEG_BINARY) -> Path:
    """
    Convert ``input_path`` to <storage_dir>/<job_id>.wav.
    Returns the path to the normalized file.
    """
    ensure_storage_dir(storage_dir)
    output_path = wav_output_path(storage_dir, job_id)
    args = build_ffmpeg_args(input_path, output_path, ffmpeg_binary)

    try:
        result = run_with_timeout(args, timeout=timeout_sec)
    except OSError as e:
        raise ConversionError(f"ffmpeg could not be started: {e}")

    if result.timed_out:
        raise ConversionError(f"Audio conversion timed out after {timeout_sec:g} seconds",
                              code=ErrorCode.FFMPEG_TIMEOUT)

    if result.returncode != 0:
        stderr = result.stderr.strip()
        raise ConversionError(
            f"ffmpeg conversion failed (code {result.returncode}):\n{stderr[-MAX_DIAGNOSTIC_LEN:]}"
        )

    if not output_path.exists():
        raise ConversionError("ffmpeg conversion failed: normalized file not created")

    logger.info("Normalized audio: %s", output_path)
    return output_path
