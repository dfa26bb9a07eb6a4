"""
Transcribe stage: run the whisper.cpp CLI on a normalized WAV file.

Output recovery: the engine writes <wav>.txt next to its input when asked
for text output. That file is authoritative; captured stdout (which can be
interleaved with engine logging) is the fallback.
"""

import logging
from pathlib import Path

from sttqueue.core.subprocess_runner import ExitKind, run_with_timeout
from sttqueue.core.error_codes import TranscriptionError
from sttqueue.core.constants import (
    ErrorCode, DEFAULT_WHISPER_BINARY, DEFAULT_WHISPER_MODEL_PATH, MAX_DIAGNOSTIC_LEN,
)
from sttqueue.core.storage import sidecar_path, safe_delete

logger = logging.getLogger(__name__)


def build_whisper_args(wav_path: Path, language: str | None = None,
                       whisper_binary: str = DEFAULT_WHISPER_BINARY,
                       model_path: str = DEFAULT_WHISPER_MODEL_PATH) -> list[str]:
    args = [
        whisper_binary,
        "-m", str(model_path),
        "-f", str(wav_path),
        "--output-txt",
        "--no-timestamps",
    ]
    if language:
        args.extend(["-l", language])
    return args


def transcribe_audio(wav_path: Path, timeout_sec: float, language: str | None = None,
                     whisper_binary: str = DEFAULT_WHISPER_BINARY,
                     model_path: str = DEFAULT_WHISPER_MODEL_PATH) -> str:
    """Transcribe ``wav_path`` and return the trimmed plain text."""
    txt_path = sidecar_path(wav_path)
    # A sidecar from an earlier attempt must not be mistaken for this run's output
    safe_delete(txt_path)

    args = build_whisper_args(wav_path, language, whisper_binary, model_path)
    try:
        result = run_with_timeout(args, timeout=timeout_sec)
    except OSError as e:
        raise TranscriptionError(f"whisper could not be started: {e}")

    if result.kind is ExitKind.KILLED:
        raise TranscriptionError(f"Transcription timed out after {timeout_sec:g} seconds",
                                 code=ErrorCode.TRANSCRIBE_TIMEOUT)

    if result.kind is ExitKind.NONZERO:
        stderr = result.stderr.strip()
        raise TranscriptionError(
            f"whisper.cpp failed (code {result.returncode}):\n{stderr[-MAX_DIAGNOSTIC_LEN:]}"
        )

    if txt_path.exists():
        text = txt_path.read_text(encoding="utf-8", errors="replace").strip()
        logger.debug("Read transcript from sidecar %s", txt_path)
    else:
        text = result.stdout.strip()
        logger.debug("No sidecar at %s, using captured stdout", txt_path)

    logger.info("Transcribed %s (%d chars)", wav_path, len(text))
    return text
