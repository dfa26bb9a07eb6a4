"""
Acquire stage: materialize a local audio file for a job.
Uploads are already in storage; URL jobs are fetched with requests.
"""

import logging
import os
import re
import threading
from pathlib import Path
from urllib.parse import urlparse, unquote

import requests

from sttqueue.core.constants import (
    ErrorCode, SourceType, CONTENT_TYPE_EXTENSIONS, FALLBACK_AUDIO_EXT,
    DEFAULT_DOWNLOAD_NAME, DOWNLOAD_CHUNK_BYTES,
)
from sttqueue.core.error_codes import DownloadError
from sttqueue.core.models_sqlite import Job
from sttqueue.core.security_utils import sanitize_name
from sttqueue.core.storage import ensure_storage_dir, raw_audio_path, safe_delete

logger = logging.getLogger(__name__)

_EXT_RE = re.compile(r'^\.[a-z0-9]{1,10}$')


def _url_basename(url: str) -> str:
    path = urlparse(url).path
    return unquote(path.rsplit('/', 1)[-1]) if path else ""


def derive_original_name(url: str) -> str:
    """Display name for a downloaded file: the last URL path segment."""
    return sanitize_name(_url_basename(url)) or DEFAULT_DOWNLOAD_NAME


def derive_extension(url: str, content_type: str | None) -> str:
    """
    Pick the storage extension for a download.
    URL path suffix first, then the content-type table, then the fallback.
    """
    ext = os.path.splitext(_url_basename(url))[1].lower()
    if ext and _EXT_RE.match(ext):
        return ext

    content_type = (content_type or "").lower()
    for mime, mapped in CONTENT_TYPE_EXTENSIONS:
        if mime in content_type:
            return mapped

    return FALLBACK_AUDIO_EXT


def _timeout_error(timeout_sec: float) -> DownloadError:
    return DownloadError(f"Download timed out after {timeout_sec:g} seconds",
                         code=ErrorCode.DOWNLOAD_TIMEOUT)


def _too_large_error(max_bytes: int) -> DownloadError:
    return DownloadError(
        f"Downloaded file exceeds maximum size of {max_bytes / (1024 * 1024):g}MB",
        code=ErrorCode.DOWNLOAD_TOO_LARGE,
    )


class _Transfer:
    """
    One HTTP download running on its own thread.

    Socket timeouts only bound a single read, so a server trickling bytes
    could hold the transfer open indefinitely. The caller waits on ``done``
    for the whole budget instead and calls cancel() when it runs out; the
    thread notices at its next chunk and discards what it wrote.
    """

    def __init__(self, http, url: str, job_id: str, storage_dir: Path,
                 timeout_sec: float, max_bytes: int):
        self.http = http
        self.url = url
        self.job_id = job_id
        self.storage_dir = storage_dir
        self.timeout_sec = timeout_sec
        self.max_bytes = max_bytes
        self.done = threading.Event()
        self.cancelled = threading.Event()
        self.result: tuple[Path, str] | None = None
        self.error: DownloadError | None = None
        self._lock = threading.Lock()
        self._response = None
        self._part_path: Path | None = None

    def run(self):
        try:
            self.result = self._fetch()
        except DownloadError as e:
            self.error = e
        except Exception as e:
            if self.cancelled.is_set():
                # The response was closed underneath us by cancel()
                logger.debug("Abandoned download of %s ended with: %s", self.url, e)
                self.error = _timeout_error(self.timeout_sec)
            else:
                logger.error("Download of %s crashed: %s", self.url, e, exc_info=True)
                self.error = DownloadError(f"Download failed: {e}")
        finally:
            self.done.set()

    def cancel(self):
        """Abandon the transfer; nothing it produced is kept."""
        with self._lock:
            self.cancelled.set()
            response, part_path, result = self._response, self._part_path, self.result
        if response is not None:
            response.close()
        safe_delete(part_path)
        if result is not None:
            safe_delete(result[0])

    def _check_cancelled(self):
        if self.cancelled.is_set():
            raise _timeout_error(self.timeout_sec)

    def _fetch(self) -> tuple[Path, str]:
        t = self.timeout_sec
        try:
            resp = self.http.get(self.url, stream=True, timeout=(t, t))
        except requests.exceptions.Timeout:
            raise _timeout_error(t)
        except requests.exceptions.RequestException as e:
            raise DownloadError(f"Download failed: {e}")

        with resp:
            with self._lock:
                self._response = resp
            self._check_cancelled()

            if not resp.ok:
                raise DownloadError(f"Download failed: HTTP {resp.status_code} {resp.reason or ''}".rstrip())

            declared = resp.headers.get('Content-Length')
            if declared and declared.isdigit() and int(declared) > self.max_bytes:
                raise _too_large_error(self.max_bytes)

            original_name = derive_original_name(self.url)
            ext = derive_extension(self.url, resp.headers.get('Content-Type'))
            file_path = raw_audio_path(self.storage_dir, self.job_id, ext)
            part_path = file_path.with_name(file_path.name + ".part")
            with self._lock:
                self._part_path = part_path

            received = 0
            try:
                with open(part_path, 'wb') as f:
                    for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                        self._check_cancelled()
                        if not chunk:
                            continue
                        received += len(chunk)
                        if received > self.max_bytes:
                            raise _too_large_error(self.max_bytes)
                        f.write(chunk)
                with self._lock:
                    self._check_cancelled()
                    os.replace(part_path, file_path)
                    self.result = (file_path, original_name)
            except requests.exceptions.Timeout:
                safe_delete(part_path)
                raise _timeout_error(t)
            except requests.exceptions.RequestException as e:
                safe_delete(part_path)
                if self.cancelled.is_set():
                    raise _timeout_error(t)
                raise DownloadError(f"Download failed: {e}")
            except DownloadError:
                safe_delete(part_path)
                raise
            except OSError as e:
                safe_delete(part_path)
                raise DownloadError(f"Download failed: could not write {file_path.name}: {e}")

        logger.info("Downloaded %d bytes for job %s: %s", received, self.job_id, file_path)
        return file_path, original_name


def download_audio(url: str, job_id: str, storage_dir: Path,
                   timeout_sec: float, max_bytes: int,
                   session: requests.Session | None = None) -> tuple[Path, str]:
    """
    Download ``url`` into storage as <job_id><ext>.
    The whole transfer (connect, headers and body) is bounded by
    ``timeout_sec``; bodies larger than ``max_bytes`` are rejected and
    nothing is kept on disk.
    Returns (file_path, original_name).
    """
    ensure_storage_dir(storage_dir)
    transfer = _Transfer(session or requests, url, job_id, storage_dir, timeout_sec, max_bytes)
    thread = threading.Thread(target=transfer.run, name=f"download-{job_id}", daemon=True)
    thread.start()

    if not transfer.done.wait(timeout_sec):
        transfer.cancel()
        logger.warning("Download for job %s exceeded %gs, abandoned", job_id, timeout_sec)
        raise _timeout_error(timeout_sec)

    if transfer.error is not None:
        raise transfer.error
    return transfer.result


def acquire_job_audio(job: Job, storage_dir: Path, timeout_sec: float, max_bytes: int,
                      session: requests.Session | None = None) -> tuple[Path, str | None] | None:
    """
    Acquire stage entry point.
    Returns None for uploads (the file is already in place), otherwise the
    (file_path, original_name) produced by the download.
    """
    if job.source_type != SourceType.URL:
        return None
    if not job.source_url:
        raise DownloadError("Download failed: job has no source URL")
    return download_audio(job.source_url, job.id, storage_dir,
                          timeout_sec, max_bytes, session=session)
