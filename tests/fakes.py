"""
Test doubles: stand-in ffmpeg / whisper executables and a fake HTTP session.
"""

import os
import threading
import time
import stat
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import requests

from sttqueue.core.config import AppConfig
from sttqueue.core.db_sqlite import Database, to_timestamp


def write_script(directory: Path, name: str, body: str) -> str:
    """Write an executable /bin/sh script and return its path."""
    path = Path(directory) / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


# ffmpeg -y -i IN -ar 16000 -ac 1 -c:a pcm_s16le OUT
FFMPEG_COPY = 'for last; do :; done\ncp "$3" "$last"'
FFMPEG_FAIL = 'echo "Invalid data found when processing input" >&2\nexit 1'

# whisper -m MODEL -f WAV --output-txt --no-timestamps [-l LANG]
WHISPER_SIDECAR = 'echo "whisper_init: loading model"\nprintf "  hello from sidecar \\n" > "$4.txt"'
WHISPER_STDOUT = 'echo "  hello from stdout  "'
WHISPER_FAIL = 'echo "failed to read WAV file" >&2\nexit 3'
# A wrapper that does not exec: the sleep is a grandchild of the runner
WHISPER_HANG = 'sleep 30\necho never'


def whisper_logging(log_path: Path) -> str:
    """A whisper that records each input file it was run on."""
    return f'echo "$4" >> "{log_path}"\nprintf "text for %s" "$4" > "$4.txt"'


def make_config(tmpdir: Path, **overrides) -> AppConfig:
    tmpdir = Path(tmpdir)
    model = tmpdir / "model.bin"
    model.write_bytes(b"model")
    values = {
        'db_path': str(tmpdir / "jobs.db"),
        'storage_dir': str(tmpdir / "audio"),
        'ffmpeg_binary': write_script(tmpdir, "ffmpeg", FFMPEG_COPY),
        'whisper_binary': write_script(tmpdir, "whisper", WHISPER_SIDECAR),
        'whisper_model_path': str(model),
        'poll_interval_ms': 10,
        'download_timeout_sec': 5,
        'convert_timeout_sec': 5,
        'transcribe_timeout_sec': 5,
        'max_attempts': 3,
    }
    values.update(overrides)
    return AppConfig(config_path=tmpdir / "missing-config.json", overrides=values, environ={})


def backdate(db: Database, job_id: str, column: str, when: datetime):
    """Rewrite a timestamp column directly, bypassing update_job()."""
    assert column in ('created_at', 'updated_at')
    db.conn.execute(f"UPDATE jobs SET {column} = ? WHERE id = ?", (to_timestamp(when), job_id))
    db.conn.commit()


class FakeResponse:
    def __init__(self, status_code=200, body=b"", headers=None, reason="OK",
                 chunk_size=4, raise_during=None):
        self.status_code = status_code
        self.reason = reason
        self.headers = headers or {}
        self._body = body
        self._chunk_size = chunk_size
        self._raise_during = raise_during
        self.closed = False

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self._body), self._chunk_size):
            if self._raise_during is not None and i > 0:
                raise self._raise_during
            yield self._body[i:i + self._chunk_size]

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class FakeSession:
    """Returns a canned response (or raises) for every GET."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def unreachable_session() -> FakeSession:
    return FakeSession(error=requests.exceptions.ConnectionError(
        "HTTPConnectionPool(host='audio.invalid', port=80): "
        "Max retries exceeded (Failed to establish a new connection)"))


def skip_without_sh() -> bool:
    return os.name == 'nt' or not Path("/bin/sh").exists()


class TrickleServer:
    """
    Local HTTP server that sends ``head`` at once and then ``body`` one
    byte every ``delay`` seconds. ``head`` is the raw status line and headers.
    """

    def __init__(self, head: bytes, body: bytes, delay: float = 0.25):
        self.head = head
        self.body = body
        self.delay = delay
        self.server = None

    def __enter__(self):
        head, body, delay = self.head, self.body, self.delay

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self):
                try:
                    self.wfile.write(head)
                    for i in range(len(body)):
                        self.wfile.write(body[i:i + 1])
                        time.sleep(delay)
                except OSError:
                    pass  # client gave up

            def log_message(self, *args):
                pass

        self.server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        threading.Thread(target=self.server.serve_forever, daemon=True).start()
        return self

    def __exit__(self, *exc):
        self.server.shutdown()
        self.server.server_close()
        return False

    @property
    def url(self) -> str:
        host, port = self.server.server_address[:2]
        return f"http://{host}:{port}/voice.ogg"


def local_session() -> requests.Session:
    """A real session that ignores proxy settings from the environment."""
    session = requests.Session()
    session.trust_env = False
    return session


def audio_head(length: int) -> bytes:
    return (b"HTTP/1.1 200 OK\r\nContent-Type: audio/ogg\r\n"
            b"Content-Length: " + str(length).encode() + b"\r\nConnection: close\r\n\r\n")
