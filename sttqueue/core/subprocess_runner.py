"""
Subprocess runner for the external audio binaries.

spawn(args) -> ProcessHandle: bounded wait, forced kill, captured
stdout/stderr and an exit classification. Arguments are always passed as
an array; shell execution is never used.
"""

import enum
import os
import logging
import signal
import subprocess
from dataclasses import dataclass

from sttqueue.core.constants import KILLED_EXIT_CODES, REAP_TIMEOUT_SEC

logger = logging.getLogger(__name__)

_POSIX = os.name == "posix"


class ExitKind(enum.Enum):
    NORMAL = "normal"
    NONZERO = "nonzero"
    KILLED = "killed"


@dataclass
class ProcessResult:
    args: list[str]
    returncode: int | None
    stdout: str
    stderr: str
    kind: ExitKind
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.kind is ExitKind.NORMAL


def classify_exit(returncode: int | None, timed_out: bool = False) -> ExitKind:
    """Map a return code to NORMAL / NONZERO / KILLED."""
    if timed_out or returncode is None:
        return ExitKind.KILLED
    if returncode == 0:
        return ExitKind.NORMAL
    # Negative codes are signals on POSIX (-9 SIGKILL, -15 SIGTERM)
    if returncode < 0 or returncode in KILLED_EXIT_CODES:
        return ExitKind.KILLED
    return ExitKind.NONZERO


class ProcessHandle:
    """
    A running external process with captured output.
    On POSIX the process leads its own process group, so a kill also takes
    down anything it spawned (shell wrappers, helper processes).
    """

    def __init__(self, args: list[str]):
        if not isinstance(args, (list, tuple)):
            raise TypeError("Subprocess args must be a list/tuple, not a string")
        self.args = [str(a) for a in args]
        logger.debug("Running subprocess: %s", ' '.join(self.args))
        self._proc = subprocess.Popen(
            self.args,
            shell=False,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=_POSIX,
        )
        self._timed_out = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    def kill(self):
        """Forcefully terminate the process and its group (SIGKILL on POSIX)."""
        # Once reaped, the pid (and group id) may belong to someone else
        if self._proc.returncode is not None:
            return
        if _POSIX:
            try:
                os.killpg(self._proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        elif self._proc.poll() is None:
            self._proc.kill()

    def wait(self, timeout: float | None) -> ProcessResult:
        """
        Wait up to ``timeout`` seconds, collecting stdout/stderr.
        On expiry the process group is killed and the result is marked
        timed out; the wait after the kill is itself bounded.
        """
        try:
            stdout, stderr = self._proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._timed_out = True
            logger.warning("Subprocess exceeded %ss, killing: %s", timeout, self.args[0])
            self.kill()
            stdout, stderr = self._reap()

        returncode = self._proc.returncode
        return ProcessResult(
            args=self.args,
            returncode=returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            kind=classify_exit(returncode, self._timed_out),
            timed_out=self._timed_out,
        )

    def _reap(self) -> tuple[str, str]:
        try:
            return self._proc.communicate(timeout=REAP_TIMEOUT_SEC)
        except subprocess.TimeoutExpired:
            # Something outside the group still holds the pipes open
            logger.warning("Output of killed %s not drained after %ss, discarding",
                           self.args[0], REAP_TIMEOUT_SEC)
            for pipe in (self._proc.stdout, self._proc.stderr):
                if pipe:
                    pipe.close()
            self._proc.wait()
            return "", ""


def spawn(args: list[str]) -> ProcessHandle:
    return ProcessHandle(args)


def run_with_timeout(args: list[str], timeout: float) -> ProcessResult:
    """Spawn ``args`` and wait for it with a wall-clock timeout."""
    return spawn(args).wait(timeout)
