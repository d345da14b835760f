"""
Supervised subprocess runner for long-running agent CLIs.

Spawns a child process, streams its stdout/stderr into memory from reader
threads, optionally feeds stdin, reports heartbeats while it runs, and on
timeout terminates the whole process tree (SIGTERM, then SIGKILL after a
grace period) using psutil.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import psutil

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
TAIL_CHARS = 500


@dataclass
class ProcessResult:
    stdout: str
    stderr: str
    returncode: int
    elapsed: float


@dataclass
class Heartbeat:
    """Progress snapshot passed to ``on_heartbeat``."""

    elapsed: float
    stdout_bytes: int
    stderr_bytes: int
    stdout_delta: int
    stderr_delta: int


class ProcessError(Exception):
    def __init__(self, message: str, *, elapsed: float, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.elapsed = elapsed
        self.stdout = stdout
        self.stderr = stderr

    @property
    def stderr_tail(self) -> str:
        return self.stderr[-TAIL_CHARS:]


class ProcessTimeoutError(ProcessError):
    """The process outlived its timeout and was killed."""


class ProcessExitError(ProcessError):
    """The process exited with a non-zero status."""

    def __init__(self, message: str, *, returncode: int, **kwargs):
        super().__init__(message, **kwargs)
        self.returncode = returncode


class _StreamReader(threading.Thread):
    def __init__(self, stream, on_chunk: Callable[[str], None] | None = None):
        super().__init__(daemon=True)
        self.stream = stream
        self.on_chunk = on_chunk
        self.chunks: list[bytes] = []

    @property
    def size(self) -> int:
        return sum(len(chunk) for chunk in self.chunks)

    def run(self) -> None:
        while True:
            chunk = self.stream.read1(READ_CHUNK)
            if not chunk:
                break
            self.chunks.append(chunk)
            if self.on_chunk is not None:
                self.on_chunk(chunk.decode("utf-8", errors="replace"))
        self.stream.close()

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8", errors="replace")


def terminate_tree(pid: int, grace: float) -> None:
    """SIGTERM the process and its descendants, SIGKILL whatever survives ``grace``."""
    try:
        parent = psutil.Process(pid)
        procs = [*parent.children(recursive=True), parent]
    except psutil.NoSuchProcess:
        return
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(procs, timeout=grace)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(alive, timeout=grace)


class SupervisedProcess:
    """
    One supervised child process.

    Args:
        args: Command line, program first.
        cwd: Working directory.
        env: Full environment for the child (None inherits).
        stdin_text: Written to stdin before closing it; None closes stdin at once.
        timeout: Seconds before the process tree is killed.
        grace: Seconds between SIGTERM and SIGKILL.
        heartbeat_interval: Seconds between ``on_heartbeat`` calls.
        on_heartbeat: Called from the supervising thread with a Heartbeat.
        on_stderr: Called from the reader thread with each decoded stderr chunk.
    """

    def __init__(
        self,
        args: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        stdin_text: str | None = None,
        timeout: float = 600.0,
        grace: float = 3.0,
        heartbeat_interval: float = 30.0,
        on_heartbeat: Callable[[Heartbeat], None] | None = None,
        on_stderr: Callable[[str], None] | None = None,
    ):
        self.args = args
        self.cwd = cwd
        self.env = env
        self.stdin_text = stdin_text
        self.timeout = timeout
        self.grace = grace
        self.heartbeat_interval = heartbeat_interval
        self.on_heartbeat = on_heartbeat
        self.on_stderr = on_stderr
        self.pid: int | None = None

    def _feed_stdin(self, proc: subprocess.Popen) -> None:
        try:
            if self.stdin_text:
                proc.stdin.write(self.stdin_text.encode("utf-8"))
            proc.stdin.close()
        except BrokenPipeError:
            logger.debug("Process %s closed stdin early", self.pid)

    def run(self) -> ProcessResult:
        """
        Run to completion.

        Raises:
            OSError: The program could not be started.
            ProcessTimeoutError: The timeout elapsed; the tree was killed.
            ProcessExitError: Non-zero exit status.
        """
        start = time.monotonic()
        proc = subprocess.Popen(
            self.args,
            cwd=self.cwd,
            env=self.env,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        self.pid = proc.pid
        logger.debug("Spawned %s (pid %s)", self.args[0], proc.pid)

        out = _StreamReader(proc.stdout)
        err = _StreamReader(proc.stderr, self.on_stderr)
        out.start()
        err.start()
        self._feed_stdin(proc)

        deadline = start + self.timeout
        next_beat = start + self.heartbeat_interval
        last_out = last_err = 0
        returncode = None
        while returncode is None:
            now = time.monotonic()
            if now >= deadline:
                terminate_tree(proc.pid, self.grace)
                proc.wait()
                out.join(self.grace)
                err.join(self.grace)
                elapsed = time.monotonic() - start
                raise ProcessTimeoutError(
                    f"{self.args[0]} timed out after {self.timeout}s",
                    elapsed=elapsed,
                    stdout=out.text(),
                    stderr=err.text(),
                )
            wait_for = deadline - now
            if self.on_heartbeat is not None:
                wait_for = min(wait_for, max(next_beat - now, 0.0))
            try:
                returncode = proc.wait(timeout=max(wait_for, 0.01))
            except subprocess.TimeoutExpired:
                if self.on_heartbeat is not None and time.monotonic() >= next_beat:
                    out_size, err_size = out.size, err.size
                    self.on_heartbeat(
                        Heartbeat(
                            elapsed=time.monotonic() - start,
                            stdout_bytes=out_size,
                            stderr_bytes=err_size,
                            stdout_delta=out_size - last_out,
                            stderr_delta=err_size - last_err,
                        )
                    )
                    last_out, last_err = out_size, err_size
                    next_beat += self.heartbeat_interval

        # Grandchildren may hold the pipes open after the process exits.
        out.join(self.grace)
        err.join(self.grace)
        if out.is_alive() or err.is_alive():
            logger.warning("%s exited but its output pipes are still open; not waiting for them", self.args[0])
        elapsed = time.monotonic() - start
        stdout, stderr = out.text(), err.text()
        if returncode != 0:
            raise ProcessExitError(
                f"{self.args[0]} exited with code {returncode}",
                returncode=returncode,
                elapsed=elapsed,
                stdout=stdout,
                stderr=stderr,
            )
        return ProcessResult(stdout=stdout, stderr=stderr, returncode=returncode, elapsed=elapsed)


def run_supervised(args: list[str], **kwargs) -> ProcessResult:
    return SupervisedProcess(args, **kwargs).run()
