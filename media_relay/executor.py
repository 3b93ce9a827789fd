"""Launch the extractor as a child process, buffered or streamed.

- ``run_buffered`` captures stdout and stderr fully and returns once the child exits
- ``run_streamed`` hands stdout to the caller live while a background thread drains stderr
- ``ProcessGate`` bounds how many extractor children may run at once
"""
from __future__ import annotations

import logging
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterator, List, Optional, Sequence

from .errors import AdmissionRejected, ExtractionFailure, LaunchError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 256
STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int
    stdout: bytes
    stderr: bytes

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", "replace")


class ProcessGate:
    """Admission control for extractor children.

    ``acquire`` waits up to ``timeout`` seconds for a free slot and raises
    :class:`AdmissionRejected` otherwise.
    """

    def __init__(self, max_concurrent: int, timeout: float = 2.0) -> None:
        self.max_concurrent = max(max_concurrent, 1)
        self.timeout = timeout
        self._semaphore = threading.BoundedSemaphore(value=self.max_concurrent)

    def acquire(self) -> None:
        if not self._semaphore.acquire(timeout=self.timeout):
            raise AdmissionRejected("Too many concurrent downloads, please wait.")

    def release(self) -> None:
        self._semaphore.release()


class StreamedProcess:
    """A running extractor whose stdout is consumed incrementally."""

    def __init__(self, process: subprocess.Popen, chunk_size: int = CHUNK_SIZE) -> None:
        self.process = process
        self.chunk_size = chunk_size
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr, name=f"yt-dlp-stderr-{process.pid}", daemon=True
        )
        self._stderr_thread.start()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.poll()

    @property
    def stderr_tail(self) -> List[str]:
        return list(self._stderr_tail)

    def _drain_stderr(self) -> None:
        stream = self.process.stderr
        if stream is None:
            return
        try:
            for line in iter(stream.readline, b""):
                text = line.decode("utf-8", "ignore").strip()
                if text:
                    self._stderr_tail.append(text)
                    logger.info("yt-dlp[%s] stderr: %s", self.pid, text)
        except (OSError, ValueError):
            # pipe closed underneath us by close()
            logger.debug("stderr pipe of yt-dlp[%s] closed", self.pid)

    def chunks(self) -> Iterator[bytes]:
        stdout = self.process.stdout
        if stdout is None:
            return
        for chunk in iter(lambda: stdout.read(self.chunk_size), b""):
            yield chunk

    def wait(self, timeout: Optional[float] = None) -> int:
        code = self.process.wait(timeout=timeout)
        self._stderr_thread.join(timeout=1)
        return code

    def terminate(self) -> None:
        if self.process.poll() is None:
            logger.info("Terminating yt-dlp[%s]", self.pid)
            self.process.kill()

    def close(self) -> None:
        self.terminate()
        try:
            self.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.error("yt-dlp[%s] did not exit after kill", self.pid)
        self._stderr_thread.join(timeout=1)
        for stream in (self.process.stdout, self.process.stderr):
            if stream is not None:
                stream.close()


class Executor:
    def __init__(self, binary: Path) -> None:
        self.binary = Path(binary)

    def _command(self, args: Sequence[str]) -> List[str]:
        return [str(self.binary), *args]

    def run_buffered(self, args: Sequence[str], timeout: Optional[float] = None) -> ExecutionResult:
        cmd = self._command(args)
        logger.debug("Running %s", cmd)
        try:
            proc = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ExtractionFailure("yt-dlp failed", f"Timed out after {timeout} seconds") from exc
        except (OSError, ValueError) as exc:
            logger.error("Spawn error: %s", exc)
            raise LaunchError("Failed to run yt-dlp", str(exc)) from exc

        result = ExecutionResult(proc.returncode, proc.stdout or b"", proc.stderr or b"")
        if result.stderr:
            logger.info("yt-dlp stderr: %s", result.stderr_text.strip())
        return result

    def run_streamed(self, args: Sequence[str], chunk_size: int = CHUNK_SIZE) -> StreamedProcess:
        cmd = self._command(args)
        logger.debug("Streaming %s", cmd)
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except (OSError, ValueError) as exc:
            logger.error("Download error: %s", exc)
            raise LaunchError("Failed to download video.", str(exc)) from exc
        return StreamedProcess(process, chunk_size=chunk_size)
