"""Fan a streamed extractor's stdout out to the HTTP body and to disk.

A :class:`DownloadSession` owns one streamed extractor process. Its single read
loop pushes every chunk to the disk sinks first and then yields it to the
HTTP response, so both consumers see the same bytes in the same order without
the payload ever being held in memory as a whole.

Response headers go out before the extractor's outcome is known. The session
tracks that commitment explicitly::

    NOT_STARTED -> HEADERS_SENT -> STREAMING_BODY -> COMPLETED | ABORTED

Only ``NOT_STARTED`` may still turn into an error status; afterwards a failure
can only cut the body short.
"""
from __future__ import annotations

import enum
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from .config import DisconnectPolicy
from .errors import StreamInterrupted
from .executor import StreamedProcess

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "video"
STORAGE_EXT = "mp4"
EXIT_WAIT_SECONDS = 30


class DownloadState(str, enum.Enum):
    NOT_STARTED = "not_started"
    HEADERS_SENT = "headers_sent"
    STREAMING_BODY = "streaming_body"
    COMPLETED = "completed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({DownloadState.COMPLETED, DownloadState.ABORTED})


def storage_filename(now: Optional[float] = None) -> str:
    """Unique per request: millisecond timestamp plus a random suffix."""
    millis = int((time.time() if now is None else now) * 1000)
    return f"{STORAGE_PREFIX}-{millis}-{uuid.uuid4().hex[:12]}.{STORAGE_EXT}"


class FileSink:
    """Disk copy of a download. Write failures disable the sink, never the stream."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.bytes_written = 0
        self.failed = False
        self._handle = open(self.path, "wb")

    def write(self, chunk: bytes) -> None:
        if self.failed:
            return
        try:
            self._handle.write(chunk)
            self.bytes_written += len(chunk)
        except OSError as exc:
            self.failed = True
            logger.error("Writing %s failed, keeping client stream alive: %s", self.path.name, exc)
            self._close_handle()

    def _close_handle(self) -> None:
        try:
            self._handle.close()
        except OSError as exc:
            logger.error("Closing %s failed: %s", self.path.name, exc)

    def close(self) -> None:
        if not self._handle.closed:
            self._close_handle()


class DownloadSession:
    def __init__(
        self,
        process: StreamedProcess,
        sinks: List[FileSink],
        disconnect_policy: DisconnectPolicy = DisconnectPolicy.TERMINATE,
        on_finished: Optional[Callable[[], None]] = None,
    ) -> None:
        self.process = process
        self.sinks = sinks
        self.disconnect_policy = disconnect_policy
        self.state = DownloadState.NOT_STARTED
        self.bytes_sent = 0
        self._on_finished = on_finished
        self._lock = threading.Lock()
        self._finished = threading.Event()
        self._drain_thread: Optional[threading.Thread] = None
        self._chunks = self._tee()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def wait_finished(self, timeout: Optional[float] = None) -> bool:
        return self._finished.wait(timeout)

    def _tee(self) -> Iterator[bytes]:
        for chunk in self.process.chunks():
            for sink in self.sinks:
                sink.write(chunk)
            yield chunk

    def _advance(self, state: DownloadState) -> bool:
        with self._lock:
            if self.state in TERMINAL_STATES:
                return False
            self.state = state
            return True

    def _finish(self, state: DownloadState) -> None:
        if not self._advance(state):
            return
        try:
            self.process.close()
            for sink in self.sinks:
                sink.close()
        finally:
            if self._on_finished is not None:
                self._on_finished()
            self._finished.set()
        logger.info(
            "Download yt-dlp[%s] %s after %d bytes to client",
            self.process.pid, state.value, self.bytes_sent,
        )

    def _exit_code(self) -> int:
        try:
            return self.process.wait(timeout=EXIT_WAIT_SECONDS)
        except Exception:
            self._finish(DownloadState.ABORTED)
            raise

    def body(self) -> Iterator[bytes]:
        """HTTP body iterator; starts running once headers are on the wire."""
        self._advance(DownloadState.HEADERS_SENT)
        for chunk in self._chunks:
            if self.state is DownloadState.HEADERS_SENT:
                self._advance(DownloadState.STREAMING_BODY)
            self.bytes_sent += len(chunk)
            yield chunk

        code = self._exit_code()
        if code != 0:
            detail = "\n".join(self.process.stderr_tail[-6:]).strip() or f"yt-dlp exited with code {code}"
            logger.error("yt-dlp[%s] failed mid-stream: %s", self.process.pid, detail)
            self._finish(DownloadState.ABORTED)
            raise StreamInterrupted("Download interrupted", detail)
        self._finish(DownloadState.COMPLETED)

    def close(self) -> None:
        """Called when the response is done with the body, finished or not."""
        if self.state in TERMINAL_STATES or self._drain_thread is not None:
            return
        if self.disconnect_policy is DisconnectPolicy.FINISH and self.sinks:
            logger.info("Client left, finishing disk copy of yt-dlp[%s]", self.process.pid)
            self._drain_thread = threading.Thread(
                target=self._drain_to_disk, name=f"yt-dlp-drain-{self.process.pid}", daemon=True
            )
            self._drain_thread.start()
            return
        logger.info("Client left, stopping yt-dlp[%s]", self.process.pid)
        self._finish(DownloadState.ABORTED)

    def _drain_to_disk(self) -> None:
        try:
            for _ in self._chunks:
                pass
            code = self.process.wait(timeout=EXIT_WAIT_SECONDS)
        except Exception:
            logger.exception("Finishing disk copy of yt-dlp[%s] failed", self.process.pid)
            self._finish(DownloadState.ABORTED)
            return
        if code != 0:
            logger.error("yt-dlp[%s] exited with code %s while finishing disk copy", self.process.pid, code)
        # the client already saw a truncated body either way
        self._finish(DownloadState.ABORTED)
