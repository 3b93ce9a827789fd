import re

import pytest

from media_relay.config import DisconnectPolicy
from media_relay.errors import StreamInterrupted
from media_relay.executor import Executor
from media_relay.streaming import DownloadSession, DownloadState, FileSink, storage_filename

from conftest import DEFAULT_BEHAVIOUR, expected_payload, write_extractor


def start_session(tmp_path, behaviour=DEFAULT_BEHAVIOUR, policy=DisconnectPolicy.TERMINATE, sinks=None):
    binary = write_extractor(tmp_path, behaviour)
    process = Executor(binary).run_streamed(["https://example.com/v", "-f", "22", "-o", "-"], chunk_size=1024)
    if sinks is None:
        sinks = [FileSink(tmp_path / storage_filename())]
    released = []
    session = DownloadSession(process, sinks, disconnect_policy=policy, on_finished=lambda: released.append(True))
    return session, released


class BrokenHandle:
    closed = False

    def write(self, chunk):
        raise OSError(28, "No space left on device")

    def close(self):
        self.closed = True


def test_storage_filename_is_unique_within_a_millisecond():
    names = {storage_filename(now=1700000000.0) for _ in range(100)}
    assert len(names) == 100
    assert all(re.fullmatch(r"video-1700000000000-[0-9a-f]{12}\.mp4", name) for name in names)


def test_body_and_file_are_identical(tmp_path):
    session, released = start_session(tmp_path)
    assert session.state is DownloadState.NOT_STARTED
    body = b"".join(session.body())
    assert body == expected_payload("22")
    assert session.sinks[0].path.read_bytes() == body
    assert session.state is DownloadState.COMPLETED
    assert released == [True]
    session.close()
    assert released == [True]


def test_states_advance_with_the_body(tmp_path):
    session, _ = start_session(tmp_path)
    body = session.body()
    next(body)
    assert session.state is DownloadState.STREAMING_BODY
    for _ in body:
        pass
    assert session.state is DownloadState.COMPLETED


def test_late_failure_truncates_and_aborts(tmp_path):
    behaviour = """
    sys.stdout.buffer.write(b"partial")
    sys.stdout.buffer.flush()
    sys.stderr.write("ERROR: fragment 3 not found\\n")
    sys.exit(1)
    """
    session, released = start_session(tmp_path, behaviour)
    received = []
    with pytest.raises(StreamInterrupted) as excinfo:
        for chunk in session.body():
            received.append(chunk)
    assert b"".join(received) == b"partial"
    assert "fragment 3 not found" in excinfo.value.details
    assert session.state is DownloadState.ABORTED
    assert session.sinks[0].path.read_bytes() == b"partial"
    assert released == [True]


def test_disk_failure_does_not_break_client_stream(tmp_path):
    sink = FileSink(tmp_path / "broken.mp4")
    sink._handle.close()
    sink._handle = BrokenHandle()
    session, _ = start_session(tmp_path, sinks=[sink])
    body = b"".join(session.body())
    assert body == expected_payload("22")
    assert sink.failed
    assert sink.bytes_written == 0
    assert session.state is DownloadState.COMPLETED


def test_terminate_policy_kills_child_on_abandon(tmp_path):
    behaviour = """
    sys.stdout.buffer.write(b"x" * 2048)
    sys.stdout.buffer.flush()
    time.sleep(30)
    """
    session, released = start_session(tmp_path, behaviour, DisconnectPolicy.TERMINATE)
    body = session.body()
    next(body)
    session.close()
    assert session.state is DownloadState.ABORTED
    assert session.process.returncode not in (0, None)
    assert released == [True]
    assert session.sinks[0].path.stat().st_size >= 1024


def test_finish_policy_completes_disk_copy(tmp_path):
    behaviour = """
    for _ in range(20):
        sys.stdout.buffer.write(b"y" * 1024)
        sys.stdout.buffer.flush()
        time.sleep(0.01)
    """
    session, released = start_session(tmp_path, behaviour, DisconnectPolicy.FINISH)
    body = session.body()
    next(body)
    session.close()
    assert session.wait_finished(timeout=10)
    assert session.sinks[0].path.read_bytes() == b"y" * 20 * 1024
    assert session.process.returncode == 0
    assert session.state is DownloadState.ABORTED
    assert released == [True]


def test_close_before_body_stops_child(tmp_path):
    session, released = start_session(tmp_path, "time.sleep(30)\n")
    session.close()
    assert session.state is DownloadState.ABORTED
    assert released == [True]
