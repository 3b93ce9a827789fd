import json
import sys
import textwrap
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from media_relay.config import Settings, extractor_binary_name
from media_relay.server import create_app

FAKE_HEADER = f"""#!{sys.executable}
import json, os, sys, time
HERE = os.path.dirname(os.path.abspath(__file__))
args = sys.argv[1:]
with open(os.path.join(HERE, "calls.log"), "a") as log:
    log.write(json.dumps(args) + "\\n")
"""

SAMPLE_INFO = {
    "title": "Sample clip",
    "thumbnail": "https://img.example/fallback.jpg",
    "thumbnails": [
        {"url": "https://img.example/small.jpg"},
        {"url": "https://img.example/large.jpg"},
    ],
    "formats": [
        {"format_id": "18", "ext": "mp4", "vcodec": "avc1", "acodec": "mp4a", "height": 360, "format_note": "360p", "fps": 30, "filesize": 1000},
        {"format_id": "22", "ext": "mp4", "vcodec": "avc1", "acodec": "mp4a", "height": 720, "fps": 30, "filesize_approx": 5000},
        {"format_id": "137", "ext": "mp4", "vcodec": "avc1", "acodec": "none", "height": 1080},
        {"format_id": "140", "ext": "m4a", "vcodec": "none", "acodec": "mp4a", "format_note": "medium", "filesize": 300},
        {"format_id": "251", "ext": "webm", "vcodec": "none", "acodec": "opus"},
    ],
}

# Default fake: JSON dump for -J, a version string, or a payload that depends on -f.
DEFAULT_BEHAVIOUR = """
if "--version" in args:
    print("2024.01.01")
elif "-J" in args:
    print(json.dumps(INFO))
else:
    fmt = args[args.index("-f") + 1]
    sys.stderr.write("[download] Destination: -\\n")
    sys.stderr.flush()
    payload = (fmt + ":").encode() * 5000
    for start in range(0, len(payload), 4096):
        sys.stdout.buffer.write(payload[start:start + 4096])
        sys.stdout.buffer.flush()
"""


def expected_payload(fmt):
    return (fmt + ":").encode() * 5000


def write_extractor(base_dir: Path, behaviour: str, info=None) -> Path:
    path = base_dir / extractor_binary_name()
    prelude = f"INFO = json.loads({json.dumps(json.dumps(info or SAMPLE_INFO))})\n"
    path.write_text(FAKE_HEADER + prelude + textwrap.dedent(behaviour))
    path.chmod(0o755)
    return path


def recorded_calls(base_dir: Path):
    log = base_dir / "calls.log"
    if not log.exists():
        return []
    return [json.loads(line) for line in log.read_text().splitlines() if line]


@pytest.fixture
def settings_for(tmp_path):
    def _settings(behaviour=DEFAULT_BEHAVIOUR, info=None, **overrides):
        write_extractor(tmp_path, behaviour, info)
        overrides.setdefault("chunk_size", 4096)
        return Settings.for_base_dir(tmp_path, **overrides)

    return _settings


@pytest.fixture
def client_for(settings_for):
    def _client(behaviour=DEFAULT_BEHAVIOUR, info=None, raise_server_exceptions=True, **overrides):
        settings = settings_for(behaviour, info, **overrides)
        return TestClient(create_app(settings), raise_server_exceptions=raise_server_exceptions)

    return _client
