"""Fetch the yt-dlp release binary into the base directory.

Usage:
    python -m media_relay.fetch_extractor [--base-dir DIR] [--force]
"""
from __future__ import annotations

import argparse
import logging
import os
import shutil
import stat
import sys
import tempfile
from pathlib import Path
from typing import Optional, Sequence
from urllib.request import Request, urlopen

from .config import Settings, configure_logging, extractor_binary_name

logger = logging.getLogger(__name__)

RELEASE_BASE_URL = "https://github.com/yt-dlp/yt-dlp/releases/latest/download"
RELEASE_ASSETS = {
    "win32": "yt-dlp.exe",
    "darwin": "yt-dlp_macos",
}
DEFAULT_ASSET = "yt-dlp_linux"
DOWNLOAD_TIMEOUT = 60


def release_url(platform: Optional[str] = None) -> str:
    platform = platform or sys.platform
    return f"{RELEASE_BASE_URL}/{RELEASE_ASSETS.get(platform, DEFAULT_ASSET)}"


def fetch_extractor(target: Path, url: Optional[str] = None, force: bool = False) -> bool:
    """Download the binary to ``target``; returns False when it was already there."""
    target = Path(target)
    if target.is_file() and not force:
        logger.info("yt-dlp binary already exists at %s, skipping download.", target)
        return False

    url = url or release_url()
    target.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Downloading yt-dlp from %s", url)
    # write next to the target so the final rename is atomic
    fd, tmp_name = tempfile.mkstemp(prefix=".yt-dlp-", dir=str(target.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            with urlopen(Request(url, headers={"User-Agent": "Mozilla/5.0"}), timeout=DOWNLOAD_TIMEOUT) as resp:
                shutil.copyfileobj(resp, handle)
        mode = os.stat(tmp_name).st_mode
        os.chmod(tmp_name, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.remove(tmp_name)
        except FileNotFoundError:
            pass
        raise
    logger.info("yt-dlp binary downloaded successfully to %s", target)
    return True


def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(description="Download the yt-dlp binary used by media-relay.")
    parser.add_argument("--base-dir", type=Path, default=settings.base_dir, help="directory to place the binary in")
    parser.add_argument("--url", default=None, help="override the release asset URL")
    parser.add_argument("--force", action="store_true", help="replace an existing binary")
    args = parser.parse_args(argv)

    configure_logging(settings.log_level)
    fetch_extractor(args.base_dir / extractor_binary_name(), url=args.url, force=args.force)
    return 0


if __name__ == "__main__":
    sys.exit(main())
