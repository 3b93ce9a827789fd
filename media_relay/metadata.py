"""Normalize yt-dlp ``-J`` output into the format list served to clients."""
from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import EmptyOutput, MalformedOutput

DEFAULT_TITLE = "Untitled"
EXCERPT_LENGTH = 500
CODEC_NONE = "none"
VIDEO_CONTAINER = "mp4"

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


class FormatOption(BaseModel):
    format_id: str
    label: str
    ext: str
    fps: Optional[float] = None
    filesize: Optional[int] = None


class MediaMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = DEFAULT_TITLE
    thumbnail: Optional[str] = Field(default=None, alias="thumb")
    options: List[FormatOption] = Field(default_factory=list)


def parse_extractor_output(raw: Union[bytes, str]) -> Dict[str, Any]:
    text = raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw
    text = text.strip()
    if not text:
        raise EmptyOutput("yt-dlp returned no data")
    try:
        info = json.loads(text)
    except ValueError as exc:
        raise MalformedOutput("Invalid yt-dlp JSON", text[:EXCERPT_LENGTH]) from exc
    if not isinstance(info, dict):
        raise MalformedOutput("Invalid yt-dlp JSON", text[:EXCERPT_LENGTH])
    return info


def select_entry(info: Dict[str, Any]) -> Dict[str, Any]:
    """Playlists resolve to their first entry; only index 0 is supported."""
    entries = info.get("entries")
    if isinstance(entries, list) and entries and isinstance(entries[0], dict):
        return entries[0]
    return info


def pick_thumbnail(info: Dict[str, Any]) -> Optional[str]:
    # yt-dlp orders thumbnails by preference, best last
    thumbnails = info.get("thumbnails") or []
    if thumbnails and isinstance(thumbnails[-1], dict) and thumbnails[-1].get("url"):
        return thumbnails[-1]["url"]
    return info.get("thumbnail") or None


def _has_codec(value: Any) -> bool:
    return bool(value) and value != CODEC_NONE


def is_video(fmt: Dict[str, Any]) -> bool:
    return (
        fmt.get("ext") == VIDEO_CONTAINER
        and _has_codec(fmt.get("vcodec"))
        and _has_codec(fmt.get("acodec"))
    )


def is_audio(fmt: Dict[str, Any]) -> bool:
    return _has_codec(fmt.get("acodec")) and not _has_codec(fmt.get("vcodec"))


def label_rank(label: str) -> int:
    """Leading integer of a label ("1080p60" -> 1080); anything else ranks as 0."""
    match = _LEADING_INT_RE.match(label or "")
    return int(match.group(1)) if match else 0


def _filesize(fmt: Dict[str, Any]) -> Optional[int]:
    size = fmt.get("filesize") or fmt.get("filesize_approx")
    return int(size) if size else None


def _video_option(fmt: Dict[str, Any]) -> FormatOption:
    return FormatOption(
        format_id=str(fmt.get("format_id")),
        label=fmt.get("format_note") or f"{fmt.get('height') or '?'}p",
        ext=fmt.get("ext"),
        fps=fmt.get("fps") or None,
        filesize=_filesize(fmt),
    )


def _audio_option(fmt: Dict[str, Any]) -> FormatOption:
    ext = fmt.get("ext") or ""
    return FormatOption(
        format_id=str(fmt.get("format_id")),
        label=fmt.get("format_note") or ext.upper(),
        ext=ext,
        filesize=_filesize(fmt),
    )


def normalize_formats(formats: List[Dict[str, Any]]) -> List[FormatOption]:
    formats = [fmt for fmt in formats or [] if isinstance(fmt, dict)]
    videos = [_video_option(fmt) for fmt in formats if is_video(fmt)]
    audios = [_audio_option(fmt) for fmt in formats if is_audio(fmt)]
    # sorted() is stable, so equal ranks keep their source order
    videos = sorted(videos, key=lambda option: label_rank(option.label), reverse=True)
    return videos + audios


def normalize(info: Dict[str, Any]) -> MediaMetadata:
    title = info.get("title")
    return MediaMetadata(
        title=DEFAULT_TITLE if title is None else str(title),
        thumbnail=pick_thumbnail(info),
        options=normalize_formats(info.get("formats") or []),
    )


def resolve_metadata(raw: Union[bytes, str]) -> MediaMetadata:
    return normalize(select_entry(parse_extractor_output(raw)))
