"""Runtime settings and the extractor/cookie locator.

Everything path-related is resolved once into a :class:`Settings` instance
that the app factory receives explicitly. The cookie file is the one
exception: its presence is re-checked on every request so operators can add
or remove it without restarting the service.
"""
from __future__ import annotations

import enum
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from .errors import ConfigError, ExtractorNotFound

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
COOKIE_FILENAME = "cookies.txt"
STORAGE_DIRNAME = "downloads"


class DisconnectPolicy(str, enum.Enum):
    """What happens to the extractor when the client goes away mid-download."""

    TERMINATE = "terminate"
    FINISH = "finish"


def extractor_binary_name(platform: Optional[str] = None) -> str:
    platform = platform or sys.platform
    return "yt-dlp.exe" if platform == "win32" else "yt-dlp"


def _int_env(environ: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = environ.get(name) or str(default)
    try:
        return max(int(raw), minimum)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _float_env(environ: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = environ.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    # zero or negative disables the limit
    return value if value > 0 else None


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    extractor_path: Path
    cookie_path: Path
    storage_dir: Path
    max_concurrent: int = 3
    admission_timeout: float = 2.0
    resolve_timeout: Optional[float] = 120.0
    chunk_size: int = 1024 * 256
    disconnect_policy: DisconnectPolicy = DisconnectPolicy.TERMINATE
    cors_origins: Tuple[str, ...] = ("*",)
    port: int = 5000
    log_level: str = "INFO"

    @classmethod
    def for_base_dir(cls, base_dir: Path, **overrides) -> "Settings":
        base_dir = Path(base_dir)
        values = {
            "base_dir": base_dir,
            "extractor_path": base_dir / extractor_binary_name(),
            "cookie_path": base_dir / COOKIE_FILENAME,
            "storage_dir": base_dir / STORAGE_DIRNAME,
        }
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        base_dir = Path(environ.get("MEDIA_RELAY_BASE_DIR") or os.getcwd()).resolve()

        overrides = {}
        if environ.get("MEDIA_RELAY_EXTRACTOR"):
            overrides["extractor_path"] = Path(environ["MEDIA_RELAY_EXTRACTOR"])
        if environ.get("MEDIA_RELAY_COOKIES"):
            overrides["cookie_path"] = Path(environ["MEDIA_RELAY_COOKIES"])
        if environ.get("MEDIA_RELAY_STORAGE_DIR"):
            overrides["storage_dir"] = Path(environ["MEDIA_RELAY_STORAGE_DIR"])

        policy_raw = (environ.get("DISCONNECT_POLICY") or DisconnectPolicy.TERMINATE.value).strip().lower()
        try:
            policy = DisconnectPolicy(policy_raw)
        except ValueError as exc:
            choices = ", ".join(p.value for p in DisconnectPolicy)
            raise ConfigError(f"DISCONNECT_POLICY must be one of: {choices}") from exc

        origins = tuple(
            origin.strip() for origin in (environ.get("CORS_ORIGINS") or "*").split(",") if origin.strip()
        )

        return cls.for_base_dir(
            base_dir,
            max_concurrent=_int_env(environ, "MAX_CONCURRENT_DOWNLOADS", 3),
            admission_timeout=_float_env(environ, "ADMISSION_TIMEOUT", 2.0) or 0.0,
            resolve_timeout=_float_env(environ, "RESOLVE_TIMEOUT", 120.0),
            disconnect_policy=policy,
            cors_origins=origins or ("*",),
            port=_int_env(environ, "PORT", 5000),
            log_level=(environ.get("LOG_LEVEL") or "INFO").upper(),
            **overrides,
        )

    def cookie_args(self) -> List[str]:
        """Return ``--cookies <path>`` when the cookie file exists right now."""
        if self.cookie_path.is_file():
            return ["--cookies", str(self.cookie_path)]
        return []


def locate(settings: Settings) -> Settings:
    """Verify the extractor binary and prepare the storage directory.

    A missing extractor is fatal: the service has no useful degraded mode.
    """
    if not settings.extractor_path.is_file():
        raise ExtractorNotFound(f"yt-dlp binary not found at: {settings.extractor_path}")
    logger.info("yt-dlp binary is ready from path: %s", settings.extractor_path)

    settings.storage_dir.mkdir(parents=True, exist_ok=True)
    if settings.cookie_path.is_file():
        logger.info("Using cookie file: %s", settings.cookie_path)
    return settings


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
