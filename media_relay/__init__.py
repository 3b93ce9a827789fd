"""media-relay: resolve media URLs with yt-dlp and stream downloads while keeping a copy."""

__version__ = "1.0.0"
