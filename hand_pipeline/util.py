import math
import re
from typing import Optional
from urllib.parse import urlparse, unquote
from pathlib import PurePosixPath

from .errors import ValidationError


SUPPORTED_LOCATOR_SCHEMES = ("gs", "s3", "http", "https")

YOUTUBE_URL_PATTERNS = [
    re.compile(r'^https?://(?:www\.|m\.)?youtube\.com/watch\?(?:.*&)?v=([a-zA-Z0-9_-]{11})'),
    re.compile(r'^https?://youtu\.be/([a-zA-Z0-9_-]{11})'),
    re.compile(r'^https?://(?:www\.)?youtube\.com/embed/([a-zA-Z0-9_-]{11})'),
]


def extract_youtube_video_id(url: str) -> Optional[str]:
    """Extract the 11-character video id from a YouTube URL"""
    for pattern in YOUTUBE_URL_PATTERNS:
        match = pattern.match(url)
        if match:
            return match.group(1)
    return None


def is_youtube_url(url: str) -> bool:
    return extract_youtube_video_id(url) is not None


def normalize_video_locator(locator: Optional[str]) -> str:
    """
    Validate a video locator and return its canonical form.

    Object-storage URIs (gs://, s3://) and http(s) URLs are accepted.
    YouTube URLs are rewritten to https://www.youtube.com/watch?v=<id>.
    """
    if locator is None or not str(locator).strip():
        raise ValidationError("Video locator is required")

    locator = str(locator).strip()
    parsed = urlparse(locator)

    if parsed.scheme not in SUPPORTED_LOCATOR_SCHEMES:
        raise ValidationError(
            f"Unsupported video locator scheme '{parsed.scheme}'. "
            f"Allowed: {', '.join(SUPPORTED_LOCATOR_SCHEMES)}"
        )

    if not parsed.netloc:
        raise ValidationError(f"Invalid video locator: {locator}")

    if parsed.scheme in ("gs", "s3") and parsed.path in ("", "/"):
        raise ValidationError(f"Object storage locator has no object path: {locator}")

    video_id = extract_youtube_video_id(locator)
    if video_id:
        return f"https://www.youtube.com/watch?v={video_id}"

    return locator


def derive_stream_name(locator: str) -> str:
    """Human-readable stream name for a stream created from a bare locator"""
    if is_youtube_url(locator):
        suffix = "..." if len(locator) > 50 else ""
        return f"YouTube: {locator[:50]}{suffix}"

    name = PurePosixPath(unquote(urlparse(locator).path)).name
    return name or locator


def clamp_progress(value) -> int:
    """Clamp a reported progress value to an integer percentage in [0, 100]"""
    try:
        progress = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(progress):
        return 0
    return int(round(max(0.0, min(100.0, progress))))
