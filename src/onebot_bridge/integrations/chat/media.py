"""Platform-agnostic media helpers."""

from __future__ import annotations

from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"}
AUDIO_EXTS = {".aac", ".amr", ".flac", ".m4a", ".mp3", ".ogg", ".opus", ".silk", ".wav"}
VIDEO_EXTS = {".mp4", ".mov", ".mkv", ".webm", ".avi"}


def _basename_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    parsed = urlparse(url)
    path = parsed.path if parsed.scheme else url
    name = Path(unquote(path)).name
    return name or None


def _suffix(name: Optional[str]) -> str:
    if not name:
        return ""
    return Path(name).suffix.lower()


def media_kind_for(url_or_path: str) -> str:
    """Classify by extension: ``image``, ``audio``, ``video`` or ``file``."""

    suffix = _suffix(_basename_from_url(url_or_path))
    if suffix in IMAGE_EXTS:
        return "image"
    if suffix in AUDIO_EXTS:
        return "audio"
    if suffix in VIDEO_EXTS:
        return "video"
    return "file"


def file_name_for(url_or_path: str, *, default: str = "file") -> str:
    return _basename_from_url(url_or_path) or default
