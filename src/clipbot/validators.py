from __future__ import annotations

import mimetypes
from datetime import datetime
from enum import Enum

TIMESTAMP_FORMAT = "%H:%M:%S"
GENERIC_MIME_TYPES = frozenset({"", "application/octet-stream", "binary/octet-stream"})


class MediaKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"
    OTHER = "other"


def is_valid_timestamp(value: str) -> bool:
    """Accept a 24-hour ``HH:MM:SS`` time of day."""
    if not value:
        return False
    try:
        datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError:
        return False
    return True


def is_audio_mime(mime_type: str | None) -> bool:
    mime = (mime_type or "").lower()
    return mime.startswith("audio/") or "mpeg" in mime


def is_video_mime(mime_type: str | None) -> bool:
    mime = (mime_type or "").lower()
    return mime.startswith("video/") or "mp4" in mime


def classify_mime(mime_type: str | None, file_name: str | None = None) -> MediaKind:
    """Classify a generic file attachment by its declared type.

    When the declared type is missing or only says "bytes", the type guessed
    from the file name is used instead. Audio is checked first, so
    ``video/mpeg`` counts as audio.
    """
    mime = (mime_type or "").strip().lower()
    if mime in GENERIC_MIME_TYPES and file_name:
        guessed, _ = mimetypes.guess_type(file_name, strict=False)
        mime = (guessed or mime).lower()
    if is_audio_mime(mime):
        return MediaKind.AUDIO
    if is_video_mime(mime):
        return MediaKind.VIDEO
    return MediaKind.OTHER
