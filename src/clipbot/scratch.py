from __future__ import annotations

import os
import time
import uuid
from pathlib import Path
from typing import Protocol

from .logging import get_logger
from .model import AttachmentRef

logger = get_logger(__name__)


class DownloadError(RuntimeError):
    pass


class Downloader(Protocol):
    async def download(self, file_id: str, dest: Path) -> None:
        """Stream the remote file into ``dest``."""
        ...


def sanitize_filename(name: str) -> str:
    return name.replace("/", "-").replace("\\", "-")


def default_filename(ref: AttachmentRef) -> str:
    stamp = time.time_ns()
    if ref.kind == "voice":
        return f"voice_{stamp}.ogg"
    if ref.kind == "video":
        return ref.file_name or f"video_{stamp}.mp4"
    if ref.file_name:
        return ref.file_name
    if ref.kind == "audio":
        return f"audio_{stamp}.mp3"
    return f"doc_{stamp}"


class ScratchSpace:
    """Local scratch storage for one process.

    Every path handed out is unique. Callers own what they acquire and
    hand it back through :meth:`release`.
    """

    def __init__(self, root: Path, downloader: Downloader) -> None:
        self._root = root
        self._downloader = downloader

    def new_path(self, prefix: str, name: str = "") -> Path:
        self._root.mkdir(parents=True, exist_ok=True)
        unique = f"{time.time_ns()}_{uuid.uuid4().hex[:8]}"
        suffix = f"_{sanitize_filename(name)}" if name else ""
        return self._root / f"{prefix}{unique}{suffix}"

    async def acquire(self, ref: AttachmentRef) -> Path:
        if not ref.file_id:
            raise DownloadError("no file id found in message")
        dest = self.new_path("", default_filename(ref))
        try:
            await self._downloader.download(ref.file_id, dest)
        except BaseException as exc:
            self.release(dest)
            if isinstance(exc, Exception) and not isinstance(exc, DownloadError):
                raise DownloadError(str(exc) or exc.__class__.__name__) from exc
            raise
        logger.debug("scratch.acquired", path=str(dest), file_id=ref.file_id)
        return dest

    def release(self, *paths: Path | None) -> None:
        for path in paths:
            if path is None:
                continue
            try:
                os.remove(path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning(
                    "scratch.release.failed",
                    path=str(path),
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
