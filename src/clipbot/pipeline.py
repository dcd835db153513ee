from __future__ import annotations

import random
from collections.abc import Sequence
from pathlib import Path

import anyio

from .logging import get_logger
from .model import (
    AttachmentRef,
    MergeReady,
    MergeState,
    Session,
    TrimReady,
    TrimState,
)
from .scratch import DownloadError, ScratchSpace
from .sessions import SessionRegistry
from .transcode import SAMPLE_SECONDS, TranscodeError, Transcoder, choose_sample_offset
from .transport import MediaType, MessageRef, Transport

logger = get_logger(__name__)

DEFAULT_MAX_CONCURRENT_JOBS = 4


class JobPipeline:
    """Runs completed sessions: download, transform, deliver, clean up.

    Every path a job creates is released before the job returns, on success
    and on every failure. Trim and merge sessions are removed when their
    job ends, whatever the outcome.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        scratch: ScratchSpace,
        transcoder: Transcoder,
        sessions: SessionRegistry,
        limiter: anyio.CapacityLimiter | None = None,
        rng: random.Random | None = None,
        sample_seconds: int = SAMPLE_SECONDS,
    ) -> None:
        self._transport = transport
        self._scratch = scratch
        self._transcoder = transcoder
        self._sessions = sessions
        self._limiter = limiter or anyio.CapacityLimiter(DEFAULT_MAX_CONCURRENT_JOBS)
        self._rng = rng or random.Random()
        self._sample_seconds = sample_seconds

    async def _say(self, chat_id: int, text: str) -> MessageRef | None:
        return await self._transport.send(chat_id=chat_id, text=text)

    async def _edit(self, ref: MessageRef | None, text: str) -> None:
        if ref is not None:
            await self._transport.edit(ref=ref, text=text)

    async def _deliver(
        self, chat_id: int, media: MediaType, path: Path, caption: str
    ) -> bool:
        try:
            await self._transport.send_media(
                chat_id=chat_id, media=media, path=path, caption=caption
            )
        except Exception as exc:
            logger.warning(
                "pipeline.deliver.failed",
                chat_id=chat_id,
                media=media,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            await self._say(chat_id, f"Upload failed: {exc}")
            return False
        return True

    async def run_trim(
        self, *, chat_id: int, user_id: int, session: Session[TrimState]
    ) -> None:
        state = session.state
        if not isinstance(state, TrimReady):
            raise ValueError(f"trim session is not ready: {state!r}")
        async with self._limiter:
            try:
                await self._trim(chat_id, user_id, state)
            finally:
                await self._sessions.trim.delete(user_id, session=session)

    async def _trim(self, chat_id: int, user_id: int, state: TrimReady) -> None:
        logger.info("pipeline.trim.start", start=state.start, end=state.end)
        status = await self._say(chat_id, "Downloading audio...")
        source: Path | None = None
        output: Path | None = None
        try:
            try:
                source = await self._scratch.acquire(state.source)
            except DownloadError as exc:
                await self._say(chat_id, f"Download error: {exc}")
                return
            await self._say(chat_id, "Audio downloaded. Trimming...")
            output = self._scratch.new_path(f"trimmed_{user_id}_", source.name)
            try:
                await self._transcoder.trim(source, state.start, state.end, output)
            except TranscodeError as exc:
                await self._say(chat_id, f"ffmpeg error: {exc}")
                return
            await self._say(chat_id, "Trimming completed. Uploading...")
            if await self._deliver(chat_id, "audio", output, "Trimmed audio"):
                await self._say(chat_id, "Trimmed audio uploaded!")
            await self._edit(status, "Done")
            logger.info("pipeline.trim.done")
        finally:
            self._scratch.release(source, output)

    async def run_merge(
        self, *, chat_id: int, user_id: int, session: Session[MergeState]
    ) -> None:
        state = session.state
        if not isinstance(state, MergeReady):
            raise ValueError(f"merge session is not ready: {state!r}")
        async with self._limiter:
            try:
                await self._merge(chat_id, user_id, state)
            finally:
                await self._sessions.merge.delete(user_id, session=session)

    async def _acquire_all(
        self, chat_id: int, refs: Sequence[AttachmentRef], acquired: list[Path]
    ) -> bool:
        total = len(refs)
        for index, ref in enumerate(refs, start=1):
            try:
                path = await self._scratch.acquire(ref)
            except DownloadError as exc:
                logger.info("pipeline.download.failed", index=index, error=str(exc))
                await self._say(chat_id, f"Error downloading file {index}: {exc}")
                return False
            acquired.append(path)
            await self._say(chat_id, f"Downloaded {index}/{total}")
        return True

    async def _merge(self, chat_id: int, user_id: int, state: MergeReady) -> None:
        logger.info("pipeline.merge.start", files=state.expected)
        status = await self._say(chat_id, "Starting audio merge...")
        inputs: list[Path] = []
        list_path: Path | None = None
        output: Path | None = None
        try:
            if not await self._acquire_all(chat_id, state.received, inputs):
                return
            list_path = self._scratch.new_path(f"concat_{user_id}_", "list.txt")
            output = self._scratch.new_path(f"merged_{user_id}_", "audio.mp3")
            try:
                strategy = await self._transcoder.merge(
                    inputs, output, list_path=list_path
                )
            except TranscodeError as exc:
                await self._say(chat_id, f"ffmpeg failed: {exc}")
                return
            if await self._deliver(chat_id, "audio", output, "Merged audio"):
                await self._say(chat_id, "Merged audio uploaded!")
            await self._edit(status, "Merging completed.")
            logger.info("pipeline.merge.done", strategy=strategy)
        finally:
            self._scratch.release(*inputs, list_path, output)

    async def run_sample(self, *, chat_id: int, attachment: AttachmentRef) -> None:
        async with self._limiter:
            await self._sample(chat_id, attachment)

    async def _sample(self, chat_id: int, attachment: AttachmentRef) -> None:
        status = await self._say(chat_id, "Downloading video...")
        source: Path | None = None
        output: Path | None = None
        try:
            try:
                source = await self._scratch.acquire(attachment)
            except DownloadError as exc:
                await self._say(chat_id, f"Download error: {exc}")
                return
            await self._say(chat_id, "Video downloaded. Trimming...")
            offset = choose_sample_offset(
                attachment.duration, rng=self._rng, seconds=self._sample_seconds
            )
            logger.info(
                "pipeline.sample.start",
                duration=attachment.duration,
                offset=round(offset, 2),
            )
            output = self._scratch.new_path("sample_", source.name)
            try:
                await self._transcoder.sample(
                    source, offset, output, seconds=self._sample_seconds
                )
            except TranscodeError as exc:
                await self._say(chat_id, f"ffmpeg error: {exc}")
                return
            await self._say(chat_id, "Trimming completed. Uploading...")
            caption = f"Trimmed video ({self._sample_seconds}s)"
            delivered = await self._deliver(chat_id, "video", output, caption)
            await self._edit(
                status, "Trimmed video uploaded!" if delivered else "Upload failed."
            )
        finally:
            self._scratch.release(source, output)
