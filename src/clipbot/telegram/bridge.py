from __future__ import annotations

import shutil
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any

import anyio

from ..config import BotSettings
from ..logging import bind_user_context, clear_context, get_logger
from ..model import (
    AttachmentRef,
    InputError,
    MergeAwaitingCount,
    MergeReady,
    MergeState,
    Session,
    TrimAwaitingEnd,
    TrimAwaitingFile,
    TrimReady,
    TrimState,
    merge_accept_count,
    merge_accept_file,
    merge_progress,
    trim_accept_file,
    trim_accept_timestamp,
    trim_wants_timestamp,
)
from ..pipeline import JobPipeline
from ..scheduler import UserScheduler
from ..scratch import ScratchSpace
from ..sessions import SessionRegistry, run_session_sweeper
from ..transcode import Transcoder
from ..transport import InlineButton, MediaType, MessageRef, Transport
from ..validators import MediaKind, classify_mime
from .client import BotClient, TelegramError, drain_backlog, poll_incoming
from .types import (
    TelegramCallbackQuery,
    TelegramIncomingMessage,
    TelegramIncomingUpdate,
)

logger = get_logger(__name__)

VIDEO_SAMPLE_CALLBACK = "video_sample_generator"
AUDIO_TRIMMER_CALLBACK = "audio_trimmer"
AUDIO_MERGER_CALLBACK = "audio_merger"

MENU_TEXT = "Please choose an option:"
MENU_BUTTONS = [
    [InlineButton("Video Sample Generator", VIDEO_SAMPLE_CALLBACK)],
    [InlineButton("Audio Trimmer", AUDIO_TRIMMER_CALLBACK)],
    [InlineButton("Audio Merger", AUDIO_MERGER_CALLBACK)],
]
BOT_COMMANDS = [
    {"command": "start", "description": "choose a tool"},
    {"command": "cancel", "description": "drop the current trim/merge"},
]

UNKNOWN_COMMAND_TEXT = "Unknown command. Use /start"
NO_SESSION_TEXT = "No active session. Start with /start"
FALLBACK_TEXT = (
    "Please use /start to choose an option, or send the requested files."
)

Spawn = Callable[[Callable[[], Awaitable[Any]]], None]


def _parse_slash_command(text: str) -> tuple[str | None, str]:
    stripped = text.lstrip()
    if not stripped.startswith("/"):
        return None, text
    first_line, _, tail = stripped.partition("\n")
    token, _, rest = first_line.partition(" ")
    command = token[1:]
    if not command:
        return None, text
    if "@" in command:
        command = command.split("@", 1)[0]
    args_text = f"{rest}\n{tail}" if rest and tail else rest or tail
    return command.lower(), args_text


def classify_attachment(ref: AttachmentRef | None) -> MediaKind:
    if ref is None:
        return MediaKind.OTHER
    if ref.kind in ("audio", "voice"):
        return MediaKind.AUDIO
    if ref.kind == "video":
        return MediaKind.VIDEO
    return classify_mime(ref.mime_type, ref.file_name)


def update_user_id(update: TelegramIncomingUpdate) -> int:
    # channel posts carry no sender; the chat stands in for the user
    return update.sender_id if update.sender_id is not None else update.chat_id


def _reply_markup(buttons: list[list[InlineButton]]) -> dict[str, Any]:
    return {
        "inline_keyboard": [
            [{"text": b.text, "callback_data": b.callback_data} for b in row]
            for row in buttons
        ]
    }


class TelegramTransport:
    def __init__(self, bot: BotClient) -> None:
        self._bot = bot

    async def close(self) -> None:
        await self._bot.close()

    async def send(
        self,
        *,
        chat_id: int,
        text: str,
        buttons: list[list[InlineButton]] | None = None,
    ) -> MessageRef | None:
        markup = _reply_markup(buttons) if buttons else None
        try:
            sent = await self._bot.send_message(chat_id, text, reply_markup=markup)
        except TelegramError as exc:
            logger.warning("transport.send.failed", chat_id=chat_id, error=str(exc))
            return None
        message_id = sent.get("message_id") if isinstance(sent, dict) else None
        if not isinstance(message_id, int):
            return None
        return MessageRef(channel_id=chat_id, message_id=message_id, raw=sent)

    async def edit(self, *, ref: MessageRef, text: str) -> MessageRef | None:
        try:
            edited = await self._bot.edit_message_text(
                ref.channel_id, ref.message_id, text
            )
        except TelegramError as exc:
            logger.warning(
                "transport.edit.failed",
                chat_id=ref.channel_id,
                message_id=ref.message_id,
                error=str(exc),
            )
            return None
        raw = edited if isinstance(edited, dict) else None
        return MessageRef(channel_id=ref.channel_id, message_id=ref.message_id, raw=raw)

    async def send_media(
        self,
        *,
        chat_id: int,
        media: MediaType,
        path: Path,
        caption: str | None = None,
    ) -> MessageRef:
        if media == "audio":
            sent = await self._bot.send_audio(chat_id, path, caption=caption)
        else:
            sent = await self._bot.send_video(chat_id, path, caption=caption)
        return MessageRef(
            channel_id=chat_id, message_id=int(sent.get("message_id", 0)), raw=sent
        )

    async def answer_callback(
        self, *, callback_query_id: str, text: str | None = None
    ) -> bool:
        try:
            return await self._bot.answer_callback_query(callback_query_id, text)
        except TelegramError as exc:
            logger.info("transport.answer_callback.failed", error=str(exc))
            return False


class Dispatcher:
    """Moves each user's trim and merge conversations forward.

    Handlers only touch sessions through :class:`SessionStore.update`, and
    completed sessions are handed to ``spawn`` so a running job never
    blocks the next event for the same user.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        sessions: SessionRegistry,
        pipeline: JobPipeline,
        spawn: Spawn,
    ) -> None:
        self._transport = transport
        self._sessions = sessions
        self._pipeline = pipeline
        self._spawn = spawn

    async def _say(self, chat_id: int, text: str) -> None:
        await self._transport.send(chat_id=chat_id, text=text)

    async def handle_update(self, update: TelegramIncomingUpdate) -> None:
        bind_user_context(user_id=update_user_id(update), chat_id=update.chat_id)
        try:
            if isinstance(update, TelegramCallbackQuery):
                await self.handle_callback(update)
            else:
                await self.handle_message(update)
        except Exception as exc:
            logger.exception(
                "dispatch.failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            await self._say(update.chat_id, f"error:\n{exc}")
        finally:
            clear_context()

    def _start_job(
        self, name: str, chat_id: int, job: Callable[[], Awaitable[None]]
    ) -> None:
        async def run() -> None:
            try:
                await job()
            except Exception as exc:
                logger.exception(
                    "pipeline.failed",
                    job=name,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                await self._say(chat_id, f"error:\n{exc}")

        logger.info("pipeline.spawned", job=name)
        self._spawn(run)

    async def handle_callback(self, query: TelegramCallbackQuery) -> None:
        user_id = update_user_id(query)
        ref = MessageRef(channel_id=query.chat_id, message_id=query.message_id)
        data = query.data
        if data == VIDEO_SAMPLE_CALLBACK:
            await self._transport.edit(
                ref=ref, text="Send a video file to generate a sample."
            )
        elif data == AUDIO_TRIMMER_CALLBACK:
            _, previous = await self._sessions.trim.create(user_id, TrimAwaitingFile())
            text = "Send an audio file to trim."
            if previous is not None:
                text = f"Previous trim session discarded.\n{text}"
            await self._transport.edit(ref=ref, text=text)
        elif data == AUDIO_MERGER_CALLBACK:
            _, previous = await self._sessions.merge.create(
                user_id, MergeAwaitingCount()
            )
            text = (
                "How many audio files would you like to merge? "
                "Send a number (e.g. 3)."
            )
            if previous is not None:
                text = f"Previous merge session discarded.\n{text}"
            await self._transport.edit(ref=ref, text=text)
        else:
            logger.info("callback.unknown", data=data)
            await self._transport.answer_callback(
                callback_query_id=query.callback_query_id, text="Unknown action"
            )
            return
        await self._transport.answer_callback(
            callback_query_id=query.callback_query_id
        )

    async def handle_message(self, msg: TelegramIncomingMessage) -> None:
        user_id = update_user_id(msg)
        chat_id = msg.chat_id
        attachment = msg.attachment
        # a caption is never a command; the file still counts
        if attachment is None:
            command, _ = _parse_slash_command(msg.text)
            if command is not None:
                await self._handle_command(command, chat_id, user_id)
                return
        kind = classify_attachment(attachment)
        if kind is MediaKind.VIDEO and attachment is not None:
            # video samples never touch session state
            self._start_job(
                "sample",
                chat_id,
                partial(
                    self._pipeline.run_sample, chat_id=chat_id, attachment=attachment
                ),
            )
            return
        if kind is MediaKind.AUDIO and attachment is not None:
            await self._handle_audio(attachment, chat_id, user_id)
            return
        if await self._handle_merge_count(msg, user_id):
            return
        if await self._handle_trim_timestamp(msg, user_id):
            return
        await self._say(chat_id, FALLBACK_TEXT)

    async def _handle_command(self, command: str, chat_id: int, user_id: int) -> None:
        if command == "start":
            await self._transport.send(
                chat_id=chat_id, text=MENU_TEXT, buttons=MENU_BUTTONS
            )
        elif command == "cancel":
            dropped = await self._sessions.drop_user(user_id)
            await self._say(chat_id, "Cancelled." if dropped else "Nothing to cancel.")
        else:
            await self._say(chat_id, UNKNOWN_COMMAND_TEXT)

    async def _handle_merge_count(
        self, msg: TelegramIncomingMessage, user_id: int
    ) -> bool:
        def accept(session: Session[MergeState]) -> MergeState | None:
            if not isinstance(session.state, MergeAwaitingCount):
                return None
            session.state = merge_accept_count(session.state, msg.text)
            return session.state

        try:
            state = await self._sessions.merge.update(user_id, accept)
        except InputError as exc:
            await self._say(msg.chat_id, str(exc))
            return True
        if state is None:
            return False
        _, expected = merge_progress(state)
        await self._say(msg.chat_id, f"Please send {expected} audio files for merging.")
        return True

    async def _handle_trim_timestamp(
        self, msg: TelegramIncomingMessage, user_id: int
    ) -> bool:
        def accept(
            session: Session[TrimState],
        ) -> tuple[Session[TrimState], TrimState] | None:
            if not trim_wants_timestamp(session.state):
                return None
            session.state = trim_accept_timestamp(session.state, msg.text)
            return session, session.state

        try:
            result = await self._sessions.trim.update(user_id, accept)
        except InputError as exc:
            await self._say(msg.chat_id, str(exc))
            return True
        if result is None:
            return False
        session, state = result
        if isinstance(state, TrimAwaitingEnd):
            await self._say(
                msg.chat_id, "Now send the end timestamp (HH:MM:SS) for trimming."
            )
        elif isinstance(state, TrimReady):
            self._start_job(
                "trim",
                msg.chat_id,
                partial(
                    self._pipeline.run_trim,
                    chat_id=msg.chat_id,
                    user_id=user_id,
                    session=session,
                ),
            )
        return True

    async def _handle_audio(
        self, attachment: AttachmentRef, chat_id: int, user_id: int
    ) -> None:
        def add_to_merge(
            session: Session[MergeState],
        ) -> tuple[Session[MergeState], MergeState]:
            session.state = merge_accept_file(session.state, attachment)
            return session, session.state

        def add_to_trim(session: Session[TrimState]) -> TrimState:
            session.state = trim_accept_file(session.state, attachment)
            return session.state

        try:
            merged = await self._sessions.merge.update(user_id, add_to_merge)
            if merged is not None:
                session, state = merged
                count, expected = merge_progress(state)
                await self._say(chat_id, f"Received {count}/{expected}")
                if isinstance(state, MergeReady):
                    self._start_job(
                        "merge",
                        chat_id,
                        partial(
                            self._pipeline.run_merge,
                            chat_id=chat_id,
                            user_id=user_id,
                            session=session,
                        ),
                    )
                return
            trimmed = await self._sessions.trim.update(user_id, add_to_trim)
        except InputError as exc:
            await self._say(chat_id, str(exc))
            return
        if trimmed is None:
            await self._say(chat_id, NO_SESSION_TEXT)
            return
        await self._say(
            chat_id, "Please send the start timestamp (HH:MM:SS) for trimming."
        )


@dataclass(frozen=True)
class TelegramBridgeConfig:
    bot: BotClient
    settings: BotSettings


async def _set_command_menu(bot: BotClient) -> None:
    try:
        ok = await bot.set_my_commands(BOT_COMMANDS)
    except TelegramError as exc:
        logger.info("startup.command_menu.failed", error=str(exc))
        return
    if not ok:
        logger.info("startup.command_menu.rejected")
        return
    logger.info(
        "startup.command_menu.updated",
        commands=[cmd["command"] for cmd in BOT_COMMANDS],
    )


async def poll_updates(
    cfg: TelegramBridgeConfig,
) -> AsyncIterator[TelegramIncomingUpdate]:
    offset = await drain_backlog(cfg.bot)
    me = await cfg.bot.get_me()
    logger.info("startup.ready", username=me.get("username"))
    async for msg in poll_incoming(
        cfg.bot, offset=offset, chat_ids=cfg.settings.allowed_chat_ids
    ):
        yield msg


async def run_main_loop(
    cfg: TelegramBridgeConfig,
    poller: Callable[
        [TelegramBridgeConfig], AsyncIterator[TelegramIncomingUpdate]
    ] = poll_updates,
    *,
    transport: Transport | None = None,
    transcoder: Transcoder | None = None,
) -> None:
    settings = cfg.settings
    transport = transport or TelegramTransport(cfg.bot)
    transcoder = transcoder or Transcoder(settings.ffmpeg)
    if shutil.which(transcoder.ffmpeg) is None:
        logger.warning("startup.ffmpeg_missing", ffmpeg=transcoder.ffmpeg)
    sessions = SessionRegistry()
    scratch = ScratchSpace(settings.scratch_dir, cfg.bot)
    try:
        await _set_command_menu(cfg.bot)
        async with anyio.create_task_group() as tg:
            sweeper_scope = anyio.CancelScope()

            async def run_sweeper() -> None:
                with sweeper_scope:
                    await run_session_sweeper(
                        sessions,
                        interval_s=settings.sweep_interval_s,
                        max_age_s=settings.session_ttl_s,
                    )

            tg.start_soon(run_sweeper)
            pipeline = JobPipeline(
                transport=transport,
                scratch=scratch,
                transcoder=transcoder,
                sessions=sessions,
                limiter=anyio.CapacityLimiter(settings.max_concurrent_jobs),
                sample_seconds=settings.sample_seconds,
            )
            dispatcher = Dispatcher(
                transport=transport,
                sessions=sessions,
                pipeline=pipeline,
                spawn=tg.start_soon,
            )
            scheduler: UserScheduler[TelegramIncomingUpdate] = UserScheduler(
                task_group=tg, handler=dispatcher.handle_update
            )
            async for update in poller(cfg):
                scheduler.enqueue(update_user_id(update), update)
            # poller finished: let in-flight work end, stop the sweeper
            sweeper_scope.cancel()
    finally:
        await transport.close()
