from __future__ import annotations

from collections.abc import AsyncIterator, Container
from pathlib import Path
from typing import Any

import anyio
import httpx

from ..logging import get_logger
from .types import TelegramIncomingUpdate, parse_incoming_update

logger = get_logger(__name__)

API_BASE_URL = "https://api.telegram.org"
POLL_TIMEOUT_S = 50
POLL_RETRY_DELAY_S = 2.0
DOWNLOAD_CHUNK_BYTES = 64 * 1024


class TelegramError(RuntimeError):
    pass


class BotClient:
    """Async Bot API client.

    Every method raises :class:`TelegramError` on transport errors and on
    ``ok: false`` replies.
    """

    def __init__(
        self,
        token: str,
        *,
        timeout_s: float = 120,
        base_url: str = API_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        self._token = token
        self._base = f"{base_url}/bot{token}"
        self._file_base = f"{base_url}/file/bot{token}"
        self._client = http_client or httpx.AsyncClient(timeout=timeout_s)

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(
        self,
        method: str,
        params: dict[str, Any],
        *,
        files: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self._base}/{method}"
        try:
            if files is None:
                resp = await self._client.post(url, json=params)
            else:
                data = {key: str(value) for key, value in params.items()}
                resp = await self._client.post(url, data=data, files=files)
        except httpx.HTTPError as exc:
            # the URL carries the token; keep it out of the message
            raise TelegramError(
                f"Telegram {method} failed: {exc.__class__.__name__}"
            ) from exc
        try:
            payload = resp.json()
        except ValueError as exc:
            raise TelegramError(
                f"Telegram {method} returned HTTP {resp.status_code} "
                "with a non-JSON body"
            ) from exc
        if not isinstance(payload, dict) or not payload.get("ok"):
            description = (
                payload.get("description") if isinstance(payload, dict) else None
            )
            raise TelegramError(
                f"Telegram {method} error {resp.status_code}: {description or payload}"
            )
        return payload.get("result")

    async def get_me(self) -> dict[str, Any]:
        return await self._call("getMe", {})

    async def get_updates(
        self,
        offset: int | None,
        *,
        timeout_s: int = POLL_TIMEOUT_S,
        allowed_updates: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"timeout": timeout_s}
        if offset is not None:
            params["offset"] = offset
        if allowed_updates is not None:
            params["allowed_updates"] = allowed_updates
        return await self._call("getUpdates", params)

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_markup: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_markup is not None:
            params["reply_markup"] = reply_markup
        return await self._call("sendMessage", params)

    async def edit_message_text(
        self, chat_id: int, message_id: int, text: str
    ) -> dict[str, Any]:
        params = {"chat_id": chat_id, "message_id": message_id, "text": text}
        return await self._call("editMessageText", params)

    async def answer_callback_query(
        self, callback_query_id: str, text: str | None = None
    ) -> bool:
        params: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            params["text"] = text
        return bool(await self._call("answerCallbackQuery", params))

    async def set_my_commands(self, commands: list[dict[str, str]]) -> bool:
        return bool(await self._call("setMyCommands", {"commands": commands}))

    async def get_file(self, file_id: str) -> dict[str, Any]:
        return await self._call("getFile", {"file_id": file_id})

    async def download(self, file_id: str, dest: Path) -> None:
        """Stream a file into ``dest`` chunk by chunk."""
        info = await self.get_file(file_id)
        file_path = info.get("file_path") if isinstance(info, dict) else None
        if not isinstance(file_path, str) or not file_path:
            raise TelegramError("failed to fetch file metadata.")
        url = f"{self._file_base}/{file_path}"
        try:
            async with self._client.stream("GET", url) as resp:
                if resp.status_code != 200:
                    raise TelegramError(
                        f"file download failed with HTTP {resp.status_code}"
                    )
                async with await anyio.open_file(dest, "wb") as out:
                    async for chunk in resp.aiter_bytes(DOWNLOAD_CHUNK_BYTES):
                        await out.write(chunk)
        except httpx.HTTPError as exc:
            raise TelegramError(
                f"file download failed: {exc.__class__.__name__}"
            ) from exc

    async def _send_file(
        self,
        method: str,
        field: str,
        chat_id: int,
        path: Path,
        caption: str | None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"chat_id": chat_id}
        if caption:
            params["caption"] = caption
        content = await anyio.Path(path).read_bytes()
        return await self._call(method, params, files={field: (path.name, content)})

    async def send_audio(
        self, chat_id: int, path: Path, *, caption: str | None = None
    ) -> dict[str, Any]:
        return await self._send_file("sendAudio", "audio", chat_id, path, caption)

    async def send_video(
        self, chat_id: int, path: Path, *, caption: str | None = None
    ) -> dict[str, Any]:
        return await self._send_file("sendVideo", "video", chat_id, path, caption)


async def drain_backlog(bot: BotClient, offset: int | None = None) -> int | None:
    drained = 0
    while True:
        try:
            updates = await bot.get_updates(
                offset,
                timeout_s=0,
                allowed_updates=["message", "callback_query"],
            )
        except TelegramError as exc:
            logger.info("startup.backlog.failed", error=str(exc))
            return offset
        if not updates:
            if drained:
                logger.info("startup.backlog.drained", count=drained)
            return offset
        offset = updates[-1]["update_id"] + 1
        drained += len(updates)


async def poll_incoming(
    bot: BotClient,
    *,
    offset: int | None = None,
    chat_ids: Container[int] | None = None,
) -> AsyncIterator[TelegramIncomingUpdate]:
    while True:
        try:
            updates = await bot.get_updates(
                offset,
                allowed_updates=["message", "callback_query"],
            )
        except TelegramError as exc:
            logger.warning("poll.failed", error=str(exc))
            await anyio.sleep(POLL_RETRY_DELAY_S)
            continue
        for update in updates:
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                offset = update_id + 1
            msg = parse_incoming_update(update, chat_ids=chat_ids)
            if msg is not None:
                yield msg
