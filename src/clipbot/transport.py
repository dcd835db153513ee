from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

MediaType = Literal["audio", "video"]


@dataclass(frozen=True, slots=True)
class MessageRef:
    channel_id: int
    message_id: int
    raw: dict[str, Any] | None = field(default=None, compare=False, hash=False)


@dataclass(frozen=True, slots=True)
class InlineButton:
    text: str
    callback_data: str


class Transport(Protocol):
    """Outbound side of the chat.

    Text actions are best effort: failures are logged and reported as
    ``None``/``False``. :meth:`send_media` raises so the caller can tell the
    user that delivery failed.
    """

    async def send(
        self,
        *,
        chat_id: int,
        text: str,
        buttons: list[list[InlineButton]] | None = None,
    ) -> MessageRef | None: ...

    async def edit(self, *, ref: MessageRef, text: str) -> MessageRef | None: ...

    async def send_media(
        self,
        *,
        chat_id: int,
        media: MediaType,
        path: Path,
        caption: str | None = None,
    ) -> MessageRef: ...

    async def answer_callback(
        self, *, callback_query_id: str, text: str | None = None
    ) -> bool: ...

    async def close(self) -> None: ...
