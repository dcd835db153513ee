from __future__ import annotations

from collections.abc import Container
from dataclasses import dataclass, field
from typing import Any, Literal

from ..model import AttachmentKind, AttachmentRef


@dataclass(frozen=True, slots=True)
class TelegramIncomingMessage:
    transport: Literal["telegram"]
    chat_id: int
    message_id: int
    text: str
    sender_id: int | None = None
    chat_type: str | None = None
    attachment: AttachmentRef | None = None
    raw: dict[str, Any] | None = field(default=None, compare=False)


@dataclass(frozen=True, slots=True)
class TelegramCallbackQuery:
    transport: Literal["telegram"]
    chat_id: int
    message_id: int
    callback_query_id: str
    data: str | None
    sender_id: int | None = None
    raw: dict[str, Any] | None = field(default=None, compare=False)


TelegramIncomingUpdate = TelegramIncomingMessage | TelegramCallbackQuery

_ATTACHMENT_FIELDS: tuple[AttachmentKind, ...] = (
    "audio",
    "voice",
    "video",
    "document",
)


def _opt_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def parse_attachment(msg: dict[str, Any]) -> AttachmentRef | None:
    for kind in _ATTACHMENT_FIELDS:
        payload = msg.get(kind)
        if not isinstance(payload, dict):
            continue
        file_id = payload.get("file_id")
        if not isinstance(file_id, str) or not file_id:
            continue
        return AttachmentRef(
            file_id=file_id,
            kind=kind,
            file_name=_opt_str(payload.get("file_name")),
            mime_type=_opt_str(payload.get("mime_type")),
            duration=_opt_int(payload.get("duration")),
            file_size=_opt_int(payload.get("file_size")),
        )
    return None


def _sender_id(payload: dict[str, Any]) -> int | None:
    sender = payload.get("from")
    if not isinstance(sender, dict):
        return None
    return _opt_int(sender.get("id"))


def _parse_callback(
    query: dict[str, Any], *, chat_ids: Container[int] | None
) -> TelegramCallbackQuery | None:
    msg = query.get("message")
    if not isinstance(msg, dict):
        return None
    chat = msg.get("chat")
    chat_id = _opt_int(chat.get("id")) if isinstance(chat, dict) else None
    message_id = _opt_int(msg.get("message_id"))
    query_id = query.get("id")
    if chat_id is None or message_id is None or not isinstance(query_id, str):
        return None
    if chat_ids is not None and chat_id not in chat_ids:
        return None
    data = query.get("data")
    return TelegramCallbackQuery(
        transport="telegram",
        chat_id=chat_id,
        message_id=message_id,
        callback_query_id=query_id,
        data=data if isinstance(data, str) else None,
        sender_id=_sender_id(query),
        raw=query,
    )


def parse_incoming_update(
    update: dict[str, Any], *, chat_ids: Container[int] | None = None
) -> TelegramIncomingUpdate | None:
    """Map a raw Bot API update onto the bot's inbound types.

    Updates from chats outside ``chat_ids`` (when given) and updates that
    are neither messages nor callback queries are dropped.
    """
    query = update.get("callback_query")
    if isinstance(query, dict):
        return _parse_callback(query, chat_ids=chat_ids)
    msg = update.get("message")
    if not isinstance(msg, dict):
        return None
    chat = msg.get("chat")
    if not isinstance(chat, dict):
        return None
    chat_id = _opt_int(chat.get("id"))
    message_id = _opt_int(msg.get("message_id"))
    if chat_id is None or message_id is None:
        return None
    if chat_ids is not None and chat_id not in chat_ids:
        return None
    text = msg.get("text")
    if not isinstance(text, str):
        caption = msg.get("caption")
        text = caption if isinstance(caption, str) else ""
    attachment = parse_attachment(msg)
    return TelegramIncomingMessage(
        transport="telegram",
        chat_id=chat_id,
        message_id=message_id,
        text=text,
        sender_id=_sender_id(msg),
        chat_type=_opt_str(chat.get("type")),
        attachment=attachment,
        raw=msg,
    )
