from .types import (
    TelegramCallbackQuery,
    TelegramIncomingMessage,
    TelegramIncomingUpdate,
    parse_incoming_update,
)

__all__ = [
    "TelegramCallbackQuery",
    "TelegramIncomingMessage",
    "TelegramIncomingUpdate",
    "parse_incoming_update",
]
