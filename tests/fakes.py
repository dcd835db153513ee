from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from clipbot.transcode import ProcessResult
from clipbot.transport import InlineButton, MediaType, MessageRef


@dataclass
class SentMedia:
    chat_id: int
    media: MediaType
    path: Path
    caption: str | None
    existed: bool


@dataclass
class FakeTransport:
    sent: list[tuple[int, str]] = field(default_factory=list)
    menus: list[list[list[InlineButton]]] = field(default_factory=list)
    edits: list[tuple[MessageRef, str]] = field(default_factory=list)
    media: list[SentMedia] = field(default_factory=list)
    answers: list[tuple[str, str | None]] = field(default_factory=list)
    fail_media: bool = False
    closed: bool = False
    _next_id: int = 1

    async def send(
        self,
        *,
        chat_id: int,
        text: str,
        buttons: list[list[InlineButton]] | None = None,
    ) -> MessageRef | None:
        self.sent.append((chat_id, text))
        if buttons is not None:
            self.menus.append(buttons)
        ref = MessageRef(channel_id=chat_id, message_id=self._next_id)
        self._next_id += 1
        return ref

    async def edit(self, *, ref: MessageRef, text: str) -> MessageRef | None:
        self.edits.append((ref, text))
        return ref

    async def send_media(
        self,
        *,
        chat_id: int,
        media: MediaType,
        path: Path,
        caption: str | None = None,
    ) -> MessageRef:
        self.media.append(
            SentMedia(chat_id, media, path, caption, existed=path.exists())
        )
        if self.fail_media:
            raise RuntimeError("upload refused")
        return MessageRef(channel_id=chat_id, message_id=999)

    async def answer_callback(
        self, *, callback_query_id: str, text: str | None = None
    ) -> bool:
        self.answers.append((callback_query_id, text))
        return True

    async def close(self) -> None:
        self.closed = True

    def texts(self) -> list[str]:
        return [text for _, text in self.sent]


@dataclass
class FakeDownloader:
    payloads: dict[str, bytes] = field(default_factory=dict)
    failures: set[str] = field(default_factory=set)
    downloaded: list[Path] = field(default_factory=list)

    async def download(self, file_id: str, dest: Path) -> None:
        if file_id in self.failures:
            dest.write_bytes(b"partial")
            raise OSError(f"connection reset while fetching {file_id}")
        dest.write_bytes(self.payloads.get(file_id, file_id.encode()))
        self.downloaded.append(dest)


@dataclass
class FakeRunner:
    """Records ffmpeg invocations; writes the output path on success."""

    returncodes: list[int] = field(default_factory=list)
    output: str = "ffmpeg diagnostics"
    calls: list[list[str]] = field(default_factory=list)

    async def __call__(self, command: Sequence[str]) -> ProcessResult:
        self.calls.append(list(command))
        code = self.returncodes.pop(0) if self.returncodes else 0
        if code == 0:
            Path(command[-1]).write_bytes(b"media")
        return ProcessResult(returncode=code, output=self.output)
