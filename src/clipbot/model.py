"""Session state for the trim and merge conversations.

Each flow is a small tagged state machine. Transition helpers return the
next state or raise :class:`InputError` with a message meant for the user;
a rejected input never changes the stored state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, Literal, TypeVar

from .validators import is_valid_timestamp

AttachmentKind = Literal["audio", "voice", "document", "video"]


class InputError(ValueError):
    """User input that was rejected; the message is sent back verbatim."""


@dataclass(frozen=True, slots=True)
class AttachmentRef:
    file_id: str
    kind: AttachmentKind
    file_name: str | None = None
    mime_type: str | None = None
    duration: int | None = None
    file_size: int | None = None


# trim flow: file -> start -> end


@dataclass(frozen=True, slots=True)
class TrimAwaitingFile:
    pass


@dataclass(frozen=True, slots=True)
class TrimAwaitingStart:
    source: AttachmentRef


@dataclass(frozen=True, slots=True)
class TrimAwaitingEnd:
    source: AttachmentRef
    start: str


@dataclass(frozen=True, slots=True)
class TrimReady:
    source: AttachmentRef
    start: str
    end: str


TrimState = TrimAwaitingFile | TrimAwaitingStart | TrimAwaitingEnd | TrimReady


# merge flow: count -> files


@dataclass(frozen=True, slots=True)
class MergeAwaitingCount:
    pass


@dataclass(frozen=True, slots=True)
class MergeAwaitingFiles:
    expected: int
    received: tuple[AttachmentRef, ...] = ()


@dataclass(frozen=True, slots=True)
class MergeReady:
    expected: int
    received: tuple[AttachmentRef, ...]


MergeState = MergeAwaitingCount | MergeAwaitingFiles | MergeReady

StateT = TypeVar("StateT")


@dataclass(slots=True, eq=False)
class Session(Generic[StateT]):
    state: StateT
    created_at: float = field(default=0.0)


def trim_accept_file(state: TrimState, ref: AttachmentRef) -> TrimState:
    if isinstance(state, TrimAwaitingFile):
        return TrimAwaitingStart(source=ref)
    if isinstance(state, TrimAwaitingStart):
        raise InputError(
            "A file is already queued for trimming. "
            "Please send the start timestamp (HH:MM:SS) for trimming."
        )
    if isinstance(state, TrimAwaitingEnd):
        raise InputError(
            "A file is already queued for trimming. "
            "Now send the end timestamp (HH:MM:SS) for trimming."
        )
    raise InputError("Trimming is already in progress.")


def trim_accept_timestamp(state: TrimState, text: str) -> TrimState:
    value = text.strip()
    if isinstance(state, TrimAwaitingStart):
        if not is_valid_timestamp(value):
            raise InputError(
                "Invalid timestamp format. Please send start time as HH:MM:SS"
            )
        return TrimAwaitingEnd(source=state.source, start=value)
    if isinstance(state, TrimAwaitingEnd):
        if not is_valid_timestamp(value):
            raise InputError(
                "Invalid timestamp format. Please send end time as HH:MM:SS"
            )
        return TrimReady(source=state.source, start=state.start, end=value)
    if isinstance(state, TrimAwaitingFile):
        raise InputError("Send an audio file to trim.")
    raise InputError("Trimming is already in progress.")


def trim_wants_timestamp(state: TrimState) -> bool:
    return isinstance(state, (TrimAwaitingStart, TrimAwaitingEnd))


def parse_merge_count(text: str) -> int:
    value = text.strip()
    if not value:
        raise InputError("Please send a number of files to merge.")
    # int() also takes "1_0" and non-ASCII digits
    digits = value[1:] if value[0] in "+-" else value
    if not digits.isascii() or not digits.isdigit():
        raise InputError("Invalid number. Send a positive integer.")
    count = int(value)
    if count <= 0:
        raise InputError("Invalid number. Send a positive integer.")
    return count


def merge_accept_count(state: MergeState, text: str) -> MergeState:
    if not isinstance(state, MergeAwaitingCount):
        raise InputError("The number of files is already set.")
    return MergeAwaitingFiles(expected=parse_merge_count(text))


def merge_accept_file(state: MergeState, ref: AttachmentRef) -> MergeState:
    if isinstance(state, MergeAwaitingCount):
        raise InputError(
            "How many audio files would you like to merge? Send a number (e.g. 3)."
        )
    if isinstance(state, MergeReady):
        raise InputError("Merging is already in progress.")
    received = (*state.received, ref)
    if len(received) == state.expected:
        return MergeReady(expected=state.expected, received=received)
    return MergeAwaitingFiles(expected=state.expected, received=received)


def merge_progress(state: MergeState) -> tuple[int, int]:
    if isinstance(state, MergeAwaitingCount):
        return 0, 0
    return len(state.received), state.expected
