"""Thin async wrapper around the ffmpeg command line.

Nothing here looks inside media files: a job either exits 0 or fails with
the tool's combined stdout/stderr as its diagnostic.
"""

from __future__ import annotations

import random
import subprocess
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import anyio

from .logging import get_logger

logger = get_logger(__name__)

SAMPLE_SECONDS = 15
MERGE_AUDIO_CODEC = "libmp3lame"

MergeStrategy = Literal["concat", "reencode"]


class TranscodeError(RuntimeError):
    def __init__(self, output: str, *, returncode: int | None = None) -> None:
        self.output = output
        self.returncode = returncode
        status = (
            f"exit status {returncode}" if returncode is not None else "not started"
        )
        super().__init__(f"{status}\n{output}" if output else status)


@dataclass(frozen=True, slots=True)
class ProcessResult:
    returncode: int
    output: str


Runner = Callable[[Sequence[str]], Awaitable[ProcessResult]]


async def run_command(command: Sequence[str]) -> ProcessResult:
    try:
        completed = await anyio.run_process(
            list(command),
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except OSError as exc:
        raise TranscodeError(f"failed to start {command[0]}: {exc}") from exc
    output = (completed.stdout or b"").decode("utf-8", errors="replace")
    return ProcessResult(returncode=completed.returncode, output=output)


def escape_concat_path(path: str) -> str:
    # concat list entries are single-quoted; close, escape, reopen
    return path.replace("'", "'\\''")


def concat_list_text(paths: Sequence[Path]) -> str:
    return "".join(f"file '{escape_concat_path(str(path))}'\n" for path in paths)


async def write_concat_list(list_path: Path, paths: Sequence[Path]) -> None:
    try:
        await anyio.Path(list_path).write_text(
            concat_list_text(paths), encoding="utf-8"
        )
    except OSError as exc:
        raise TranscodeError(f"failed to write concat list: {exc}") from exc


def trim_args(source: Path, start: str, end: str, output: Path) -> list[str]:
    return [
        "-y",
        "-i",
        str(source),
        "-ss",
        start,
        "-to",
        end,
        "-c",
        "copy",
        str(output),
    ]


def sample_args(
    source: Path, offset: str, output: Path, *, seconds: int = SAMPLE_SECONDS
) -> list[str]:
    return [
        "-y",
        "-ss",
        offset,
        "-i",
        str(source),
        "-t",
        str(seconds),
        "-c",
        "copy",
        str(output),
    ]


def concat_copy_args(list_path: Path, output: Path) -> list[str]:
    return [
        "-y",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(list_path),
        "-c",
        "copy",
        str(output),
    ]


def concat_reencode_args(
    inputs: Sequence[Path], output: Path, *, codec: str = MERGE_AUDIO_CODEC
) -> list[str]:
    args = ["-y"]
    for path in inputs:
        args.extend(["-i", str(path)])
    args.extend(
        [
            "-filter_complex",
            f"concat=n={len(inputs)}:v=0:a=1",
            "-c:a",
            codec,
            str(output),
        ]
    )
    return args


def choose_sample_offset(
    duration: int | None,
    *,
    rng: random.Random | None = None,
    seconds: int = SAMPLE_SECONDS,
) -> float:
    if duration is None or duration <= seconds:
        return 0.0
    return (rng or random).random() * (duration - seconds)


def format_offset(offset: float) -> str:
    return f"{offset:.2f}"


class Transcoder:
    def __init__(self, ffmpeg: str = "ffmpeg", *, runner: Runner = run_command):
        self._ffmpeg = ffmpeg
        self._runner = runner

    @property
    def ffmpeg(self) -> str:
        return self._ffmpeg

    async def run(self, args: Sequence[str]) -> None:
        command = [self._ffmpeg, *args]
        logger.debug("transcode.run", command=command)
        result = await self._runner(command)
        if result.returncode != 0:
            logger.info(
                "transcode.failed",
                returncode=result.returncode,
                output_tail=result.output[-500:],
            )
            raise TranscodeError(result.output, returncode=result.returncode)

    async def trim(self, source: Path, start: str, end: str, output: Path) -> None:
        await self.run(trim_args(source, start, end, output))

    async def sample(
        self,
        source: Path,
        offset: float,
        output: Path,
        *,
        seconds: int = SAMPLE_SECONDS,
    ) -> None:
        await self.run(
            sample_args(source, format_offset(offset), output, seconds=seconds)
        )

    async def merge(
        self, inputs: Sequence[Path], output: Path, *, list_path: Path
    ) -> MergeStrategy:
        """Concatenate ``inputs`` into ``output``.

        Stream copy through the concat demuxer is tried first; it needs every
        input to share codec and container. Otherwise all inputs are decoded
        and re-encoded to MP3, and only that failure is raised.
        """
        await write_concat_list(list_path, inputs)
        try:
            await self.run(concat_copy_args(list_path, output))
        except TranscodeError as exc:
            logger.info(
                "transcode.merge.fallback",
                inputs=len(inputs),
                returncode=exc.returncode,
            )
        else:
            return "concat"
        await self.run(concat_reencode_args(inputs, output))
        return "reencode"
