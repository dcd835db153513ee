from __future__ import annotations

from pathlib import Path

import pytest

from clipbot.model import AttachmentRef
from clipbot.scratch import DownloadError, ScratchSpace, sanitize_filename
from fakes import FakeDownloader


def test_sanitize_filename_strips_separators() -> None:
    assert sanitize_filename("../../etc/passwd") == "..-..-etc-passwd"
    assert sanitize_filename("a\\b.mp3") == "a-b.mp3"


def test_new_path_is_unique_and_inside_root(tmp_path: Path) -> None:
    scratch = ScratchSpace(tmp_path / "scratch", FakeDownloader())
    first = scratch.new_path("out_", "x/y.mp3")
    second = scratch.new_path("out_", "x/y.mp3")
    assert first != second
    assert first.parent == tmp_path / "scratch"
    assert first.name.startswith("out_")
    assert first.name.endswith("_x-y.mp3")


@pytest.mark.anyio
async def test_acquire_streams_into_scratch(tmp_path: Path) -> None:
    downloader = FakeDownloader(payloads={"f1": b"abc"})
    scratch = ScratchSpace(tmp_path, downloader)
    ref = AttachmentRef(file_id="f1", kind="audio", file_name="../song.mp3")

    path = await scratch.acquire(ref)

    assert path.parent == tmp_path
    assert path.name.endswith("_..-song.mp3")
    assert path.read_bytes() == b"abc"


@pytest.mark.anyio
async def test_acquire_names_voice_notes(tmp_path: Path) -> None:
    scratch = ScratchSpace(tmp_path, FakeDownloader())
    path = await scratch.acquire(AttachmentRef(file_id="v", kind="voice"))
    assert "_voice_" in path.name
    assert path.suffix == ".ogg"


@pytest.mark.anyio
async def test_acquire_failure_removes_partial_file(tmp_path: Path) -> None:
    downloader = FakeDownloader(failures={"bad"})
    scratch = ScratchSpace(tmp_path, downloader)

    with pytest.raises(DownloadError, match="connection reset"):
        await scratch.acquire(AttachmentRef(file_id="bad", kind="document"))

    assert list(tmp_path.iterdir()) == []


@pytest.mark.anyio
async def test_acquire_requires_file_id(tmp_path: Path) -> None:
    scratch = ScratchSpace(tmp_path, FakeDownloader())
    with pytest.raises(DownloadError, match="no file id"):
        await scratch.acquire(AttachmentRef(file_id="", kind="audio"))


def test_release_ignores_missing_and_none(tmp_path: Path) -> None:
    scratch = ScratchSpace(tmp_path, FakeDownloader())
    kept = tmp_path / "kept.bin"
    kept.write_bytes(b"x")
    gone = tmp_path / "gone.bin"

    scratch.release(kept, gone, None)
    scratch.release(kept)

    assert not kept.exists()
