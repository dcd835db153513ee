from __future__ import annotations

import random
from pathlib import Path

import pytest

from clipbot.model import (
    AttachmentRef,
    MergeAwaitingCount,
    MergeReady,
    TrimReady,
)
from clipbot.pipeline import JobPipeline
from clipbot.scratch import ScratchSpace
from clipbot.sessions import SessionRegistry
from clipbot.transcode import Transcoder
from fakes import FakeDownloader, FakeRunner, FakeTransport

pytestmark = pytest.mark.anyio

CHAT_ID = 10
USER_ID = 42


def _audio(file_id: str, name: str | None = None) -> AttachmentRef:
    return AttachmentRef(file_id=file_id, kind="audio", file_name=name)


class Harness:
    def __init__(
        self,
        tmp_path: Path,
        *,
        runner: FakeRunner | None = None,
        downloader: FakeDownloader | None = None,
    ) -> None:
        self.scratch_dir = tmp_path / "scratch"
        self.transport = FakeTransport()
        self.downloader = downloader or FakeDownloader()
        self.runner = runner or FakeRunner()
        self.sessions = SessionRegistry()
        self.pipeline = JobPipeline(
            transport=self.transport,
            scratch=ScratchSpace(self.scratch_dir, self.downloader),
            transcoder=Transcoder(runner=self.runner),
            sessions=self.sessions,
            rng=random.Random(3),
        )

    def leftovers(self) -> list[Path]:
        if not self.scratch_dir.exists():
            return []
        return list(self.scratch_dir.iterdir())


async def test_merge_primary_strategy_delivers_once(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    refs = (_audio("a", "one.mp3"), _audio("b", "two.mp3"))
    session, _ = await h.sessions.merge.create(
        USER_ID, MergeReady(expected=2, received=refs)
    )

    await h.pipeline.run_merge(chat_id=CHAT_ID, user_id=USER_ID, session=session)

    assert len(h.runner.calls) == 1
    assert "concat" in h.runner.calls[0]
    assert len(h.transport.media) == 1
    delivered = h.transport.media[0]
    assert delivered.media == "audio"
    assert delivered.caption == "Merged audio"
    assert delivered.existed
    assert "Downloaded 2/2" in h.transport.texts()
    assert "Merged audio uploaded!" in h.transport.texts()
    assert h.transport.edits[-1][1] == "Merging completed."
    assert h.leftovers() == []
    assert await h.sessions.merge.get(USER_ID) is None


async def test_merge_fallback_names_every_input(tmp_path: Path) -> None:
    h = Harness(tmp_path, runner=FakeRunner(returncodes=[1, 0]))
    refs = (_audio("a"), _audio("b"), _audio("c"))
    session, _ = await h.sessions.merge.create(
        USER_ID, MergeReady(expected=3, received=refs)
    )

    await h.pipeline.run_merge(chat_id=CHAT_ID, user_id=USER_ID, session=session)

    assert len(h.runner.calls) == 2
    fallback = h.runner.calls[1]
    assert fallback.count("-i") == 3
    assert "concat=n=3:v=0:a=1" in fallback
    assert fallback[fallback.index("-c:a") + 1] == "libmp3lame"
    assert len(h.transport.media) == 1
    assert h.leftovers() == []


async def test_merge_download_error_cleans_up(tmp_path: Path) -> None:
    h = Harness(tmp_path, downloader=FakeDownloader(failures={"b"}))
    refs = (_audio("a"), _audio("b"), _audio("c"))
    session, _ = await h.sessions.merge.create(
        USER_ID, MergeReady(expected=3, received=refs)
    )

    await h.pipeline.run_merge(chat_id=CHAT_ID, user_id=USER_ID, session=session)

    assert any(t.startswith("Error downloading file 2:") for t in h.transport.texts())
    assert h.runner.calls == []
    assert h.transport.media == []
    assert h.leftovers() == []
    assert await h.sessions.merge.get(USER_ID) is None


async def test_merge_total_failure_reports_diagnostics(tmp_path: Path) -> None:
    runner = FakeRunner(returncodes=[1, 1], output="Conversion failed!")
    h = Harness(tmp_path, runner=runner)
    session, _ = await h.sessions.merge.create(
        USER_ID, MergeReady(expected=1, received=(_audio("a"),))
    )

    await h.pipeline.run_merge(chat_id=CHAT_ID, user_id=USER_ID, session=session)

    failures = [t for t in h.transport.texts() if t.startswith("ffmpeg failed:")]
    assert len(failures) == 1
    assert "Conversion failed!" in failures[0]
    assert h.transport.media == []
    assert h.leftovers() == []


async def test_merge_keeps_newer_session(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    session, _ = await h.sessions.merge.create(
        USER_ID, MergeReady(expected=1, received=(_audio("a"),))
    )
    newer, _ = await h.sessions.merge.create(USER_ID, MergeAwaitingCount())

    await h.pipeline.run_merge(chat_id=CHAT_ID, user_id=USER_ID, session=session)

    assert await h.sessions.merge.get(USER_ID) is newer


async def test_trim_passes_literal_boundaries(tmp_path: Path) -> None:
    runner = FakeRunner(returncodes=[1], output="-to value smaller than -ss")
    h = Harness(tmp_path, runner=runner)
    state = TrimReady(source=_audio("a", "talk.mp3"), start="00:00:10", end="00:00:05")
    session, _ = await h.sessions.trim.create(USER_ID, state)

    await h.pipeline.run_trim(chat_id=CHAT_ID, user_id=USER_ID, session=session)

    command = runner.calls[0]
    assert command[command.index("-ss") + 1] == "00:00:10"
    assert command[command.index("-to") + 1] == "00:00:05"
    assert any(
        t.startswith("ffmpeg error:") and "-to value smaller than -ss" in t
        for t in h.transport.texts()
    )
    assert h.transport.media == []
    assert h.leftovers() == []
    assert await h.sessions.trim.get(USER_ID) is None


async def test_trim_success_delivers_audio(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    state = TrimReady(source=_audio("a", "talk.mp3"), start="00:00:01", end="00:00:09")
    session, _ = await h.sessions.trim.create(USER_ID, state)

    await h.pipeline.run_trim(chat_id=CHAT_ID, user_id=USER_ID, session=session)

    assert [m.caption for m in h.transport.media] == ["Trimmed audio"]
    assert h.transport.media[0].path.name.endswith("talk.mp3")
    assert h.transport.edits[-1][1] == "Done"
    assert h.leftovers() == []


async def test_delivery_failure_still_cleans_up(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    h.transport.fail_media = True
    state = TrimReady(source=_audio("a"), start="00:00:01", end="00:00:02")
    session, _ = await h.sessions.trim.create(USER_ID, state)

    await h.pipeline.run_trim(chat_id=CHAT_ID, user_id=USER_ID, session=session)

    assert "Upload failed: upload refused" in h.transport.texts()
    assert "Trimmed audio uploaded!" not in h.transport.texts()
    assert h.leftovers() == []
    assert await h.sessions.trim.get(USER_ID) is None


async def test_sample_without_duration_starts_at_zero(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    video = AttachmentRef(
        file_id="v", kind="document", file_name="clip.mp4", mime_type="video/mp4"
    )

    await h.pipeline.run_sample(chat_id=CHAT_ID, attachment=video)

    command = h.runner.calls[0]
    assert command[command.index("-ss") + 1] == "0.00"
    assert command[command.index("-t") + 1] == "15"
    assert [m.media for m in h.transport.media] == ["video"]
    assert h.transport.media[0].caption == "Trimmed video (15s)"
    assert h.leftovers() == []


async def test_sample_offset_stays_inside_clip(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    video = AttachmentRef(file_id="v", kind="video", duration=40)

    await h.pipeline.run_sample(chat_id=CHAT_ID, attachment=video)

    command = h.runner.calls[0]
    offset = float(command[command.index("-ss") + 1])
    assert 0 <= offset < 25
    assert h.transport.edits[-1][1] == "Trimmed video uploaded!"


async def test_sample_download_error_reports(tmp_path: Path) -> None:
    h = Harness(tmp_path, downloader=FakeDownloader(failures={"v"}))

    await h.pipeline.run_sample(
        chat_id=CHAT_ID, attachment=AttachmentRef(file_id="v", kind="video")
    )

    assert any(t.startswith("Download error:") for t in h.transport.texts())
    assert h.runner.calls == []
    assert h.leftovers() == []
