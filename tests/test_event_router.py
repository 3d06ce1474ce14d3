from __future__ import annotations

import time

import pytest

from conftest import data_url
from framepipe.config import EVENT_NAME_DEFAULTS, default_config
from framepipe.event_router import ClientNotifier, EventRouter, strip_ansi
from framepipe.probe import ProbeResult
from framepipe.recording_session import Outcome, RecordingSession, SessionSettings

FIXED_CLOCK = lambda: time.struct_time((2026, 10, 19, 14, 5, 9, 0, 292, -1))  # noqa: E731


class Outbox:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []

    async def __call__(self, event: str, data: dict) -> None:
        self.sent.append((event, data))

    def events(self) -> list[str]:
        return [event for event, _ in self.sent]


class StubEncoder:
    def __init__(self, descriptor, **_settings) -> None:
        self.descriptor = descriptor
        self.frames: list[bytes] = []
        self.running = True

    def write(self, frame: bytes) -> None:
        self.frames.append(frame)

    def finish(self):
        self.running = False
        return None


def _session(tmp_path, available: bool = True) -> RecordingSession:
    async def prober(binary, timeout):
        return ProbeResult(available, "ffmpeg version 6.1" if available else "ffmpeg: command not found")

    return RecordingSession(
        SessionSettings(out_dir=tmp_path),
        encoder_factory=StubEncoder,
        prober=prober,
    )


@pytest.mark.asyncio
async def test_notifier_prefixes_time_and_tag():
    outbox = Outbox()
    notifier = ClientNotifier(outbox, tag="[ssam-ffmpeg]", clock=FIXED_CLOCK)

    await notifier.log("recording (mp4) streaming started")
    await notifier.warning("\x1b[33mffmpeg: command not found\x1b[39m")
    await notifier.request_next_frame()

    assert outbox.sent == [
        ("ssam:log", {"message": "14:05:09 [ssam-ffmpeg] recording (mp4) streaming started"}),
        ("ssam:warn", {"message": "14:05:09 [ssam-ffmpeg] ffmpeg: command not found"}),
        ("ssam:ffmpeg-reqframe", {}),
    ]


@pytest.mark.asyncio
async def test_disabled_notifications_still_request_frames():
    outbox = Outbox()
    notifier = ClientNotifier(outbox, enabled=False)

    await notifier.log("hidden")
    await notifier.warning("hidden")
    await notifier.request_next_frame()

    assert outbox.events() == [EVENT_NAME_DEFAULTS["request_next_frame"]]


def test_strip_ansi():
    assert strip_ansi("\x1b[90m12:00:00\x1b[39m \x1b[32m[ssam-ffmpeg]\x1b[39m done") == "12:00:00 [ssam-ffmpeg] done"


@pytest.mark.asyncio
async def test_router_dispatches_by_wire_name(tmp_path):
    session = _session(tmp_path)
    router = EventRouter(session)
    outbox = Outbox()

    started = await router.dispatch(
        "ssam:ffmpeg",
        {"filename": "clip", "format": "mp4", "fps": 30, "width": 640, "height": 480},
        outbox,
    )
    written = await router.dispatch("ssam:ffmpeg-newframe", {"image": data_url(b"png")}, outbox)
    finished = await router.dispatch("ssam:ffmpeg-done", None, outbox)

    assert (started, written, finished) == (Outcome.STARTED, Outcome.FRAME_WRITTEN, Outcome.FINISHED)
    assert outbox.events() == [
        "ssam:log",
        "ssam:ffmpeg-reqframe",
        "ssam:log",
        "ssam:log",
    ]
    assert outbox.sent[-1][1]["message"].endswith("clip.mp4 recording complete")


@pytest.mark.asyncio
async def test_router_ignores_unknown_events(tmp_path):
    router = EventRouter(_session(tmp_path))
    outbox = Outbox()

    assert await router.dispatch("vite:beforeUpdate", {}, outbox) is None
    assert outbox.sent == []


@pytest.mark.asyncio
async def test_router_uses_configured_event_names(tmp_path):
    cfg = default_config()
    cfg["events"].update({"start": "rec:start", "request_next_frame": "rec:next", "warning": "  "})
    cfg["notifications"]["enabled"] = False
    router = EventRouter.from_cfg(_session(tmp_path), cfg)
    outbox = Outbox()

    await router.dispatch("rec:start", {"outputName": "a", "format": "video", "frameRate": 24, "width": 8, "height": 8}, outbox)
    await router.dispatch("ssam:ffmpeg-newframe", {"imageData": data_url(b"x")}, outbox)

    assert router.event_names["warning"] == EVENT_NAME_DEFAULTS["warning"]
    assert outbox.events() == ["rec:next"]


@pytest.mark.asyncio
async def test_announce_capability_broadcasts_only_when_unavailable(tmp_path):
    broadcast = Outbox()
    available = EventRouter(_session(tmp_path, available=True))
    assert (await available.announce_capability(broadcast)).available is True
    assert broadcast.sent == []

    unavailable = EventRouter(_session(tmp_path, available=False))
    result = await unavailable.announce_capability(broadcast)
    assert result.available is False
    assert broadcast.events() == ["ssam:warn"]
    assert broadcast.sent[0][1]["message"].endswith("ffmpeg: command not found")

    late_client = Outbox()
    await unavailable.greet(late_client)
    assert late_client.events() == ["ssam:warn"]
