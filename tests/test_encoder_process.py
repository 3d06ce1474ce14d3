from __future__ import annotations

import json
import sys
import time
from pathlib import Path

import pytest

from framepipe.encoder_process import EncoderProcess, spawn_encoder
from framepipe.errors import SpawnFailed, WriteFailed
from framepipe.session_params import normalize

COPY_STDIN = (
    "import pathlib, sys; "
    "dest = pathlib.Path(sys.argv[1]); "
    "data = sys.stdin.buffer.read(); "
    "dest.write_bytes(data)"
)


def _descriptor(out_dir: Path, **overrides):
    payload = {"outputName": "clip", "format": "video", "frameRate": 30, "width": 640, "height": 480}
    payload.update(overrides)
    return normalize(payload, out_dir=out_dir)


def test_encoder_writes_frames_in_order(tmp_path: Path):
    descriptor = _descriptor(tmp_path / "out")
    encoder = EncoderProcess(descriptor)
    encoder.start(command=[sys.executable, "-c", COPY_STDIN, str(descriptor.output_path)])

    encoder.write(b"frame-1|")
    encoder.write(b"frame-2|")
    encoder.write(b"frame-3")
    encoder.finish()

    assert encoder.wait(timeout=10.0) == 0
    assert descriptor.output_path.read_bytes() == b"frame-1|frame-2|frame-3"
    assert encoder.frames_written == 3
    assert encoder.bytes_written == len(b"frame-1|frame-2|frame-3")


def test_start_creates_output_directories(tmp_path: Path):
    descriptor = _descriptor(tmp_path / "a" / "b", format="image-sequence")
    encoder = EncoderProcess(descriptor)
    encoder.start(command=[sys.executable, "-c", "import sys; sys.stdin.buffer.read()"])
    encoder.finish()
    encoder.wait(timeout=10.0)

    assert (tmp_path / "a" / "b").is_dir()
    assert (tmp_path / "a" / "b" / "clip").is_dir()


def test_finish_does_not_wait_for_encoder_exit(tmp_path: Path):
    descriptor = _descriptor(tmp_path)
    encoder = EncoderProcess(descriptor)
    encoder.start(
        command=[sys.executable, "-c", "import sys, time; sys.stdin.buffer.read(); time.sleep(2)"]
    )

    began = time.monotonic()
    rc = encoder.finish()
    elapsed = time.monotonic() - began

    assert rc is None
    assert elapsed < 1.0
    assert encoder.input_closed
    with pytest.raises(WriteFailed):
        encoder.write(b"late frame")
    assert encoder.wait(timeout=10.0) == 0


def test_noisy_stderr_is_drained(tmp_path: Path):
    """ffmpeg chatter larger than the pipe buffer must not stall the encoder."""
    descriptor = _descriptor(tmp_path)
    script = (
        "import pathlib, sys\n"
        "for i in range(20000):\n"
        "    sys.stderr.write('frame=%d fps=30 q=18.0 size=N/A\\n' % i)\n"
        "sys.stderr.flush()\n"
        "pathlib.Path(sys.argv[1]).write_bytes(sys.stdin.buffer.read())\n"
    )
    encoder = EncoderProcess(descriptor)
    encoder.start(command=[sys.executable, "-c", script, str(descriptor.output_path)])

    encoder.write(b"x" * 256 * 1024)
    encoder.finish()

    assert encoder.wait(timeout=15.0) == 0
    assert descriptor.output_path.stat().st_size == 256 * 1024
    assert "frame=19999" in encoder.stderr_tail


def test_stderr_pipe_is_closed_after_exit(tmp_path: Path):
    descriptor = _descriptor(tmp_path)
    encoder = EncoderProcess(descriptor)
    encoder.start(command=[sys.executable, "-c", "import sys; sys.stdin.buffer.read()"])
    encoder.finish()

    assert encoder.wait(timeout=10.0) == 0
    assert encoder._proc.stderr.closed


def test_write_after_encoder_exit_raises(tmp_path: Path):
    descriptor = _descriptor(tmp_path)
    encoder = EncoderProcess(descriptor)
    encoder.start(
        command=[sys.executable, "-c", "import sys; sys.stderr.write('bad input\\n'); sys.exit(3)"]
    )
    assert encoder.wait(timeout=10.0) == 3

    with pytest.raises(WriteFailed):
        encoder.write(b"y" * 1024 * 1024)
    assert encoder.frames_written == 0
    assert "bad input" in encoder.stderr_tail
    assert encoder.running is False


def test_write_before_start_raises(tmp_path: Path):
    encoder = EncoderProcess(_descriptor(tmp_path))
    with pytest.raises(WriteFailed):
        encoder.write(b"frame")
    assert encoder.finish() is None


def test_missing_binary_raises_spawn_failed(tmp_path: Path):
    descriptor = _descriptor(tmp_path)
    with pytest.raises(SpawnFailed):
        spawn_encoder(descriptor, binary=str(tmp_path / "does-not-exist"))


def test_start_twice_is_rejected(tmp_path: Path):
    encoder = EncoderProcess(_descriptor(tmp_path))
    encoder.start(command=[sys.executable, "-c", "import sys; sys.stdin.buffer.read()"])
    try:
        with pytest.raises(RuntimeError):
            encoder.start(command=[sys.executable, "-c", "pass"])
    finally:
        assert encoder.shutdown(timeout=5.0) == 0


def test_shutdown_kills_encoder_ignoring_eof(tmp_path: Path):
    encoder = EncoderProcess(_descriptor(tmp_path))
    encoder.start(command=[sys.executable, "-c", "import time; time.sleep(30)"])

    rc = encoder.shutdown(timeout=0.5)

    assert rc is not None and rc != 0
    assert encoder.running is False


def test_spawn_encoder_uses_built_command(fake_ffmpeg: str, tmp_path: Path):
    descriptor = _descriptor(tmp_path / "out", width=641)
    encoder = spawn_encoder(descriptor, binary=fake_ffmpeg)
    encoder.write(b"png-bytes")
    encoder.finish()

    assert encoder.wait(timeout=10.0) == 0
    assert descriptor.output_path.read_bytes() == b"png-bytes"
    args = json.loads(Path(str(descriptor.output_path) + ".args.json").read_text())
    assert args[args.index("-vf") + 1] == "crop=640:480:0:0"
    assert args == encoder.build_command()[1:]
