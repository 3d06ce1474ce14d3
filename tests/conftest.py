from __future__ import annotations

import base64
import stat
import sys
from pathlib import Path

import pytest

# Stand-in for ffmpeg: answers -version, copies stdin to the output path
# (the last argument; "%05d"-style patterns are expanded with frame 0) and
# records its argv next to the output.
FAKE_FFMPEG_SOURCE = """#!{python}
import json
import os
import pathlib
import sys

args = sys.argv[1:]
if args == ["-version"]:
    print("ffmpeg version 6.1-fake Copyright (c) the framepipe tests")
    sys.exit(0)

mode = os.environ.get("FAKE_FFMPEG_MODE", "")
if mode == "exit-early":
    sys.stderr.write("fake ffmpeg: refusing input\\n")
    sys.exit(1)
if mode == "noisy":
    for i in range(20000):
        sys.stderr.write("frame=%d fps=30 q=18.0 size=N/A time=00:00:00.00\\n" % i)
    sys.stderr.flush()

target = args[-1]
if "%" in pathlib.Path(target).name:
    target = target % 0
data = sys.stdin.buffer.read()
pathlib.Path(target).write_bytes(data)
pathlib.Path(target + ".args.json").write_text(json.dumps(args))
"""

FAILING_VERSION_SOURCE = """#!{python}
import sys
sys.stderr.write("libavcodec.so.60: cannot open shared object file\\n")
sys.exit(127)
"""

SLOW_VERSION_SOURCE = """#!{python}
import time
time.sleep(5)
"""


def _write_script(path: Path, source: str) -> str:
    path.write_text(source.format(python=sys.executable), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def fake_ffmpeg(tmp_path: Path) -> str:
    return _write_script(tmp_path / "fake-ffmpeg", FAKE_FFMPEG_SOURCE)


@pytest.fixture
def failing_ffmpeg(tmp_path: Path) -> str:
    return _write_script(tmp_path / "broken-ffmpeg", FAILING_VERSION_SOURCE)


@pytest.fixture
def slow_ffmpeg(tmp_path: Path) -> str:
    return _write_script(tmp_path / "slow-ffmpeg", SLOW_VERSION_SOURCE)


def data_url(payload: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(payload).decode('ascii')}"
