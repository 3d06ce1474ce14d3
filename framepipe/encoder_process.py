#!/usr/bin/env python3
"""
EncoderProcess: owns one ffmpeg subprocess for a recording session.

- Spawns ffmpeg with an image2pipe input on stdin
- Drains stderr in a background thread so ffmpeg never blocks on a full pipe
- write() pushes one encoded still and returns once the pipe accepted it
- finish() closes stdin (end of stream) without waiting for ffmpeg to flush;
  the drain thread reaps the process and logs its exit status
"""

from __future__ import annotations

import collections
import logging
import subprocess
import threading
from typing import Any, Mapping, Optional

from .errors import SpawnFailed, WriteFailed
from .ffmpeg_io import build_encoder_command
from .session_params import OutputFormat, SessionDescriptor

STDERR_TAIL_LINES = 50


class EncoderProcess:
    def __init__(
        self,
        descriptor: SessionDescriptor,
        *,
        binary: str = "ffmpeg",
        loglevel: str = "warning",
        input_codec: Optional[str] = "png",
        video_settings: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.descriptor = descriptor
        self.binary = binary
        self.loglevel = loglevel
        self.input_codec = input_codec
        self.video_settings = dict(video_settings or {})

        self._log = logging.getLogger("encoder_process")
        self._proc: Optional[subprocess.Popen] = None
        self._drain_thread: Optional[threading.Thread] = None
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        self._exited = threading.Event()
        self._returncode: Optional[int] = None
        self._input_closed = False
        self.frames_written = 0
        self.bytes_written = 0

    def build_command(self) -> list[str]:
        return build_encoder_command(
            self.descriptor,
            binary=self.binary,
            loglevel=self.loglevel,
            input_codec=self.input_codec,
            video_settings=self.video_settings,
        )

    def _ensure_output_dirs(self) -> None:
        self.descriptor.out_dir.mkdir(parents=True, exist_ok=True)
        if self.descriptor.format is OutputFormat.IMAGE_SEQUENCE:
            self.descriptor.output_path.mkdir(parents=True, exist_ok=True)

    def start(self, command: Optional[list[str]] = None) -> None:
        if self._proc is not None:
            raise RuntimeError("EncoderProcess already started")
        try:
            self._ensure_output_dirs()
        except OSError as exc:
            raise SpawnFailed(f"cannot create output directory: {exc}") from exc
        if command is None:
            command = self.build_command()

        self._log.info("Launching encoder: %s", " ".join(command))
        try:
            self._proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise SpawnFailed(f"cannot launch {command[0]}: {exc}") from exc

        self._drain_thread = threading.Thread(
            target=self._drain_stderr, name="encoder_stderr", daemon=True
        )
        self._drain_thread.start()

    def _drain_stderr(self) -> None:
        """Read stderr until EOF, then reap the process and log its exit."""
        proc = self._proc
        assert proc is not None and proc.stderr is not None
        try:
            for raw in iter(proc.stderr.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                self._stderr_tail.append(line)
                self._log.debug("ffmpeg: %s", line)
        except (OSError, ValueError) as exc:
            self._log.debug("encoder stderr read stopped: %r", exc)
        finally:
            try:
                proc.stderr.close()
            except OSError as exc:
                self._log.debug("encoder stderr close error: %r", exc)
            rc = proc.wait()
            self._returncode = rc
            self._exited.set()
            if rc == 0:
                self._log.info("encoder exited rc=0 (%s)", self.descriptor.output_path)
            else:
                self._log.warning(
                    "encoder exited rc=%s (%s)\n%s",
                    rc,
                    self.descriptor.output_path,
                    self.stderr_tail,
                )

    @property
    def started(self) -> bool:
        return self._proc is not None

    @property
    def running(self) -> bool:
        return self._proc is not None and not self._exited.is_set() and self._proc.poll() is None

    @property
    def input_closed(self) -> bool:
        return self._input_closed

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    def write(self, frame: bytes) -> None:
        """Blocking write of one encoded still; raises ``WriteFailed``."""
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise WriteFailed("encoder not started")
        if self._input_closed:
            raise WriteFailed("encoder input already closed")
        try:
            proc.stdin.write(frame)
            proc.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as exc:
            raise WriteFailed(f"encoder pipe write failed: {exc}") from exc
        self.frames_written += 1
        self.bytes_written += len(frame)

    def finish(self) -> Optional[int]:
        """Close stdin so ffmpeg finalizes; returns the exit code if already known."""
        proc = self._proc
        if proc is None or self._input_closed:
            return self._returncode
        self._input_closed = True
        if proc.stdin is not None:
            try:
                proc.stdin.close()
            except (BrokenPipeError, OSError) as exc:
                # Unflushed bytes were lost with the pipe; the exit status tells the rest.
                self._log.debug("encoder stdin close error: %r", exc)
        return proc.poll()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for ffmpeg to exit; returns None if it is still running."""
        if self._proc is None:
            return None
        if not self._exited.wait(timeout):
            return None
        if self._drain_thread is not None:
            self._drain_thread.join(timeout)
        return self._returncode

    def kill(self) -> None:
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        self._log.warning("killing encoder pid=%s", proc.pid)
        try:
            proc.kill()
        except OSError as exc:
            self._log.exception("encoder kill() raised; process may remain: %r", exc)

    def shutdown(self, timeout: float = 5.0) -> Optional[int]:
        """Close input, wait up to ``timeout`` and kill if ffmpeg is still alive."""
        self.finish()
        rc = self.wait(timeout)
        if rc is None and self._proc is not None:
            self.kill()
            rc = self.wait(1.0)
            if rc is None:
                self._log.error("encoder still not reaped after SIGKILL; zombie risk")
        return rc


def spawn_encoder(
    descriptor: SessionDescriptor,
    *,
    command: Optional[list[str]] = None,
    **settings: Any,
) -> EncoderProcess:
    """Create and start an ``EncoderProcess``; raises ``SpawnFailed``."""
    encoder = EncoderProcess(descriptor, **settings)
    encoder.start(command=command)
    return encoder
