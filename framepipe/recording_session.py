#!/usr/bin/env python3
"""
Recording session state machine (one encoder session at a time).

Phases:
- IDLE: no encoder. Only a start event does anything.
- STREAMING: encoder running; each frame event is written to its stdin and
  answered with request-next-frame once the write completed.
- FINISHING: transient, while stdin is being closed.
- UNAVAILABLE: the encoder probe failed; every start is refused until the
  process restarts.

Exactly one frame is in flight: request-next-frame is only sent after the
previous frame reached the pipe. A failed write withholds it, which stalls the
producer until it sends finish.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from .encoder_process import EncoderProcess, spawn_encoder
from .errors import (
    EncoderUnavailable,
    InvalidFrame,
    InvalidParameters,
    SessionAlreadyActive,
    SpawnFailed,
    WriteFailed,
)
from .probe import DEFAULT_PROBE_TIMEOUT_SECONDS, ProbeResult, probe_encoder_async
from .session_params import (
    DEFAULT_SEQUENCE_EXTENSION,
    DEFAULT_SEQUENCE_PADDING,
    DEFAULT_VIDEO_EXTENSION,
    SessionDescriptor,
    normalize,
)

log = logging.getLogger("recording_session")


class Capability(enum.Enum):
    UNCHECKED = "unchecked"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class Phase(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINISHING = "finishing"
    UNAVAILABLE = "unavailable"


class Outcome(enum.Enum):
    STARTED = "started"
    UNAVAILABLE = "unavailable"
    INVALID_PARAMETERS = "invalid_parameters"
    SPAWN_FAILED = "spawn_failed"
    ALREADY_ACTIVE = "already_active"
    FRAME_WRITTEN = "frame_written"
    WRITE_FAILED = "write_failed"
    INVALID_FRAME = "invalid_frame"
    FINISHED = "finished"
    IGNORED = "ignored"


class Notifier(Protocol):
    async def warning(self, message: str) -> None: ...

    async def log(self, message: str) -> None: ...

    async def request_next_frame(self) -> None: ...


@dataclass
class SessionState:
    capability: Capability = Capability.UNCHECKED
    phase: Phase = Phase.IDLE
    frames_recorded: int = 0
    pending_crop_warning: Optional[str] = None
    unavailable_detail: str = ""


@dataclass(frozen=True)
class SessionSettings:
    out_dir: Path = Path("./output")
    sequence_padding: int = DEFAULT_SEQUENCE_PADDING
    sequence_extension: str = DEFAULT_SEQUENCE_EXTENSION
    video_extension: str = DEFAULT_VIDEO_EXTENSION
    binary: str = "ffmpeg"
    loglevel: str = "warning"
    input_codec: Optional[str] = "png"
    video_settings: Dict[str, Any] = field(default_factory=dict)
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    finish_timeout: float = 5.0

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "SessionSettings":
        encoder_cfg = cfg.get("encoder", {}) or {}
        output_cfg = cfg.get("output", {}) or {}
        try:
            padding = int(output_cfg.get("sequence_padding") or DEFAULT_SEQUENCE_PADDING)
        except (TypeError, ValueError):
            padding = DEFAULT_SEQUENCE_PADDING
        try:
            probe_timeout = float(encoder_cfg.get("probe_timeout_sec") or DEFAULT_PROBE_TIMEOUT_SECONDS)
        except (TypeError, ValueError):
            probe_timeout = DEFAULT_PROBE_TIMEOUT_SECONDS
        try:
            finish_timeout = float(encoder_cfg.get("finish_timeout_sec") or 5.0)
        except (TypeError, ValueError):
            finish_timeout = 5.0
        return cls(
            out_dir=Path(str(output_cfg.get("out_dir") or "./output")).expanduser(),
            sequence_padding=max(1, padding),
            sequence_extension=str(output_cfg.get("sequence_extension") or DEFAULT_SEQUENCE_EXTENSION),
            video_extension=str(output_cfg.get("video_extension") or DEFAULT_VIDEO_EXTENSION),
            binary=str(encoder_cfg.get("binary") or "ffmpeg"),
            loglevel=str(encoder_cfg.get("loglevel") or "warning"),
            input_codec=encoder_cfg.get("input_codec") or None,
            video_settings=dict(encoder_cfg.get("video") or {}),
            probe_timeout=probe_timeout,
            finish_timeout=finish_timeout,
        )

    def encoder_kwargs(self) -> Dict[str, Any]:
        return {
            "binary": self.binary,
            "loglevel": self.loglevel,
            "input_codec": self.input_codec,
            "video_settings": self.video_settings,
        }


def decode_frame(payload: Any) -> bytes:
    """Extract image bytes from a ``data:<mime>;base64,<payload>`` string."""
    if isinstance(payload, Mapping):
        payload = payload.get("imageData", payload.get("image"))
    if not isinstance(payload, str):
        raise InvalidFrame("frame payload has no imageData string")
    _, sep, encoded = payload.partition(",")
    if not sep:
        raise InvalidFrame("frame imageData is not a data URL")
    try:
        data = base64.b64decode(encoded)
    except (binascii.Error, ValueError) as exc:
        raise InvalidFrame(f"frame imageData is not valid base64: {exc}") from exc
    if not data:
        raise InvalidFrame("frame imageData is empty")
    return data


EncoderFactory = Callable[..., EncoderProcess]
Prober = Callable[..., Awaitable[ProbeResult]]


class RecordingSession:
    """Owns the one live descriptor/encoder pair and the session state."""

    def __init__(
        self,
        settings: SessionSettings | None = None,
        *,
        encoder_factory: EncoderFactory = spawn_encoder,
        prober: Prober = probe_encoder_async,
    ) -> None:
        self.settings = settings or SessionSettings()
        self.state = SessionState()
        self._encoder_factory = encoder_factory
        self._prober = prober
        self._probe_result: Optional[ProbeResult] = None
        self._descriptor: Optional[SessionDescriptor] = None
        self._encoder: Optional[EncoderProcess] = None
        self._retired: list[EncoderProcess] = []
        # Serializes handlers so each event runs to completion, pipe write included.
        self._lock = asyncio.Lock()

    @property
    def descriptor(self) -> Optional[SessionDescriptor]:
        return self._descriptor

    @property
    def encoder(self) -> Optional[EncoderProcess]:
        return self._encoder

    @property
    def probe_result(self) -> Optional[ProbeResult]:
        return self._probe_result

    async def probe(self) -> ProbeResult:
        """Run the availability probe once; later calls return the first result."""
        if self._probe_result is not None:
            return self._probe_result
        result = await self._prober(self.settings.binary, timeout=self.settings.probe_timeout)
        self._probe_result = result
        if result.available:
            self.state.capability = Capability.AVAILABLE
        else:
            self.state.capability = Capability.UNAVAILABLE
            self.state.unavailable_detail = result.detail
            self.state.phase = Phase.UNAVAILABLE
        return result

    async def start(self, payload: Mapping[str, Any], notifier: Notifier) -> Outcome:
        async with self._lock:
            if self.state.capability is Capability.UNCHECKED:
                await self.probe()

            try:
                self._require_available()
            except EncoderUnavailable as exc:
                log.warning("start refused: %s", exc)
                await notifier.warning(str(exc))
                return Outcome.UNAVAILABLE

            try:
                self._require_idle()
            except SessionAlreadyActive as exc:
                log.warning("%s", exc)
                return Outcome.ALREADY_ACTIVE

            try:
                descriptor = normalize(
                    payload,
                    out_dir=self.settings.out_dir,
                    sequence_padding=self.settings.sequence_padding,
                    sequence_extension=self.settings.sequence_extension,
                    video_extension=self.settings.video_extension,
                )
            except InvalidParameters as exc:
                log.warning("rejected start: %s", exc)
                await notifier.warning(f"invalid recording parameters: {exc}")
                return Outcome.INVALID_PARAMETERS

            try:
                encoder = self._encoder_factory(descriptor, **self.settings.encoder_kwargs())
            except SpawnFailed as exc:
                log.error("encoder spawn failed: %s", exc)
                await notifier.warning(f"encoder could not be started: {exc}")
                return Outcome.SPAWN_FAILED

            self._prune_retired()
            self._descriptor = descriptor
            self._encoder = encoder
            self.state.frames_recorded = 0
            self.state.pending_crop_warning = descriptor.crop_warning
            self.state.phase = Phase.STREAMING

            log.info(
                "recording %s started: %sx%s -> %sx%s @ %s fps",
                descriptor.output_path,
                descriptor.requested_width,
                descriptor.requested_height,
                descriptor.effective_width,
                descriptor.effective_height,
                descriptor.frame_rate,
            )
            await notifier.log(f"recording ({descriptor.format_label}) streaming started")
            return Outcome.STARTED

    async def frame(self, payload: Any, notifier: Notifier) -> Outcome:
        async with self._lock:
            encoder = self._encoder
            if self.state.phase is not Phase.STREAMING or encoder is None:
                log.debug("ignoring frame while %s", self.state.phase.value)
                return Outcome.IGNORED
            frame_number = self.state.frames_recorded + 1

            try:
                data = decode_frame(payload)
            except InvalidFrame as exc:
                log.error("frame %s rejected: %s", frame_number, exc)
                await notifier.warning(f"frame {frame_number} rejected: {exc}")
                return Outcome.INVALID_FRAME

            try:
                await asyncio.to_thread(encoder.write, data)
            except WriteFailed as exc:
                log.error("frame %s not written: %s", frame_number, exc)
                await notifier.warning(
                    f"frame {frame_number} could not be written: {exc}; finish the recording to recover"
                )
                return Outcome.WRITE_FAILED

            self.state.frames_recorded = frame_number
            await notifier.request_next_frame()
            assert self._descriptor is not None
            message = f"recording frame {frame_number} of {self._descriptor.expected_total_label}"
            log.info("%s", message)
            await notifier.log(message)
            return Outcome.FRAME_WRITTEN

    async def finish(self, payload: Any, notifier: Notifier) -> Outcome:
        async with self._lock:
            encoder = self._encoder
            descriptor = self._descriptor
            if self.state.phase is not Phase.STREAMING or encoder is None or descriptor is None:
                log.debug("ignoring finish while %s", self.state.phase.value)
                return Outcome.IGNORED

            self.state.phase = Phase.FINISHING
            rc = encoder.finish()
            frames = self.state.frames_recorded
            crop_warning = self.state.pending_crop_warning
            self._retired.append(encoder)
            self._encoder = None
            self._descriptor = None
            self.state.frames_recorded = 0
            self.state.pending_crop_warning = None
            self.state.phase = Phase.IDLE

            log.info(
                "recording %s finished after %s frames (encoder rc=%s)",
                descriptor.output_path,
                frames,
                "pending" if rc is None else rc,
            )
            await notifier.log(f"{descriptor.artifact_label} recording complete")
            if crop_warning:
                log.warning("%s", crop_warning)
                await notifier.warning(crop_warning)
            return Outcome.FINISHED

    def _require_available(self) -> None:
        if self.state.capability is Capability.UNAVAILABLE:
            raise EncoderUnavailable(self.state.unavailable_detail or "encoder unavailable")

    def _require_idle(self) -> None:
        if self.state.phase in (Phase.STREAMING, Phase.FINISHING):
            name = self._descriptor.output_name if self._descriptor else "unknown"
            raise SessionAlreadyActive(f"start ignored: recording {name!r} is still active")

    def _prune_retired(self) -> None:
        self._retired = [enc for enc in self._retired if enc.running]

    async def shutdown(self) -> None:
        """Finalize any live or finishing encoder so no subprocess outlives us."""
        async with self._lock:
            encoders = list(self._retired)
            if self._encoder is not None:
                encoders.append(self._encoder)
            self._encoder = None
            self._descriptor = None
            self._retired = []
            if self.state.phase is not Phase.UNAVAILABLE:
                self.state.phase = Phase.IDLE
            self.state.frames_recorded = 0
            self.state.pending_crop_warning = None
        for encoder in encoders:
            rc = await asyncio.to_thread(encoder.shutdown, self.settings.finish_timeout)
            log.info("encoder for %s shut down rc=%s", encoder.descriptor.output_path, rc)
