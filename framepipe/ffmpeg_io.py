"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

from typing import Any, Mapping

from .session_params import OutputFormat, SessionDescriptor

DEFAULT_VIDEO_SETTINGS: dict[str, Any] = {
    "codec": "libx264",
    "pix_fmt": "yuv420p",
    "preset": "slow",
    "crf": 18,
    "movflags": "+faststart",
}


def format_rate(frame_rate: float) -> str:
    """Render a frame rate without a trailing ``.0`` for integral values."""
    if float(frame_rate).is_integer():
        return str(int(frame_rate))
    return repr(float(frame_rate))


def image_pipe_input_args(frame_rate: float, *, input_codec: str | None = "png") -> list[str]:
    """Return input arguments for piping encoded stills into ffmpeg.

    ffmpeg treats options appearing before ``-i`` as applying to that input, so
    the frame rate and the still codec must precede ``pipe:0``.
    """

    args = ["-f", "image2pipe", "-framerate", format_rate(frame_rate)]
    if input_codec:
        args.extend(["-c:v", input_codec])
    args.extend(["-i", "pipe:0"])
    return args


def crop_filter(width: int, height: int) -> str:
    """Crop anchored at the top-left so only the trailing row/column is dropped."""
    return f"crop={width}:{height}:0:0"


def video_output_args(
    frame_rate: float, settings: Mapping[str, Any] | None = None
) -> list[str]:
    merged = dict(DEFAULT_VIDEO_SETTINGS)
    if settings:
        merged.update({k: v for k, v in settings.items() if v not in (None, "")})
    args = [
        "-c:v", str(merged["codec"]),
        "-pix_fmt", str(merged["pix_fmt"]),
        "-preset", str(merged["preset"]),
        "-crf", str(merged["crf"]),
        "-r", format_rate(frame_rate),
    ]
    if merged.get("movflags"):
        args.extend(["-movflags", str(merged["movflags"])])
    return args


def sequence_output_args() -> list[str]:
    # One still per input frame, numbered from zero.
    return ["-f", "image2", "-start_number", "0"]


def build_encoder_command(
    descriptor: SessionDescriptor,
    *,
    binary: str = "ffmpeg",
    loglevel: str = "warning",
    input_codec: str | None = "png",
    video_settings: Mapping[str, Any] | None = None,
) -> list[str]:
    """Build the full ffmpeg invocation for one recording session."""
    cmd = [binary, "-hide_banner", "-loglevel", loglevel]
    cmd.extend(image_pipe_input_args(descriptor.frame_rate, input_codec=input_codec))
    cmd.extend(["-vf", crop_filter(descriptor.effective_width, descriptor.effective_height)])
    if descriptor.format is OutputFormat.VIDEO:
        cmd.extend(video_output_args(descriptor.frame_rate, video_settings))
        target = descriptor.output_path
    else:
        cmd.extend(sequence_output_args())
        target = descriptor.sequence_pattern
    cmd.extend(["-y", str(target)])
    return cmd
