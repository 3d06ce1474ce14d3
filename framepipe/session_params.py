"""Normalize a start payload into an immutable session descriptor."""

from __future__ import annotations

import enum
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .errors import InvalidParameters

DEFAULT_SEQUENCE_PADDING = 5
DEFAULT_SEQUENCE_EXTENSION = "png"
DEFAULT_VIDEO_EXTENSION = "mp4"
CROP_WARNING_TEMPLATE = "output dimensions cropped to be multiples of 2: [{width}, {height}]"


class OutputFormat(enum.Enum):
    VIDEO = "video"
    IMAGE_SEQUENCE = "image-sequence"


# Wire value -> (format, explicit extension or None to use the configured one)
_FORMAT_ALIASES: dict[str, tuple[OutputFormat, str | None]] = {
    "video": (OutputFormat.VIDEO, None),
    "mp4": (OutputFormat.VIDEO, "mp4"),
    "image-sequence": (OutputFormat.IMAGE_SEQUENCE, None),
    "sequence": (OutputFormat.IMAGE_SEQUENCE, None),
    "png": (OutputFormat.IMAGE_SEQUENCE, "png"),
    "jpg": (OutputFormat.IMAGE_SEQUENCE, "jpg"),
    "jpeg": (OutputFormat.IMAGE_SEQUENCE, "jpg"),
}


@dataclass(frozen=True)
class SessionDescriptor:
    output_name: str
    format: OutputFormat
    extension: str
    requested_width: int
    requested_height: int
    effective_width: int
    effective_height: int
    frame_rate: float
    expected_frame_count: int | None
    sequence_padding: int
    out_dir: Path

    @property
    def was_cropped(self) -> bool:
        return (
            self.effective_width != self.requested_width
            or self.effective_height != self.requested_height
        )

    @property
    def crop_warning(self) -> str | None:
        """Message held until finish when the canvas had to be trimmed."""
        if not self.was_cropped:
            return None
        return CROP_WARNING_TEMPLATE.format(
            width=self.effective_width, height=self.effective_height
        )

    @property
    def expected_total_label(self) -> str:
        if not self.expected_frame_count:
            return "Infinity"
        return str(self.expected_frame_count)

    @property
    def output_path(self) -> Path:
        """Video file, or the per-session directory for image sequences."""
        if self.format is OutputFormat.VIDEO:
            return self.out_dir / f"{self.output_name}.{self.extension}"
        return self.out_dir / self.output_name

    @property
    def sequence_pattern(self) -> Path:
        if self.format is not OutputFormat.IMAGE_SEQUENCE:
            raise ValueError("sequence_pattern only applies to image sequences")
        return self.output_path / f"%0{self.sequence_padding}d.{self.extension}"

    @property
    def format_label(self) -> str:
        if self.format is OutputFormat.VIDEO:
            return self.extension
        return f"{self.extension} sequence"

    @property
    def artifact_label(self) -> str:
        if self.format is OutputFormat.VIDEO:
            return self.output_path.name
        return f"{self.output_name}/"


def even_floor(value: int) -> int:
    """Round down to the nearest even integer."""
    return value - (value % 2)


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _coerce_number(value: Any, field: str) -> float:
    if isinstance(value, bool):
        raise InvalidParameters(f"{field} must be a number, got {value!r}")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise InvalidParameters(f"{field} must be a number, got {value!r}") from None
    else:
        raise InvalidParameters(f"{field} must be a number, got {value!r}")
    if not math.isfinite(number):
        raise InvalidParameters(f"{field} must be finite, got {value!r}")
    return number


def _positive_int(value: Any, field: str) -> int:
    if value is None:
        raise InvalidParameters(f"{field} is required")
    number = _coerce_number(value, field)
    if number != int(number):
        raise InvalidParameters(f"{field} must be an integer, got {value!r}")
    if number <= 0:
        raise InvalidParameters(f"{field} must be positive, got {value!r}")
    return int(number)


def _validate_output_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidParameters("outputName must be a non-empty string")
    name = value.strip()
    if name in {".", ".."} or "/" in name or "\\" in name:
        raise InvalidParameters(f"outputName must be a single path component, got {value!r}")
    return name


def _resolve_format(
    value: Any, sequence_extension: str, video_extension: str = DEFAULT_VIDEO_EXTENSION
) -> tuple[OutputFormat, str]:
    if not isinstance(value, str):
        raise InvalidParameters(f"unrecognized format {value!r}")
    try:
        fmt, extension = _FORMAT_ALIASES[value.strip().lower()]
    except KeyError:
        raise InvalidParameters(f"unrecognized format {value!r}") from None
    if extension is None:
        extension = video_extension if fmt is OutputFormat.VIDEO else sequence_extension
    return fmt, extension


def normalize(
    raw: Mapping[str, Any],
    *,
    out_dir: str | os.PathLike[str],
    sequence_padding: int = DEFAULT_SEQUENCE_PADDING,
    sequence_extension: str = DEFAULT_SEQUENCE_EXTENSION,
    video_extension: str = DEFAULT_VIDEO_EXTENSION,
) -> SessionDescriptor:
    """Validate ``raw`` and return a descriptor, or raise ``InvalidParameters``.

    Odd dimensions are rounded down by one so only the last row/column of the
    canvas is dropped; dimensions are never rounded up.
    """
    if not isinstance(raw, Mapping):
        raise InvalidParameters("start payload must be an object")

    output_name = _validate_output_name(_first(raw, "outputName", "filename"))
    fmt, extension = _resolve_format(
        raw.get("format"),
        sequence_extension.lstrip(".") or DEFAULT_SEQUENCE_EXTENSION,
        video_extension.lstrip(".") or DEFAULT_VIDEO_EXTENSION,
    )

    width = _positive_int(raw.get("width"), "width")
    height = _positive_int(raw.get("height"), "height")
    if width < 2 or height < 2:
        # A 1px axis would crop to nothing.
        raise InvalidParameters(f"output dimensions must be at least 2x2, got {width}x{height}")

    frame_rate_raw = _first(raw, "frameRate", "fps")
    if frame_rate_raw is None:
        raise InvalidParameters("frameRate is required")
    frame_rate = _coerce_number(frame_rate_raw, "frameRate")
    if frame_rate <= 0:
        raise InvalidParameters(f"frameRate must be positive, got {frame_rate_raw!r}")

    expected_raw = _first(raw, "expectedFrameCount", "totalFrames")
    expected: int | None = None
    if isinstance(expected_raw, str) and expected_raw.strip().lower() in {"infinity", "inf"}:
        expected_raw = None
    if expected_raw is not None:
        count = _coerce_number(expected_raw, "expectedFrameCount")
        if count != int(count):
            raise InvalidParameters(
                f"expectedFrameCount must be an integer, got {expected_raw!r}"
            )
        if count < 0:
            raise InvalidParameters(
                f"expectedFrameCount must be non-negative, got {expected_raw!r}"
            )
        expected = int(count) or None

    padding_raw = raw.get("sequencePadding")
    padding = sequence_padding if padding_raw is None else _positive_int(padding_raw, "sequencePadding")
    if padding <= 0:
        raise InvalidParameters(f"sequencePadding must be positive, got {padding!r}")

    return SessionDescriptor(
        output_name=output_name,
        format=fmt,
        extension=extension,
        requested_width=width,
        requested_height=height,
        effective_width=even_floor(width),
        effective_height=even_floor(height),
        frame_rate=frame_rate,
        expected_frame_count=expected,
        sequence_padding=padding,
        out_dir=Path(out_dir),
    )
