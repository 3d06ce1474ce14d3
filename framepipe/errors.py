"""Exceptions raised by the encoder pipeline.

Lower layers raise these; ``RecordingSession`` catches them at the event
boundary and turns them into warning/log notifications.
"""

from __future__ import annotations


class EncoderError(Exception):
    """Base class for recording pipeline failures."""


class EncoderUnavailable(EncoderError):
    """The encoder binary could not be invoked during the availability probe."""


class InvalidParameters(EncoderError):
    """A start payload could not be normalized into a session descriptor."""


class SpawnFailed(EncoderError):
    """The encoder subprocess could not be launched."""


class WriteFailed(EncoderError):
    """A frame could not be written to the encoder's input pipe."""


class InvalidFrame(EncoderError):
    """A frame payload is not a decodable data URL."""


class SessionAlreadyActive(EncoderError):
    """A start event arrived while another session is still streaming."""
