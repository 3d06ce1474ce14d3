"""Route named inbound events to the recording session and format replies."""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .config import EVENT_NAME_DEFAULTS, resolve_event_names
from .probe import ProbeResult
from .recording_session import Outcome, RecordingSession

SendFn = Callable[[str, Dict[str, Any]], Awaitable[None]]

_ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE_RE.sub("", text)


class ClientNotifier:
    """Sends warning/log/request-next-frame events through one ``send`` callable.

    ``enabled`` gates only the human-readable notifications; request-next-frame
    is the flow-control signal and is always delivered.
    """

    def __init__(
        self,
        send: SendFn,
        *,
        event_names: Mapping[str, str] = EVENT_NAME_DEFAULTS,
        enabled: bool = True,
        tag: str = "",
        clock: Callable[[], time.struct_time] = time.localtime,
    ) -> None:
        self._send = send
        self._events = dict(event_names)
        self._enabled = enabled
        self._tag = tag.strip()
        self._clock = clock

    def format_message(self, message: str) -> str:
        parts = [time.strftime("%H:%M:%S", self._clock())]
        if self._tag:
            parts.append(self._tag)
        parts.append(strip_ansi(message))
        return " ".join(parts)

    async def warning(self, message: str) -> None:
        if self._enabled:
            await self._send(self._events["warning"], {"message": self.format_message(message)})

    async def log(self, message: str) -> None:
        if self._enabled:
            await self._send(self._events["log"], {"message": self.format_message(message)})

    async def request_next_frame(self) -> None:
        await self._send(self._events["request_next_frame"], {})


class EventRouter:
    def __init__(
        self,
        session: RecordingSession,
        *,
        event_names: Mapping[str, str] = EVENT_NAME_DEFAULTS,
        notifications_enabled: bool = True,
        tag: str = "",
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session
        self.event_names = dict(event_names)
        self.notifications_enabled = notifications_enabled
        self.tag = tag
        self._log = logger or logging.getLogger("event_router")
        self._handlers = {
            self.event_names["start"]: session.start,
            self.event_names["frame"]: session.frame,
            self.event_names["finish"]: session.finish,
        }

    @classmethod
    def from_cfg(cls, session: RecordingSession, cfg: Mapping[str, Any]) -> "EventRouter":
        notifications = cfg.get("notifications", {}) or {}
        return cls(
            session,
            event_names=resolve_event_names(dict(cfg)),
            notifications_enabled=bool(notifications.get("enabled", True)),
            tag=str(notifications.get("tag") or ""),
        )

    def notifier_for(self, send: SendFn) -> ClientNotifier:
        return ClientNotifier(
            send,
            event_names=self.event_names,
            enabled=self.notifications_enabled,
            tag=self.tag,
        )

    async def dispatch(self, event: str, data: Any, send: SendFn) -> Optional[Outcome]:
        """Run the handler for ``event``; unknown events return None."""
        handler = self._handlers.get(event)
        if handler is None:
            self._log.debug("ignoring unknown event %r", event)
            return None
        if data is None:
            data = {}
        outcome = await handler(data, self.notifier_for(send))
        self._log.debug("%s -> %s", event, outcome.value)
        return outcome

    async def announce_capability(self, broadcast: SendFn) -> ProbeResult:
        """Probe the encoder and broadcast a warning to everyone if it is missing."""
        result = await self.session.probe()
        if not result.available:
            await self.notifier_for(broadcast).warning(result.detail)
        return result

    async def greet(self, send: SendFn) -> None:
        """Tell a newly connected client that recording is unavailable, if so."""
        result = self.session.probe_result
        if result is not None and not result.available:
            await self.notifier_for(send).warning(result.detail)
