#!/usr/bin/env python3
"""
aiohttp websocket host for framepipe recording sessions.

Behavior:
- On startup the encoder binary is probed once; if it is missing every
  connected (and later connecting) client gets a warning.
- Clients exchange dev-server style custom events as JSON text frames:
  {"type": "custom", "event": <name>, "data": <payload>}.
- Events from one client are handled in arrival order; replies go back to
  the same client.
- On cleanup any active encoder is finalized so no ffmpeg is left behind.

Endpoints:
  GET /ws       -> websocket (path configurable via web_server.ws_path)
  GET /healthz  -> "ok"
"""

import argparse
import json
import logging
from typing import Any, Dict, Mapping

from aiohttp import WSMsgType, web
from aiohttp.web import AppKey

from .config import active_config_path, get_cfg, reload_cfg, search_paths
from .event_router import EventRouter
from .recording_session import RecordingSession, SessionSettings

log = logging.getLogger("web_server")

SESSION_KEY: AppKey[RecordingSession] = web.AppKey("recording_session", RecordingSession)
ROUTER_KEY: AppKey[EventRouter] = web.AppKey("event_router", EventRouter)
CLIENTS_KEY: AppKey[set] = web.AppKey("ws_clients", set)
MAX_MSG_SIZE_KEY: AppKey[int] = web.AppKey("ws_max_msg_size", int)

CUSTOM_MESSAGE_TYPE = "custom"


def encode_event(event: str, data: Mapping[str, Any]) -> str:
    return json.dumps({"type": CUSTOM_MESSAGE_TYPE, "event": event, "data": dict(data)})


def decode_event(text: str) -> tuple[str, Any] | None:
    """Parse an inbound frame; returns None for anything that is not a custom event."""
    try:
        message = json.loads(text)
    except (TypeError, ValueError):
        return None
    if not isinstance(message, dict):
        return None
    msg_type = message.get("type", CUSTOM_MESSAGE_TYPE)
    event = message.get("event")
    if msg_type != CUSTOM_MESSAGE_TYPE or not isinstance(event, str) or not event:
        return None
    return event, message.get("data")


def _max_msg_size(server_cfg: Mapping[str, Any]) -> int:
    """Inbound websocket message limit in bytes; 0 means unlimited."""
    value = server_cfg.get("max_msg_size", 0)
    try:
        size = int(value or 0)
    except (TypeError, ValueError):
        log.warning("Invalid web_server.max_msg_size %r; using no limit", value)
        return 0
    return max(0, size)


def _send_to(ws: web.WebSocketResponse):
    async def _send(event: str, data: Dict[str, Any]) -> None:
        if ws.closed:
            log.debug("dropping %s for closed client", event)
            return
        try:
            await ws.send_str(encode_event(event, data))
        except ConnectionError as exc:
            log.debug("send %s failed: %r", event, exc)

    return _send


def _broadcaster(app: web.Application):
    async def _broadcast(event: str, data: Dict[str, Any]) -> None:
        payload = encode_event(event, data)
        for ws in list(app[CLIENTS_KEY]):
            if ws.closed:
                continue
            try:
                await ws.send_str(payload)
            except ConnectionError as exc:
                log.debug("broadcast to client failed: %r", exc)

    return _broadcast


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    app = request.app
    router = app[ROUTER_KEY]
    ws = web.WebSocketResponse(max_msg_size=app[MAX_MSG_SIZE_KEY])
    await ws.prepare(request)
    app[CLIENTS_KEY].add(ws)
    send = _send_to(ws)
    log.info("client connected (%s)", request.remote)
    try:
        await router.greet(send)
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                parsed = decode_event(msg.data)
                if parsed is None:
                    log.debug("ignoring malformed message: %.120r", msg.data)
                    continue
                event, data = parsed
                await router.dispatch(event, data, send)
            elif msg.type == WSMsgType.ERROR:
                log.warning("websocket closed with exception %r", ws.exception())
    finally:
        app[CLIENTS_KEY].discard(ws)
        log.info("client disconnected (%s)", request.remote)
    return ws


def build_app(
    cfg: Mapping[str, Any] | None = None,
    *,
    session: RecordingSession | None = None,
) -> web.Application:
    cfg = dict(cfg if cfg is not None else get_cfg())
    if session is None:
        session = RecordingSession(SessionSettings.from_cfg(cfg))
    router = EventRouter.from_cfg(session, cfg)
    server_cfg = cfg.get("web_server") or {}

    app = web.Application()
    app[SESSION_KEY] = session
    app[ROUTER_KEY] = router
    app[CLIENTS_KEY] = set()
    app[MAX_MSG_SIZE_KEY] = _max_msg_size(server_cfg)

    async def _probe_encoder(app: web.Application) -> None:
        await router.announce_capability(_broadcaster(app))

    async def _close_clients(app: web.Application) -> None:
        for ws in list(app[CLIENTS_KEY]):
            await ws.close(code=1001, message=b"server shutdown")

    async def _shutdown_session(app: web.Application) -> None:
        await app[SESSION_KEY].shutdown()

    app.on_startup.append(_probe_encoder)
    app.on_shutdown.append(_close_clients)
    app.on_cleanup.append(_shutdown_session)

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok\n")

    ws_path = str(server_cfg.get("ws_path") or "/ws")
    app.router.add_get(ws_path, websocket_handler)
    app.router.add_get("/healthz", healthz)
    return app


def cli_main() -> int:
    parser = argparse.ArgumentParser(description="Websocket frame recorder (ffmpeg bridge).")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument("--out-dir", help="Override output directory (defaults to config).")
    parser.add_argument("--log-level", default=None, help="Python logging level (default: INFO).")
    args = parser.parse_args()

    cfg = reload_cfg()
    dev_mode = bool((cfg.get("logging") or {}).get("dev_mode"))
    level_name = args.log_level or ("DEBUG" if dev_mode else "INFO")
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    config_path = active_config_path()
    if config_path is None:
        log.info(
            "No config file found (searched %s); using defaults",
            ", ".join(str(p) for p in search_paths()),
        )
    else:
        log.info("Using config file %s", config_path)

    if args.out_dir:
        cfg.setdefault("output", {})["out_dir"] = args.out_dir
    server_cfg = cfg.get("web_server") or {}
    host = args.host or server_cfg.get("listen_host") or "127.0.0.1"
    try:
        port = int(args.port or server_cfg.get("listen_port") or 5174)
    except (TypeError, ValueError):
        log.error("Invalid listen_port %r", server_cfg.get("listen_port"))
        return 1

    log.info(
        "Starting framepipe on %s:%s (out_dir=%s)",
        host,
        port,
        (cfg.get("output") or {}).get("out_dir"),
    )
    try:
        web.run_app(build_app(cfg), host=host, port=port, print=None)
    except OSError as exc:
        log.error("Unable to start framepipe: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
