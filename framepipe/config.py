#!/usr/bin/env python3
"""
Unified configuration loader for framepipe.

Load order (first found wins):
  1) FRAMEPIPE_CONFIG (env, absolute or relative to CWD)
  2) /etc/framepipe/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

log = logging.getLogger("config")

EVENT_NAME_DEFAULTS: Dict[str, str] = {
    "start": "ssam:ffmpeg",
    "frame": "ssam:ffmpeg-newframe",
    "finish": "ssam:ffmpeg-done",
    "warning": "ssam:warn",
    "log": "ssam:log",
    "request_next_frame": "ssam:ffmpeg-reqframe",
}

_DEFAULTS: Dict[str, Any] = {
    "encoder": {
        "binary": "ffmpeg",
        "probe_timeout_sec": 10.0,
        "loglevel": "warning",
        "input_codec": "png",
        "finish_timeout_sec": 5.0,
        "video": {
            "codec": "libx264",
            "pix_fmt": "yuv420p",
            "preset": "slow",
            "crf": 18,
            "movflags": "+faststart",
        },
    },
    "output": {
        "out_dir": "./output",
        "sequence_padding": 5,
        "sequence_extension": "png",
        "video_extension": "mp4",
    },
    "notifications": {
        "enabled": True,
        "tag": "[ssam-ffmpeg]",
    },
    "events": EVENT_NAME_DEFAULTS.copy(),
    "web_server": {
        "listen_host": "127.0.0.1",
        "listen_port": 5174,
        "ws_path": "/ws",
        # Largest inbound websocket message in bytes; 0 disables the limit.
        "max_msg_size": 0,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def default_config() -> Dict[str, Any]:
    """Return a fresh copy of the built-in defaults."""
    return copy.deepcopy(_DEFAULTS)


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        log.warning("ignoring unreadable config file %s: %s", path, exc)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("FRAMEPIPE_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/framepipe/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    if "OUT_DIR" in os.environ:
        value = os.environ["OUT_DIR"].strip()
        if value:
            cfg.setdefault("output", {})["out_dir"] = value
    if "FFMPEG_BIN" in os.environ:
        value = os.environ["FFMPEG_BIN"].strip()
        if value:
            cfg.setdefault("encoder", {})["binary"] = value

    env_map = {
        "FRAMEPIPE_NOTIFY": ("notifications", "enabled", parse_bool),
        "SEQUENCE_PADDING": ("output", "sequence_padding", int),
        "LISTEN_HOST": ("web_server", "listen_host", str),
        "LISTEN_PORT": ("web_server", "listen_port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                log.warning("ignoring malformed %s=%r", env_key, os.environ[env_key])


def resolve_event_names(cfg: Dict[str, Any]) -> Dict[str, str]:
    """Return wire event names, falling back to defaults for blank entries."""
    section = cfg.get("events") if isinstance(cfg, dict) else None
    resolved: Dict[str, str] = {}
    for key, default in EVENT_NAME_DEFAULTS.items():
        value = section.get(key) if isinstance(section, dict) else None
        if isinstance(value, str) and value.strip():
            resolved[key] = value.strip()
        else:
            resolved[key] = default
    return resolved


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = default_config()

    # Derive project root relative to this file (framepipe/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    get_cfg()
    return list(_search_paths)
