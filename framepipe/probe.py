"""One-shot check that the encoder binary can be invoked."""

from __future__ import annotations

import asyncio
import logging
import subprocess
from dataclasses import dataclass

DEFAULT_PROBE_TIMEOUT_SECONDS = 10.0

log = logging.getLogger("probe")


@dataclass(frozen=True)
class ProbeResult:
    available: bool
    detail: str = ""

    @property
    def version_line(self) -> str:
        return self.detail.splitlines()[0] if self.available and self.detail else ""


def probe_encoder(
    binary: str = "ffmpeg", *, timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS
) -> ProbeResult:
    """Run ``<binary> -version`` and report whether it succeeded."""
    try:
        completed = subprocess.run(
            [binary, "-version"],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError:
        result = ProbeResult(False, f"{binary}: command not found")
    except PermissionError as exc:
        result = ProbeResult(False, f"{binary}: {exc.strerror or 'permission denied'}")
    except subprocess.TimeoutExpired:
        result = ProbeResult(False, f"{binary} -version timed out after {timeout:g}s")
    except OSError as exc:
        result = ProbeResult(False, f"{binary}: {exc}")
    else:
        stdout = completed.stdout.decode("utf-8", errors="replace").strip()
        stderr = completed.stderr.decode("utf-8", errors="replace").strip()
        if completed.returncode == 0:
            result = ProbeResult(True, stdout)
        else:
            detail = stderr or stdout or f"exit status {completed.returncode}"
            result = ProbeResult(False, f"{binary} -version failed: {detail}")

    if result.available:
        log.info("encoder available: %s", result.version_line or binary)
    else:
        log.warning("encoder unavailable: %s", result.detail)
    return result


async def probe_encoder_async(
    binary: str = "ffmpeg", *, timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS
) -> ProbeResult:
    return await asyncio.to_thread(probe_encoder, binary, timeout=timeout)
