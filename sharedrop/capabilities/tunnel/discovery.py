"""Locate a cloudflared binary on this host."""
from __future__ import annotations

import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

TUNNEL_COMMAND = "cloudflared"

# Package-manager install locations, most likely first.
_PLATFORM_PATHS: dict[str, list[str]] = {
    "darwin": [
        "/opt/homebrew/bin/cloudflared",
        "/usr/local/bin/cloudflared",
    ],
    "win32": [
        r"C:\Program Files\cloudflared\cloudflared.exe",
        r"C:\Program Files (x86)\cloudflared\cloudflared.exe",
    ],
    "linux": [
        "/usr/local/bin/cloudflared",
        "/usr/bin/cloudflared",
    ],
}

_INSTALL_HINTS: dict[str, str] = {
    "darwin": "brew install cloudflare/cloudflare/cloudflared",
    "win32": (
        "Download from https://github.com/cloudflare/cloudflared/releases "
        "and run: cloudflared.exe service install"
    ),
    "linux": (
        "wget -q https://github.com/cloudflare/cloudflared/releases/latest/download/"
        "cloudflared-linux-amd64 -O /usr/local/bin/cloudflared "
        "&& chmod +x /usr/local/bin/cloudflared"
    ),
}


def _platform_key(platform: str) -> str:
    if platform.startswith("linux"):
        return "linux"
    return platform if platform in _PLATFORM_PATHS else "linux"


def candidate_paths(platform: str = sys.platform, override: str | None = None) -> list[str]:
    """Ordered places to look for the tunnel binary.

    An explicit *override* comes first; the bare command name, resolved via
    PATH, always comes last.
    """
    paths = list(_PLATFORM_PATHS[_platform_key(platform)])
    if override:
        paths.insert(0, override)
    paths.append(TUNNEL_COMMAND)
    return paths


def install_hint(platform: str = sys.platform) -> str:
    return _INSTALL_HINTS[_platform_key(platform)]


def find_tunnel_executable(candidates: Iterable[str]) -> str | None:
    """Return the first candidate that exists, or None.

    Entries without a path separator are looked up on PATH.
    """
    for candidate in candidates:
        if os.sep in candidate or (os.altsep and os.altsep in candidate):
            if Path(candidate).is_file():
                logger.debug("Tunnel executable found at %s", candidate)
                return candidate
            continue
        resolved = shutil.which(candidate)
        if resolved:
            logger.debug("Tunnel executable %s resolved to %s", candidate, resolved)
            return resolved
    return None
