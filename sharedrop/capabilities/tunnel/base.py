"""Shared types for tunnel capability."""
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum

# Quick tunnels are assigned a random <label>.trycloudflare.com hostname
TRYCLOUDFLARE_URL_RE = re.compile(r"https://[a-z0-9-]+\.trycloudflare\.com")

# Unmatched output kept for matching across chunk boundaries
_SCRAPE_WINDOW = 16 * 1024


class TunnelStatus(Enum):
    UNKNOWN = "unknown"          # not attempted yet
    UNAVAILABLE = "unavailable"  # no executable on this host
    STARTING = "starting"        # spawned, URL not seen yet
    ACTIVE = "active"            # URL known
    FAILED = "failed"            # spawn failed or died on its own
    STOPPED = "stopped"          # stopped on request


@dataclass(frozen=True)
class TunnelEndpoint:
    """Snapshot of the tunnel as seen by consumers.

    Never mutated: the owner swaps in a new instance, so a reader holding a
    reference always sees a consistent url/status pair.
    """

    url: str | None = None
    executable: str | None = None
    status: TunnelStatus = TunnelStatus.UNKNOWN

    def evolve(self, **changes) -> TunnelEndpoint:
        return replace(self, **changes)


class UrlLatch:
    """One-way ``Unassigned -> Assigned(url)`` cell."""

    __slots__ = ("_url",)

    def __init__(self) -> None:
        self._url: str | None = None

    @property
    def value(self) -> str | None:
        return self._url

    @property
    def is_set(self) -> bool:
        return self._url is not None

    def set(self, url: str) -> bool:
        """Assign *url* if nothing was assigned yet.  Returns True if it took."""
        if self._url is not None:
            return False
        self._url = url
        return True


class TunnelUrlScraper:
    """Finds the public URL in free-form tunnel output.

    Output may be flushed mid-line, so matching runs over everything fed so
    far rather than the latest chunk.  Each stream keeps its own buffer, so
    stdout written between two halves of a stderr URL does not split it.
    Only the first match across all streams counts.
    """

    def __init__(self, pattern: re.Pattern[str] = TRYCLOUDFLARE_URL_RE) -> None:
        self._pattern = pattern
        self._buffers: dict[str, str] = {}
        self._latch = UrlLatch()

    @property
    def url(self) -> str | None:
        return self._latch.value

    def feed(self, chunk: str, stream: str = "err") -> str | None:
        """Add *chunk* from *stream*; return the URL the first time it shows up."""
        if self._latch.is_set:
            return None
        buffer = self._buffers.get(stream, "") + chunk
        match = self._pattern.search(buffer)
        if match and self._latch.set(match.group(0)):
            self._buffers.clear()
            return self._latch.value
        self._buffers[stream] = buffer[-_SCRAPE_WINDOW:]
        return None
