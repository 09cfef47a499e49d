"""Share broker — ask the backend for a share and hand back a public link."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Callable

import aiohttp

from sharedrop.core.errors import NotReadyError, UpstreamError
from sharedrop.core.readiness import ReadinessState

logger = logging.getLogger(__name__)

SHARES_PATH = "/api/shares"


@dataclass
class ShareRequest:
    folder_path: str
    session_name: str | None = None
    expires_in_mins: int | None = None

    def to_payload(self) -> dict:
        payload: dict = {"folder_path": self.folder_path}
        if self.session_name is not None:
            payload["session_name"] = self.session_name
        if self.expires_in_mins is not None:
            payload["expires_in_mins"] = self.expires_in_mins
        return payload


@dataclass
class ShareResult:
    id: str
    public_url: str
    raw: dict = field(default_factory=dict)  # backend payload as returned

    def to_dict(self) -> dict:
        return {**self.raw, "id": self.id, "public_url": self.public_url}


def compose_share_url(base_url: str, share_id: str) -> str:
    return f"{base_url.rstrip('/')}/share/{share_id}"


def _extract_id(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    # Untagged Go structs serialize the field as "ID"
    share_id = payload.get("id", payload.get("ID"))
    if share_id is None or share_id == "":
        return None
    return str(share_id)


class ShareBroker:
    """One backend round trip per ``create_share`` call, no retries."""

    def __init__(
        self,
        readiness: ReadinessState,
        local_base_url: str,
        tunnel_url: Callable[[], str | None],
        timeout: float = 10.0,
    ) -> None:
        self._readiness = readiness
        self._local_base_url = local_base_url.rstrip("/")
        self._tunnel_url = tunnel_url
        self._timeout = timeout
        self.requests_sent = 0

    @property
    def local_base_url(self) -> str:
        return self._local_base_url

    async def create_share(self, request: ShareRequest) -> ShareResult:
        """Create a share for ``request.folder_path``.

        Raises NotReadyError (before any network traffic) when the backend
        is not ready, UpstreamError when the backend refuses or is
        unreachable.
        """
        if not self._readiness.ready:
            raise NotReadyError("Server is not ready yet, try again shortly")

        url = f"{self._local_base_url}{SHARES_PATH}"
        self.requests_sent += 1
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as session:
                async with session.post(url, json=request.to_payload()) as resp:
                    body = await resp.text()
                    status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Share request to %s failed: %s", url, e)
            raise UpstreamError(None, str(e) or type(e).__name__) from e

        if status != 200:
            logger.warning("Backend refused share (HTTP %d): %s", status, body[:200])
            raise UpstreamError(status, body)

        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            raise UpstreamError(status, f"invalid JSON from backend: {body[:200]}") from None
        share_id = _extract_id(payload)
        if share_id is None:
            raise UpstreamError(status, f"backend response has no share id: {body[:200]}")

        # Read the tunnel URL only now: a tunnel that came up during the
        # round trip is used, one that comes up later is not.
        base = self._tunnel_url() or self._local_base_url
        result = ShareResult(
            id=share_id,
            public_url=compose_share_url(base, share_id),
            raw=payload,
        )
        logger.info("Share %s created for %s: %s", share_id, request.folder_path, result.public_url)
        return result
