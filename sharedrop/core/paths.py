"""Containment-safe resolution of user-supplied paths against a fixed root."""
from __future__ import annotations

import os
from pathlib import Path


def resolve_within(requested: str | None, root: str | os.PathLike[str]) -> Path | None:
    """Resolve *requested* against *root*, or return ``None`` if it escapes.

    Pure string manipulation: no filesystem access and no existence check.
    An empty request resolves to the root itself.  Absolute requests are
    honoured only when they already point inside the root.
    """
    base = os.path.normpath(os.path.abspath(os.fspath(root)))
    if not requested:
        return Path(base)

    candidate = os.path.normpath(os.path.join(base, requested))
    if candidate == base:
        return Path(candidate)

    # "/tmp/shared-other" must not pass for root "/tmp/shared"
    prefix = base if base.endswith(os.sep) else base + os.sep
    if candidate.startswith(prefix):
        return Path(candidate)
    return None
