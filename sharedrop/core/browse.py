"""Folder listing for shared directories, guarded by resolve_within()."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from sharedrop.core.paths import resolve_within

IMAGE_EXTENSIONS = frozenset({
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".heic", ".heif",
    ".dng", ".cr2", ".nef", ".arw",
})
VIDEO_EXTENSIONS = frozenset({
    ".mp4", ".webm", ".ogg", ".mov", ".avi", ".mkv",
})

# macOS resource forks and Finder metadata
_HIDDEN_PREFIX = "._"
_HIDDEN_NAMES = frozenset({".DS_Store"})


@dataclass(frozen=True)
class FolderEntry:
    name: str
    size: int
    is_dir: bool
    is_image: bool = False
    is_video: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "size": self.size,
            "is_dir": self.is_dir,
            "is_image": self.is_image,
            "is_video": self.is_video,
        }


def _is_hidden(name: str) -> bool:
    return name.startswith(_HIDDEN_PREFIX) or name in _HIDDEN_NAMES


def list_folder(
    root: str | os.PathLike[str], requested: str | None = None,
) -> list[FolderEntry] | None:
    """List *requested* (relative to *root*), folders first.

    Returns ``None`` when the path escapes the root.  The caller maps that
    to an access-denied response without revealing whether the target exists.
    Raises ``FileNotFoundError`` / ``NotADirectoryError`` for a contained
    path that is missing or not a directory.
    """
    target = resolve_within(requested, root)
    if target is None:
        return None
    if not target.exists():
        raise FileNotFoundError(str(target))
    if not target.is_dir():
        raise NotADirectoryError(str(target))

    folders: list[FolderEntry] = []
    files: list[FolderEntry] = []
    for child in Path(target).iterdir():
        if _is_hidden(child.name):
            continue
        if child.is_dir():
            folders.append(FolderEntry(name=child.name, size=0, is_dir=True))
            continue
        ext = child.suffix.lower()
        try:
            size = child.stat().st_size
        except OSError:
            size = 0
        files.append(FolderEntry(
            name=child.name,
            size=size,
            is_dir=False,
            is_image=ext in IMAGE_EXTENSIONS,
            is_video=ext in VIDEO_EXTENSIONS,
        ))

    folders.sort(key=lambda e: e.name.lower())
    files.sort(key=lambda e: e.name.lower())
    return folders + files
