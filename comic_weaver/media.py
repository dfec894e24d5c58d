"""Ephemeral media handles.

Generated audio is exposed to the rest of the system as opaque handles
(``media:<hex>``) rather than raw bytes. The registry owns the bytes until a
handle is released; the orchestrator releases every handle belonging to a
StoryState it discards.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

HANDLE_PREFIX = "media:"


@dataclass(frozen=True)
class MediaItem:
    data: bytes
    mime_type: str


class MediaRegistry:
    def __init__(self) -> None:
        self._items: dict[str, MediaItem] = {}

    def register(self, data: bytes, mime_type: str = "audio/mpeg") -> str | None:
        """Store bytes and return a new handle. Empty data yields None."""
        if not data:
            return None
        handle = f"{HANDLE_PREFIX}{uuid.uuid4().hex}"
        self._items[handle] = MediaItem(data=data, mime_type=mime_type)
        return handle

    def get(self, handle: str) -> MediaItem | None:
        return self._items.get(handle)

    def release(self, handle: str | None) -> bool:
        if not handle:
            return False
        return self._items.pop(handle, None) is not None

    def release_all(self, handles: Iterable[str | None]) -> int:
        released = sum(1 for h in handles if self.release(h))
        if released:
            logger.debug("released %d media handles, %d live", released, len(self._items))
        return released

    def __contains__(self, handle: object) -> bool:
        return handle in self._items

    def __len__(self) -> int:
        return len(self._items)
