"""JSON file storage for story snapshots.

Directory layout:

    {base}/
      snapshots/
        current.json              ← the in-progress story (one slot)
        completed.json            ← the last finished story, for replay
      assets/
        background_music.bin      ← bytes behind the current story's music handle

Media handles are process-local, so the music bytes are written beside the
snapshot and re-registered on load. Panel audio is not persisted.

Reads never raise: a missing, unreadable or malformed file is logged and
treated as "no saved story". Writes raise ``OSError`` to the caller.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from comic_weaver.models import Snapshot

logger = logging.getLogger(__name__)


class SnapshotStore:
    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._snapshots = self._base / "snapshots"
        self._assets = self._base / "assets"
        self._snapshots.mkdir(parents=True, exist_ok=True)
        self._assets.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    @property
    def _current_file(self) -> Path:
        return self._snapshots / "current.json"

    @property
    def _completed_file(self) -> Path:
        return self._snapshots / "completed.json"

    @property
    def _music_file(self) -> Path:
        return self._assets / "background_music.bin"

    def _read_snapshot(self, path: Path) -> Snapshot | None:
        if not path.exists():
            return None
        try:
            return Snapshot.model_validate_json(path.read_text())
        except (OSError, ValidationError, ValueError) as e:
            logger.error("Failed to read snapshot %s: %s", path.name, e)
            return None

    def _write_snapshot(self, path: Path, snapshot: Snapshot) -> None:
        tmp = path.with_suffix(".tmp")
        tmp.write_text(snapshot.model_dump_json(indent=2, by_alias=False))
        tmp.replace(path)

    # ------------------------------------------------------------------
    # Current story
    # ------------------------------------------------------------------

    def has_saved(self) -> bool:
        return self._current_file.exists()

    def load(self) -> Snapshot | None:
        return self._read_snapshot(self._current_file)

    def save(self, snapshot: Snapshot, background_music: bytes | None = None) -> None:
        """Write the current snapshot.

        ``background_music`` replaces the stored music asset when given. A
        snapshot without music removes a stale asset.
        """
        self._write_snapshot(self._current_file, snapshot)
        if background_music:
            self._music_file.write_bytes(background_music)
        elif not snapshot.story.background_music:
            self._music_file.unlink(missing_ok=True)
        logger.debug("saved snapshot label=%s panels=%d",
                     snapshot.state_label, len(snapshot.story.all_panels))

    def load_background_music(self) -> bytes | None:
        if not self._music_file.exists():
            return None
        try:
            return self._music_file.read_bytes() or None
        except OSError as e:
            logger.error("Failed to read background music asset: %s", e)
            return None

    def clear(self) -> None:
        self._current_file.unlink(missing_ok=True)
        self._music_file.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Completed story
    # ------------------------------------------------------------------

    def has_completed(self) -> bool:
        return self._completed_file.exists()

    def load_completed(self) -> Snapshot | None:
        return self._read_snapshot(self._completed_file)

    def save_completed(self, snapshot: Snapshot) -> None:
        self._write_snapshot(self._completed_file, snapshot)
