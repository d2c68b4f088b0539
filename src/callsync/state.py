"""File-backed sync watermark store.

The watermark lives in a single small JSON document (``sync.state``) inside
the configured state directory::

    {
      "last_synced_epoch_s": 1760000000,
      "last_synced_iso": "2025-10-09T08:53:20+00:00",
      "updated_at": "2025-10-09T08:53:21.120311+00:00"
    }

Writes go to a temp file in the same directory, are fsynced, then renamed over
the target so a reader sees either the previous document or the new one.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from .models import SyncWatermark

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "sync.state"


class WatermarkStore:
    """Durable last-synced watermark with atomic replace-on-write."""

    def __init__(self, state_dir: str | Path, *, file_name: str = STATE_FILE_NAME) -> None:
        self._dir = Path(state_dir)
        self._path = self._dir / file_name

    @property
    def path(self) -> Path:
        return self._path

    async def get_state(self) -> SyncWatermark | None:
        """Return the persisted watermark document, or ``None`` when absent."""
        return await asyncio.to_thread(self._read)

    async def get_watermark(self) -> int:
        """Return the watermark in epoch seconds; 0 means never synced."""
        state = await self.get_state()
        return state.last_synced_epoch_s if state is not None else 0

    async def set_watermark(self, epoch_seconds: int) -> SyncWatermark:
        """Atomically persist *epoch_seconds* as the new watermark."""
        state = SyncWatermark.at(int(epoch_seconds))
        await asyncio.to_thread(self._write, state)
        logger.debug("Watermark saved: %s", state.last_synced_iso)
        return state

    async def reset(self) -> None:
        """Remove the watermark entirely."""
        await asyncio.to_thread(self._remove)

    def _read(self) -> SyncWatermark | None:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return SyncWatermark.model_validate(json.loads(text))
        except (ValueError, ValidationError) as exc:
            logger.error("Ignoring unreadable sync state %s: %s", self._path, exc)
            return None

    def _write(self, state: SyncWatermark) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", suffix=".tmp", dir=self._dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(state.model_dump(mode="json"), handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _remove(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            return
        logger.info("Sync state reset (%s removed)", self._path)
