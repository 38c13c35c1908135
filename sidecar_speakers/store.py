"""Snapshot persistence for the speaker registry.

The registry is small (tens to low hundreds of speakers), so it is stored
as one JSON snapshot that is read in full at startup and rewritten in full
on every mutation.

File layout:
    {"version": 1, "speakers": [<Speaker.to_dict()>, ...]}

Durability:
- Snapshots are written to a temporary file in the target directory,
  fsynced, then moved over the old snapshot with os.replace, so a crash
  leaves either the old or the new snapshot on disk, never a torn one
- Writes are serialized by a per-store lock
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional

from .errors import PersistenceError
from .models import Speaker
from .paths import get_registry_path

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def encode_snapshot(speakers: Iterable[Speaker]) -> str:
    """Serialize speakers to snapshot text (sorted by id for stable output)."""
    payload = {
        "version": SNAPSHOT_VERSION,
        "speakers": [s.to_dict() for s in sorted(speakers, key=lambda s: s.id)],
    }
    return json.dumps(payload, indent=2, allow_nan=False)


def decode_snapshot(text: str) -> list[Speaker]:
    """Parse snapshot text.

    Raises:
        PersistenceError: If the text is not a valid snapshot.
    """
    try:
        data = json.loads(text)
        if not isinstance(data, dict) or not isinstance(data.get("speakers"), list):
            raise ValueError("snapshot must be an object with a 'speakers' list")
        version = data.get("version", SNAPSHOT_VERSION)
        if version > SNAPSHOT_VERSION:
            raise ValueError(f"unsupported snapshot version {version}")
        speakers = [Speaker.from_dict(item) for item in data["speakers"]]
        for speaker in speakers:
            speaker.signature.validate()
    except (ValueError, KeyError, TypeError) as e:
        raise PersistenceError(f"Corrupt speaker snapshot: {e}", retryable=False, cause=e) from e

    seen: set[str] = set()
    for speaker in speakers:
        if speaker.id in seen:
            raise PersistenceError(
                f"Corrupt speaker snapshot: duplicate id {speaker.id}", retryable=False
            )
        seen.add(speaker.id)
    return speakers


class SnapshotStore(ABC):
    """Where registry snapshots live."""

    @abstractmethod
    def load(self) -> Optional[list[Speaker]]:
        """Return the stored speakers, or None if nothing was ever saved.

        Raises:
            PersistenceError: If a snapshot exists but cannot be read.
        """

    @abstractmethod
    def save(self, speakers: Iterable[Speaker]) -> None:
        """Replace the stored snapshot.

        Raises:
            PersistenceError: If the snapshot could not be written.
        """


class JsonFileStore(SnapshotStore):
    """JSON snapshot on the local filesystem."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_registry_path()
        self._write_lock = threading.Lock()

    def load(self) -> Optional[list[Speaker]]:
        if not self.path.exists():
            return None
        try:
            text = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceError(
                f"Could not read {self.path}: {e}", retryable=False, cause=e
            ) from e
        return decode_snapshot(text)

    def save(self, speakers: Iterable[Speaker]) -> None:
        text = encode_snapshot(speakers)
        with self._write_lock:
            tmp_path: Optional[str] = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with tempfile.NamedTemporaryFile(
                    mode="w",
                    encoding="utf-8",
                    dir=self.path.parent,
                    prefix=f".{self.path.name}.",
                    suffix=".tmp",
                    delete=False,
                ) as f:
                    tmp_path = f.name
                    f.write(text)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
                tmp_path = None
            except OSError as e:
                raise PersistenceError(f"Could not write {self.path}: {e}", cause=e) from e
            finally:
                if tmp_path is not None:
                    try:
                        os.unlink(tmp_path)
                    except OSError:
                        logger.debug("Could not remove temporary snapshot %s", tmp_path)


class MemoryStore(SnapshotStore):
    """In-process snapshot store for tests and ephemeral registries.

    Snapshots are kept as encoded text so a reload goes through the same
    serialization as the file store. Set ``fail_writes`` to simulate a
    failing disk.
    """

    def __init__(self, text: Optional[str] = None):
        self.text = text
        self.fail_writes = False
        self.save_count = 0
        self._write_lock = threading.Lock()

    def load(self) -> Optional[list[Speaker]]:
        if self.text is None:
            return None
        return decode_snapshot(self.text)

    def save(self, speakers: Iterable[Speaker]) -> None:
        with self._write_lock:
            if self.fail_writes:
                raise PersistenceError("Simulated snapshot write failure")
            self.text = encode_snapshot(speakers)
            self.save_count += 1
