"""Durable registry of known speakers.

The registry keeps every known speaker in memory and mirrors each change
to a snapshot store. Mutations build a new map, persist it, and only then
publish it, so readers never observe a change the store has not accepted
and a failed write leaves the registry exactly as it was before the call.

Concurrency:
- Readers take a consistent reference to the current map under a short
  state lock and never wait for disk I/O
- Writers are serialized by a mutation lock held across the snapshot write
- In write-behind mode the map is published immediately and snapshots are
  written in order by a single background worker; a failed background
  write is reported by flush()
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Callable, Optional

from .errors import DimensionMismatch, PersistenceError
from .models import AudioSegmentInfo, RegistryStats, Speaker, SpeakerMatch, VoiceSignature
from .similarity import DEFAULT_WEIGHTS, SimilarityWeights, cosine_similarity, signature_similarity
from .store import JsonFileStore, SnapshotStore

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)

DEFAULT_FIND_THRESHOLD = 0.7


class SpeakerRegistry:
    """Thread-safe map of speaker id to Speaker, backed by a snapshot store."""

    def __init__(
        self,
        store: SnapshotStore,
        weights: SimilarityWeights = DEFAULT_WEIGHTS,
        write_behind: bool = False,
    ):
        self.store = store
        self.weights = weights
        self.write_behind = write_behind
        self._speakers: dict[str, Speaker] = {}
        self._state_lock = threading.Lock()
        self._mutation_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._last_write: Optional[Future] = None
        self._closed = False
        if write_behind:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="speaker-snapshot")

    @classmethod
    def open(
        cls,
        store: Optional[SnapshotStore] = None,
        settings: Optional["Settings"] = None,
        write_behind: Optional[bool] = None,
    ) -> "SpeakerRegistry":
        """Create a registry and load its persisted snapshot.

        Args:
            store: Snapshot store (defaults to the JSON file in the data dir).
            settings: Settings for weights, path and write mode.
            write_behind: Overrides ``settings.write_behind``.
        """
        if settings is None:
            from .config import get_settings

            settings = get_settings()
        if store is None:
            store = JsonFileStore(settings.registry_path)
        if write_behind is None:
            write_behind = settings.write_behind
        registry = cls(store, weights=settings.weights, write_behind=write_behind)
        registry.load()
        return registry

    def load(self) -> int:
        """Replace the in-memory map with the stored snapshot.

        A missing or unreadable snapshot yields an empty registry; losing
        speaker history is recoverable, refusing to start is not.

        Returns:
            Number of speakers loaded.
        """
        try:
            speakers = self.store.load()
        except PersistenceError as e:
            logger.warning("Speaker registry could not be loaded, starting empty: %s", e)
            speakers = None

        loaded = {s.id: s for s in speakers or []}
        with self._state_lock:
            self._speakers = loaded
        logger.info("Loaded %d speakers", len(loaded))
        return len(loaded)

    # Reads

    def _current(self) -> dict[str, Speaker]:
        with self._state_lock:
            return self._speakers

    def get(self, speaker_id: str) -> Optional[Speaker]:
        """Get a speaker by ID, or None."""
        return self._current().get(speaker_id)

    def list_all(self) -> list[Speaker]:
        """All speakers, most recently used first (ties by id)."""
        speakers = list(self._current().values())
        speakers.sort(key=lambda s: s.id)
        speakers.sort(key=lambda s: s.last_used_at, reverse=True)
        return speakers

    def __len__(self) -> int:
        return len(self._current())

    def __contains__(self, speaker_id: object) -> bool:
        return speaker_id in self._current()

    def find_similar(
        self,
        signature: VoiceSignature,
        threshold: float = DEFAULT_FIND_THRESHOLD,
        embedding_floor: Optional[float] = None,
    ) -> list[SpeakerMatch]:
        """Rank known speakers by signature similarity.

        Linear scan over all speakers. Speakers whose embedding dimension
        differs from the query are skipped.

        Args:
            signature: Query signature.
            threshold: Minimum signature similarity to be returned.
            embedding_floor: If set, speakers whose raw embedding cosine
                similarity is below this are skipped.

        Returns:
            Matches sorted by similarity descending (ties by speaker id).
        """
        matches = []
        for speaker in self._current().values():
            try:
                similarity = signature_similarity(signature, speaker.signature, self.weights)
                if embedding_floor is not None:
                    raw = cosine_similarity(signature.embedding, speaker.signature.embedding)
                    if raw < embedding_floor:
                        continue
            except DimensionMismatch:
                logger.debug("Skipping speaker %s: embedding dimension differs", speaker.id)
                continue
            if similarity >= threshold:
                matches.append(
                    SpeakerMatch(
                        speaker_id=speaker.id,
                        similarity=similarity,
                        confidence=speaker.confidence,
                    )
                )
        matches.sort(key=lambda m: (-m.similarity, m.speaker_id))
        return matches

    def statistics(self) -> RegistryStats:
        return RegistryStats.from_speakers(self._current().values())

    # Mutations

    def _mutate(self, change: Callable[[dict[str, Speaker]], None]) -> None:
        """Apply ``change`` to a copy of the map, persist, then publish."""
        with self._mutation_lock:
            if self._closed:
                raise RuntimeError("Speaker registry is closed")
            updated = dict(self._current())
            change(updated)
            snapshot = list(updated.values())

            if self.write_behind:
                with self._state_lock:
                    self._speakers = updated
                self._schedule_write(snapshot)
                return

            try:
                self.store.save(snapshot)
            except PersistenceError:
                logger.warning("Snapshot write failed; registry left unchanged")
                raise
            with self._state_lock:
                self._speakers = updated

    def add(self, speaker: Speaker) -> Speaker:
        """Insert or replace a speaker and persist.

        Raises:
            InvalidEmbedding: If the speaker's embedding is empty or
                non-finite. Nothing is changed.
            ValueError: If the speaker's voice features are invalid.
            PersistenceError: If the snapshot write failed. The registry is
                unchanged and the call may be retried.
        """
        speaker.signature.validate()

        def change(speakers: dict[str, Speaker]) -> None:
            speakers[speaker.id] = speaker

        self._mutate(change)
        return speaker

    def update(self, speaker: Speaker) -> Speaker:
        """Insert or replace a speaker and persist (same as add)."""
        return self.add(speaker)

    def delete(self, speaker_id: str) -> None:
        """Remove a speaker and persist. Unknown IDs are ignored."""
        if speaker_id not in self._current():
            return

        def change(speakers: dict[str, Speaker]) -> None:
            speakers.pop(speaker_id, None)

        self._mutate(change)

    def rename(self, speaker_id: str, name: Optional[str]) -> Optional[Speaker]:
        """Set or clear a speaker's display name."""
        return self._modify(speaker_id, lambda s: s.renamed(name))

    def record_usage(
        self, speaker_id: str, segment: AudioSegmentInfo
    ) -> Optional[Speaker]:
        """Apply one confident match's usage statistics to a speaker."""
        return self._modify(speaker_id, lambda s: s.record_usage(segment.duration))

    def _modify(
        self, speaker_id: str, transform: Callable[[Speaker], Speaker]
    ) -> Optional[Speaker]:
        result: list[Speaker] = []

        def change(speakers: dict[str, Speaker]) -> None:
            current = speakers.get(speaker_id)
            if current is None:
                return
            updated = transform(current)
            speakers[speaker_id] = updated
            result.append(updated)

        if speaker_id not in self._current():
            return None
        self._mutate(change)
        return result[0] if result else None

    # Write-behind

    def _schedule_write(self, snapshot: list[Speaker]) -> None:
        future = self._executor.submit(self.store.save, snapshot)
        future.add_done_callback(self._log_write_failure)
        self._last_write = future

    @staticmethod
    def _log_write_failure(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.warning("Background snapshot write failed: %s", error)

    def flush(self) -> None:
        """Wait for pending snapshot writes and report their failure.

        A failed background write is retried once with the current state.

        Raises:
            PersistenceError: If the snapshot still could not be written.
                Memory keeps the latest state; call flush() again to retry.
        """
        last_write = self._last_write
        if last_write is None:
            return
        wait([last_write])
        if last_write.exception() is None:
            return

        with self._mutation_lock:
            try:
                self.store.save(list(self._current().values()))
            except PersistenceError as e:
                raise PersistenceError(
                    f"Pending speaker snapshot could not be written: {e}", retryable=True, cause=e
                ) from e
            if self._last_write is last_write:
                self._last_write = None

    def close(self) -> None:
        """Flush pending writes and stop the background writer."""
        with self._mutation_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.flush()
        finally:
            if self._executor is not None:
                self._executor.shutdown(wait=True)


_registry: Optional[SpeakerRegistry] = None
_registry_lock = threading.Lock()


def init_registry(
    store: Optional[SnapshotStore] = None,
    settings: Optional["Settings"] = None,
    write_behind: Optional[bool] = None,
) -> SpeakerRegistry:
    """Open the process-wide registry, replacing any previous one."""
    global _registry
    with _registry_lock:
        if _registry is not None:
            _registry.close()
        _registry = SpeakerRegistry.open(store=store, settings=settings, write_behind=write_behind)
        return _registry


def get_registry() -> SpeakerRegistry:
    """Get the process-wide registry, opening it on first use."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = SpeakerRegistry.open()
        return _registry


def shutdown_registry() -> None:
    """Flush and close the process-wide registry."""
    global _registry
    with _registry_lock:
        registry, _registry = _registry, None
    if registry is not None:
        registry.close()
