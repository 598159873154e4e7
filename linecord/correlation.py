"""Bidirectional message-id correlation between LINE and Discord.

Two indices share the same records: ``AtoB`` is keyed by the LINE message
id and ``BtoA`` by the Discord message id, so a lookup in either direction
is a single dict read. The whole store is written to one JSON document
after every mutation.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import PersistenceError
from .models import Direction, MessageCorrelation, Platform, utcnow
from .storage import JsonDocument

logger = logging.getLogger("linecord.correlation")

SNAPSHOT_LIMIT = 200


class CorrelationStore:
    """In-memory correlation indices backed by a JSON snapshot.

    Usage:
        store = CorrelationStore("data/message-mappings.json")
        store.load()
        store.create(line_id, discord_id, origin=Platform.LINE)
        store.lookup(line_id, Direction.LINE_TO_DISCORD)  # → discord_id
    """

    def __init__(
        self,
        path: str,
        max_entries: int = 10000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._doc = JsonDocument(path)
        self._max_entries = max_entries
        self._clock = clock
        self._by_line: dict[str, MessageCorrelation] = {}
        self._by_discord: dict[str, MessageCorrelation] = {}
        self.loaded = False

    # ── Mutations ────────────────────────────────────────────

    def create(
        self,
        source_id: str,
        target_id: str,
        *,
        origin: Platform = Platform.LINE,
        source_user_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        content_snapshot: str = "",
    ) -> MessageCorrelation:
        """Record that ``target_id`` is the delivered copy of ``source_id``.

        Re-creating an existing pair overwrites it. The snapshot is written
        before returning.

        Raises:
            PersistenceError: If the snapshot write fails. The in-memory
                indices are already updated and stay valid.
        """
        entry = MessageCorrelation(
            source_id=str(source_id),
            target_id=str(target_id),
            origin=Platform(origin),
            source_user_id=source_user_id,
            channel_id=channel_id,
            content_snapshot=(content_snapshot or "")[:SNAPSHOT_LIMIT],
            created_at=self._clock(),
        )
        self._by_line[entry.line_id] = entry
        self._by_discord[entry.discord_id] = entry
        self._evict_overflow()

        logger.debug(f"Correlated LINE {entry.line_id} ↔ Discord {entry.discord_id}")
        self.save()
        return entry

    def alias(
        self,
        source_id: str,
        target_id: str,
        *,
        origin: Platform = Platform.LINE,
        channel_id: Optional[str] = None,
        content_snapshot: str = "",
    ) -> MessageCorrelation:
        """Point ``target_id`` back at ``source_id`` without a forward entry.

        Used for extra messages (reply annotations) delivered on behalf of
        ``source_id``, whose own forward correlation must stay intact.

        Raises:
            PersistenceError: If the snapshot write fails.
        """
        entry = MessageCorrelation(
            source_id=str(source_id),
            target_id=str(target_id),
            origin=Platform(origin),
            channel_id=channel_id,
            content_snapshot=(content_snapshot or "")[:SNAPSHOT_LIMIT],
            created_at=self._clock(),
        )
        index = self._by_discord if entry.origin == Platform.LINE else self._by_line
        index[entry.target_id] = entry
        self._evict_overflow()

        logger.debug(f"Aliased {entry.target_id} → {entry.source_id}")
        self.save()
        return entry

    def remove(self, line_id: Optional[str] = None, discord_id: Optional[str] = None) -> bool:
        """Remove the entries for a LINE id and/or Discord id.

        Returns:
            True if anything was removed.
        """
        removed = False
        for key, index in ((line_id, self._by_line), (discord_id, self._by_discord)):
            if key is None:
                continue
            entry = index.pop(str(key), None)
            if entry is None:
                continue
            removed = True
            self._drop_from_other_index(entry)
        if removed:
            self.save()
        return removed

    def sweep_expired(self, max_age_days: float) -> int:
        """Remove correlations older than ``max_age_days``.

        Returns:
            Number of distinct correlations removed.
        """
        cutoff = self._clock() - timedelta(days=max_age_days)
        removed: set[tuple[str, str]] = set()

        for index in (self._by_line, self._by_discord):
            for key in [k for k, e in index.items() if e.created_at < cutoff]:
                entry = index.pop(key)
                removed.add((entry.source_id, entry.target_id))

        if removed:
            logger.info(f"Swept {len(removed)} correlations older than {max_age_days} days")
            self.save()
        return len(removed)

    # ── Reads ────────────────────────────────────────────────

    def get(self, message_id: str, direction: Direction) -> Optional[MessageCorrelation]:
        index = self._by_line if direction == Direction.LINE_TO_DISCORD else self._by_discord
        return index.get(str(message_id))

    def lookup(self, message_id: str, direction: Direction) -> Optional[str]:
        """Return the counterpart id on the other platform, or None."""
        entry = self.get(message_id, direction)
        if entry is None:
            return None
        return entry.counterpart(direction)

    def __len__(self) -> int:
        return len(self._by_line)

    def get_stats(self) -> dict:
        now = self._clock()
        day_ago = now - timedelta(days=1)
        week_ago = now - timedelta(days=7)
        entries = list(self._by_line.values())
        return {
            "line_to_discord": len(self._by_line),
            "discord_to_line": len(self._by_discord),
            "last_day": sum(1 for e in entries if e.created_at >= day_ago),
            "last_week": sum(1 for e in entries if e.created_at >= week_ago),
            "max_entries": self._max_entries,
        }

    # ── Persistence ──────────────────────────────────────────

    def load(self) -> int:
        """Load the snapshot from disk.

        A missing or corrupt document leaves the store empty; neither is
        fatal. Individual malformed entries are skipped.

        Returns:
            Number of LINE-keyed entries loaded.
        """
        self._by_line.clear()
        self._by_discord.clear()
        data = self._doc.load()
        self.loaded = True
        if not data:
            return 0

        skipped = 0
        for raw_key, index in (("AtoB", self._by_line), ("BtoA", self._by_discord)):
            for key, raw in (data.get(raw_key) or {}).items():
                try:
                    index[str(key)] = MessageCorrelation.from_dict(raw)
                except (KeyError, TypeError, ValueError) as e:
                    skipped += 1
                    logger.debug(f"Skipping malformed correlation {key}: {e}")

        if skipped:
            logger.warning(f"Skipped {skipped} malformed correlation entries in {self._doc.path}")
        logger.info(
            f"Loaded {len(self._by_line)} LINE→Discord and "
            f"{len(self._by_discord)} Discord→LINE correlations"
        )
        return len(self._by_line)

    def save(self) -> None:
        """Write the full snapshot.

        Raises:
            PersistenceError: On write failure.
        """
        data = {
            "AtoB": {k: e.to_dict() for k, e in self._by_line.items()},
            "BtoA": {k: e.to_dict() for k, e in self._by_discord.items()},
            "lastUpdated": self._clock().isoformat(),
        }
        try:
            self._doc.save(data)
        except PersistenceError as e:
            logger.error(f"Correlation snapshot not saved: {e}")
            raise

    # ── Internals ────────────────────────────────────────────

    def _drop_from_other_index(self, entry: MessageCorrelation) -> None:
        for key, index in ((entry.line_id, self._by_line), (entry.discord_id, self._by_discord)):
            if index.get(key) == entry:
                del index[key]

    def _evict_overflow(self) -> None:
        evicted = 0
        for index, other in ((self._by_line, self._by_discord), (self._by_discord, self._by_line)):
            overflow = len(index) - self._max_entries
            if overflow <= 0:
                continue
            oldest = sorted(index.items(), key=lambda kv: kv[1].created_at)[:overflow]
            for key, entry in oldest:
                del index[key]
                for other_key in (entry.line_id, entry.discord_id):
                    if other.get(other_key) == entry:
                        del other[other_key]
            evicted += len(oldest)
        if evicted:
            logger.info(f"Evicted {evicted} oldest correlations (limit {self._max_entries})")
