"""File-backed TTL cache for fetched specification payloads.

Entries are keyed by `(source_id, unit_id)`. The key is the SHA-256 hex digest of
``f"{source_id}\\x1f{unit_id}"`` and is used only to produce a filesystem-safe file name
(``<cache_dir>/<key>.json``); it carries no security meaning. The source id is the
``"<spreadsheet>/<worksheet>"`` pair from the batch input.

An entry is valid while ``now - created_at < ttl``. With ``force_refresh`` every lookup is a
miss, but stale files are left in place until the next successful `put` overwrites them.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)
_KEY_SEPARATOR = "\x1f"


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def cache_key(source_id: str, unit_id: str) -> str:
    """Stable file-name key for a `(source_id, unit_id)` pair."""

    return hashlib.sha256(f"{source_id}{_KEY_SEPARATOR}{unit_id}".encode()).hexdigest()


@dataclass(slots=True)
class CacheEntry:
    """One cached specification payload."""

    key: str
    source_id: str
    unit_id: str
    payload: str
    created_at: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at

    def is_valid(self, now: datetime, ttl: timedelta) -> bool:
        return self.age(now) < ttl

    def to_json(self) -> dict[str, str]:
        return {
            "key": self.key,
            "source_id": self.source_id,
            "unit_id": self.unit_id,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_json(cls, raw: dict[str, object]) -> CacheEntry:
        created_raw = raw.get("created_at")
        payload = raw.get("payload")
        if not isinstance(created_raw, str) or not isinstance(payload, str):
            raise ValueError("cache entry requires string created_at and payload")
        created_at = datetime.fromisoformat(created_raw)
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        return cls(
            key=str(raw.get("key", "")),
            source_id=str(raw.get("source_id", "")),
            unit_id=str(raw.get("unit_id", "")),
            payload=payload,
            created_at=created_at,
        )


class SpecCache:
    """Key/value store with a fixed validity window."""

    def __init__(
        self,
        cache_dir: Path,
        *,
        ttl: timedelta = DEFAULT_TTL,
        force_refresh: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.cache_dir = cache_dir
        self.ttl = ttl
        self.force_refresh = force_refresh
        self._clock = clock

    def path_for(self, source_id: str, unit_id: str) -> Path:
        return self.cache_dir / f"{cache_key(source_id, unit_id)}.json"

    def get(self, source_id: str, unit_id: str) -> str | None:
        """Return the cached payload, or None on a miss."""

        if self.force_refresh:
            logger.info("Cache bypassed for unit %s (force refresh)", unit_id)
            return None
        entry = self.inspect(source_id, unit_id)
        if entry is None:
            logger.info("No cache entry for unit %s", unit_id)
            return None
        if not entry.is_valid(self._clock(), self.ttl):
            logger.info(
                "Cache entry for unit %s expired (age %s)",
                unit_id,
                entry.age(self._clock()),
            )
            return None
        logger.info("Found valid cache for unit %s", unit_id)
        return entry.payload

    def put(self, source_id: str, unit_id: str, payload: str) -> CacheEntry:
        """Store a freshly fetched payload, replacing any previous entry."""

        entry = CacheEntry(
            key=cache_key(source_id, unit_id),
            source_id=source_id,
            unit_id=unit_id,
            payload=payload,
            created_at=self._clock(),
        )
        path = self.path_for(source_id, unit_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(entry.to_json(), ensure_ascii=False, indent=2), "utf-8")
        tmp_path.replace(path)
        logger.info("Cached specification for unit %s at %s", unit_id, path)
        return entry

    def inspect(self, source_id: str, unit_id: str) -> CacheEntry | None:
        """Load an entry regardless of validity; unreadable entries are treated as absent."""

        return self._load(self.path_for(source_id, unit_id))

    def prune(self) -> int:
        """Delete expired or unreadable entries; return the number of removed files."""

        if not self.cache_dir.exists():
            return 0
        now = self._clock()
        removed = 0
        for path in sorted(self.cache_dir.glob("*.json")):
            entry = self._load(path)
            if entry is not None and entry.is_valid(now, self.ttl):
                continue
            path.unlink(missing_ok=True)
            removed += 1
        return removed

    def _load(self, path: Path) -> CacheEntry | None:
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text("utf-8"))
            if not isinstance(raw, dict):
                raise TypeError("cache entry is not a JSON object")
            return CacheEntry.from_json(raw)
        except (OSError, ValueError, TypeError) as error:
            logger.warning("Ignoring unreadable cache entry %s: %s", path, error)
            return None
