"""Client-side query cache.

Entries are keyed by tuples of path segments, e.g. ``("/api/signals",)`` or
``("/api/market-regime", "NIFTY")``. Polls and push events write into the
same entry; for record lists every field remembers when it was observed and
an older observation never overwrites a newer one.
"""
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

QueryKey = Tuple[str, ...]


@dataclass
class CacheEntry:
    data: Any
    updated_at: float
    stale: bool = False
    # record id -> field name -> observed_at
    field_stamps: Dict[str, Dict[str, float]] = field(default_factory=dict)


def _matches(prefix: QueryKey, key: QueryKey) -> bool:
    return key[:len(prefix)] == prefix


class QueryCache:
    def __init__(self, clock: Callable[[], float] = time.time, id_field: str = "id"):
        self._clock = clock
        self._id_field = id_field
        self._entries: Dict[QueryKey, CacheEntry] = {}
        self._hooks: Dict[QueryKey, List[Tuple[str, Callable[[QueryKey], Any]]]] = defaultdict(list)

    def now(self) -> float:
        return self._clock()

    def get(self, key: QueryKey, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return entry.data if entry else default

    def entry(self, key: QueryKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def is_stale(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.stale

    def keys(self) -> List[QueryKey]:
        return list(self._entries)

    def set(self, key: QueryKey, data: Any, observed_at: Optional[float] = None):
        """Replace an entry wholesale (non-record payloads such as analysis)."""
        observed_at = self.now() if observed_at is None else observed_at
        current = self._entries.get(key)
        if current and current.updated_at > observed_at:
            logger.debug(f"Ignoring older write for {key}")
            return
        self._entries[key] = CacheEntry(data=data, updated_at=observed_at)

    def merge_records(self, key: QueryKey, records: List[Dict[str, Any]], observed_at: Optional[float] = None):
        """Take a full record list, keeping per-field values observed later than ``observed_at``."""
        observed_at = self.now() if observed_at is None else observed_at
        current = self._entries.get(key)
        old_records = {}
        old_stamps: Dict[str, Dict[str, float]] = {}
        if current and isinstance(current.data, list):
            old_records = {r.get(self._id_field): r for r in current.data}
            old_stamps = current.field_stamps

        merged: List[Dict[str, Any]] = []
        stamps: Dict[str, Dict[str, float]] = {}
        for incoming in records:
            record_id = incoming.get(self._id_field)
            previous = old_records.get(record_id)
            prev_stamps = old_stamps.get(record_id, {})
            record = dict(incoming)
            record_stamps = {name: observed_at for name in incoming}
            if previous is not None:
                for name, stamp in prev_stamps.items():
                    if stamp > observed_at and name in previous:
                        record[name] = previous[name]
                        record_stamps[name] = stamp
            merged.append(record)
            stamps[record_id] = record_stamps

        self._entries[key] = CacheEntry(
            data=merged,
            updated_at=max(observed_at, current.updated_at) if current else observed_at,
            field_stamps=stamps,
        )

    def patch_record(self, key: QueryKey, record_id: Any, fields: Dict[str, Any], observed_at: Optional[float] = None) -> bool:
        """Update fields of one cached record in place. Returns False when the record is not cached."""
        observed_at = self.now() if observed_at is None else observed_at
        current = self._entries.get(key)
        if current is None or not isinstance(current.data, list):
            return False

        for index, record in enumerate(current.data):
            if record.get(self._id_field) != record_id:
                continue
            record_stamps = current.field_stamps.setdefault(record_id, {})
            updated = dict(record)
            for name, value in fields.items():
                if record_stamps.get(name, float("-inf")) <= observed_at:
                    updated[name] = value
                    record_stamps[name] = observed_at
            current.data[index] = updated
            current.updated_at = max(current.updated_at, observed_at)
            return True
        return False

    def invalidate(self, key: QueryKey) -> List[QueryKey]:
        """Mark every entry under ``key`` stale and fire the hooks registered under it."""
        marked = [k for k in self._entries if _matches(key, k)]
        for k in marked:
            self._entries[k].stale = True

        for hook_key, hooks in list(self._hooks.items()):
            if _matches(key, hook_key) or _matches(hook_key, key):
                for _, hook in list(hooks):
                    hook(hook_key)
        return marked

    def add_invalidation_hook(self, key: QueryKey, hook: Callable[[QueryKey], Any]) -> Callable[[], None]:
        token = uuid.uuid4().hex
        self._hooks[key].append((token, hook))

        def remove():
            self._hooks[key] = [h for h in self._hooks.get(key, []) if h[0] != token]

        return remove

    def clear(self):
        self._entries.clear()
