"""In-process TTL caches for field resolution."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Hashable

from officiant.core.config import settings
from officiant.services.definitions import FieldDefinition

Clock = Callable[[], float]


@dataclass
class _Entry:
    value: Any
    stored_at: float


class _TTLStore:
    """
    Dict of entries that each expire ``ttl`` seconds after being written.

    Expired entries are dropped on read, and swept from the whole store on
    the first write after each ``ttl`` interval.
    """

    def __init__(self, ttl: float, clock: Clock) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[Hashable, _Entry] = {}
        self._last_sweep = clock()

    def get(self, key: Hashable) -> tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        if self._clock() - entry.stored_at >= self._ttl:
            self._entries.pop(key, None)
            return False, None
        return True, entry.value

    def set(self, key: Hashable, value: Any) -> None:
        now = self._clock()
        if now - self._last_sweep >= self._ttl:
            self.sweep(now)
        self._entries[key] = _Entry(value=value, stored_at=now)

    def sweep(self, now: float | None = None) -> int:
        """Drop every expired entry and return how many were dropped."""
        now = self._clock() if now is None else now
        self._last_sweep = now
        expired = [k for k, e in self._entries.items() if now - e.stored_at >= self._ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def drop_form(self, form_id: str) -> None:
        for key in [k for k in self._entries if _form_of(k) == form_id]:
            self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _form_of(key: Hashable) -> Any:
    return key[0] if isinstance(key, tuple) else key


class ResolutionCache:
    """
    Three independent caches used by the field resolver:

    - form field definitions, keyed by form id
    - stable id -> field id mapping, keyed by form id
    - resolved values (including misses), keyed by
      (form id, submission key, reference key)

    Each entry carries its own timestamp and is dropped on read once older
    than ``ttl`` seconds. Writes periodically sweep out expired entries, so
    values for past submissions do not accumulate. Nothing here is
    authoritative.
    """

    def __init__(self, ttl: float | None = None, clock: Clock | None = None) -> None:
        self.ttl = settings.FIELD_CACHE_TTL_SECONDS if ttl is None else ttl
        self._clock = clock or time.monotonic
        self._fields = _TTLStore(self.ttl, self._clock)
        self._mappings = _TTLStore(self.ttl, self._clock)
        self._values = _TTLStore(self.ttl, self._clock)

    def get_fields(self, form_id: str) -> tuple[FieldDefinition, ...] | None:
        hit, value = self._fields.get(form_id)
        return value if hit else None

    def set_fields(self, form_id: str, fields: tuple[FieldDefinition, ...]) -> None:
        self._fields.set(form_id, fields)

    def get_mapping(self, form_id: str) -> dict[str, str] | None:
        hit, value = self._mappings.get(form_id)
        return value if hit else None

    def set_mapping(self, form_id: str, mapping: dict[str, str]) -> None:
        self._mappings.set(form_id, mapping)

    def get_value(self, form_id: str, submission_key: str, reference_key: str) -> tuple[bool, Any]:
        """Return ``(hit, value)``; a hit may carry the miss sentinel."""
        return self._values.get((form_id, submission_key, reference_key))

    def set_value(self, form_id: str, submission_key: str, reference_key: str, value: Any) -> None:
        self._values.set((form_id, submission_key, reference_key), value)

    def invalidate(self, form_id: str | None = None) -> None:
        """Drop every entry for one form, or everything when no form is given."""
        if form_id is None:
            for store in (self._fields, self._mappings, self._values):
                store.clear()
            return
        for store in (self._fields, self._mappings, self._values):
            store.drop_form(str(form_id))

    def sweep(self) -> int:
        return sum(store.sweep() for store in (self._fields, self._mappings, self._values))

    def stats(self) -> dict[str, int]:
        return {
            "fields": len(self._fields),
            "mappings": len(self._mappings),
            "values": len(self._values),
        }
