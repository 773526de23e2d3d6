from __future__ import annotations

from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Callable, Hashable, Mapping

import structlog

logger = structlog.get_logger(__name__)

CacheKey = tuple[str, int, tuple[tuple[str, Hashable], ...]]


def freeze_params(params: Mapping[str, Any] | None) -> tuple[tuple[str, Hashable], ...]:
    if not params:
        return ()
    return tuple(sorted((name, value) for name, value in params.items() if value is not None))


@dataclass
class QueryCache:
    """Read cache keyed by (entity, user_id, filter params).

    Writers call ``invalidate`` for every entity their mutation affects. A load
    that overlaps an invalidation of its group is returned but not stored.
    """

    _entries: dict[CacheKey, Any] = field(default_factory=dict)
    _generations: dict[tuple[str, int], int] = field(default_factory=dict)
    _lock: RLock = field(default_factory=RLock)

    def get_or_load(
        self,
        entity: str,
        user_id: int,
        params: Mapping[str, Any] | None,
        loader: Callable[[], Any],
    ) -> Any:
        key = (entity, user_id, freeze_params(params))
        with self._lock:
            if key in self._entries:
                return self._entries[key]
            generation = self._generations.get((entity, user_id), 0)
        value = loader()
        with self._lock:
            if self._generations.get((entity, user_id), 0) == generation:
                self._entries[key] = value
        return value

    def invalidate(self, entity: str, user_id: int) -> int:
        with self._lock:
            group = (entity, user_id)
            self._generations[group] = self._generations.get(group, 0) + 1
            stale = [key for key in self._entries if key[:2] == group]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("query_cache_invalidated", entity=entity, user_id=user_id, keys=len(stale))
        return len(stale)

    def invalidate_many(self, entities: tuple[str, ...], user_id: int) -> None:
        for entity in entities:
            self.invalidate(entity, user_id)

    def clear(self) -> None:
        with self._lock:
            for group in {key[:2] for key in self._entries}:
                self._generations[group] = self._generations.get(group, 0) + 1
            self._entries.clear()

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._entries
