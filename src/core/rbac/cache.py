"""
Permission Cache - Per-user memoization of resolved permission sets.

Correctness rests on explicit invalidation, never on TTL: an entry lives
until a mutation that could affect it says otherwise.

Invalidation:
- ``invalidate(user_id)``: one user's assignments changed
- ``invalidate_role(role_id)``: a role's grants or position in the hierarchy
  changed; every user whose set consulted that role is dropped, found through
  a reverse index filled as resolutions complete
- ``invalidate_all()``: the whole graph was reloaded

Concurrency:
- Reads are lock-free dictionary lookups of immutable entries
- Concurrent misses for the same user share one resolution task (single-flight)
- A resolution that started before an invalidation is handed to the callers
  already waiting on it but is never stored
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .entities import PermissionSet

logger = logging.getLogger(__name__)

Loader = Callable[[str], Awaitable[PermissionSet]]


# =============================================================================
# INVALIDATION EVENTS
# =============================================================================

class InvalidationScope(str, PyEnum):
    """Cache invalidation scopes."""
    ALL = "all"
    ROLE = "role"
    USER = "user"


@dataclass(frozen=True)
class InvalidationEvent:
    """Emitted by the resolver after a committed mutation."""
    scope: InvalidationScope
    target_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope.value,
            "target_id": self.target_id,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InvalidationEvent":
        return cls(
            scope=InvalidationScope(data["scope"]),
            target_id=data.get("target_id"),
            reason=data.get("reason"),
        )


# =============================================================================
# CACHE ENTRY
# =============================================================================

@dataclass(frozen=True)
class CacheEntry:
    """Cached permission data."""
    permissions: PermissionSet
    generation: int
    cached_at: float


@dataclass
class CacheConfig:
    """Cache configuration settings."""
    # 0 = unbounded; otherwise least-recently-stored entries are evicted
    max_entries: int = 0


DEFAULT_CONFIG = CacheConfig()


# =============================================================================
# PERMISSION CACHE
# =============================================================================

class PermissionCache:
    """Explicitly invalidated, single-flight cache keyed by user id."""

    def __init__(self, config: Optional[CacheConfig] = None):
        self.config = config or DEFAULT_CONFIG

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._generations: Dict[str, int] = {}
        self._role_epoch = 0

        # role_id -> users whose cached set consulted that role
        self._role_index: Dict[str, Set[str]] = {}
        self._indexed_roles: Dict[str, frozenset] = {}

        self._inflight: Dict[str, asyncio.Future] = {}

        # Guards structural updates; readers never take it.
        self._lock = threading.RLock()

        self._hits = 0
        self._misses = 0
        self._discarded = 0

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, user_id: str) -> Optional[PermissionSet]:
        """Cached set for ``user_id``, or None on a miss."""
        entry = self._current_entry(user_id)
        if entry is None:
            return None
        return entry.permissions

    def _current_entry(self, user_id: str) -> Optional[CacheEntry]:
        entry = self._entries.get(user_id)
        if entry is None or entry.permissions.is_current():
            return entry
        # An assignment behind this set has expired since it was resolved.
        logger.debug(f"Cached permissions for user {user_id} outlived an assignment expiry")
        self.invalidate(user_id)
        return None

    def generation(self, user_id: str) -> int:
        return self._generations.get(user_id, 0)

    async def get_or_resolve(self, user_id: str, loader: Loader) -> PermissionSet:
        """
        Return the cached set, resolving it through ``loader`` on a miss.

        Concurrent misses for the same user await one shared task. Cancelling
        one caller (for example through a timeout) does not cancel the shared
        resolution for the others.
        """
        entry = self._current_entry(user_id)
        if entry is not None:
            self._hits += 1
            return entry.permissions

        self._misses += 1
        with self._lock:
            task = self._inflight.get(user_id)
            if task is None:
                generation = self._generations.get(user_id, 0)
                epoch = self._role_epoch
                task = asyncio.ensure_future(loader(user_id))
                self._inflight[user_id] = task
                task.add_done_callback(
                    functools.partial(self._on_resolved, user_id, generation, epoch)
                )
            else:
                logger.debug(f"Joining in-flight resolution for user {user_id}")

        return await asyncio.shield(task)

    def _on_resolved(self, user_id: str, generation: int, epoch: int, task: asyncio.Future) -> None:
        with self._lock:
            if self._inflight.get(user_id) is task:
                del self._inflight[user_id]

            if task.cancelled() or task.exception() is not None:
                return

            if generation != self._generations.get(user_id, 0) or epoch != self._role_epoch:
                self._discarded += 1
                logger.debug(f"Discarding resolution for user {user_id}: invalidated while in flight")
                return

            self._store(user_id, task.result())

    def _store(self, user_id: str, permissions: PermissionSet) -> None:
        """Insert an entry and index it (must hold lock)."""
        self._unindex(user_id)
        self._entries[user_id] = CacheEntry(
            permissions=permissions,
            generation=self._generations.get(user_id, 0),
            cached_at=time.time(),
        )
        self._entries.move_to_end(user_id)

        role_ids = frozenset(permissions.role_ids)
        self._indexed_roles[user_id] = role_ids
        for role_id in role_ids:
            self._role_index.setdefault(role_id, set()).add(user_id)

        max_entries = self.config.max_entries
        while max_entries and len(self._entries) > max_entries:
            oldest, _ = self._entries.popitem(last=False)
            self._unindex(oldest)

    def _unindex(self, user_id: str) -> None:
        """Remove a user from the reverse index (must hold lock)."""
        for role_id in self._indexed_roles.pop(user_id, frozenset()):
            users = self._role_index.get(role_id)
            if users is None:
                continue
            users.discard(user_id)
            if not users:
                del self._role_index[role_id]

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    def invalidate(self, user_id: str) -> bool:
        """Drop one user's entry. Returns True if an entry was present."""
        with self._lock:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            self._inflight.pop(user_id, None)
            self._unindex(user_id)
            removed = self._entries.pop(user_id, None) is not None

        logger.debug(f"Invalidated permission cache for user {user_id}")
        return removed

    def invalidate_role(self, role_id: str) -> int:
        """Drop every user whose set depended on ``role_id``. Returns count."""
        with self._lock:
            self._role_epoch += 1
            # In-flight resolutions may have read pre-mutation grants.
            self._inflight.clear()
            users = list(self._role_index.get(role_id, ()))
            for user_id in users:
                self._generations[user_id] = self._generations.get(user_id, 0) + 1
                self._unindex(user_id)
                self._entries.pop(user_id, None)

        logger.debug(f"Invalidated {len(users)} cache entries for role {role_id}")
        return len(users)

    def invalidate_all(self) -> int:
        """Drop everything."""
        with self._lock:
            count = len(self._entries)
            self._role_epoch += 1
            for user_id in self._entries:
                self._generations[user_id] = self._generations.get(user_id, 0) + 1
            self._entries.clear()
            self._role_index.clear()
            self._indexed_roles.clear()
            self._inflight.clear()

        logger.info(f"Invalidated all {count} RBAC cache entries")
        return count

    def handle_event(self, event: InvalidationEvent) -> int:
        """Apply an invalidation event; used as a resolver listener."""
        if event.scope == InvalidationScope.USER and event.target_id is not None:
            return int(self.invalidate(event.target_id))
        if event.scope == InvalidationScope.ROLE and event.target_id is not None:
            return self.invalidate_role(event.target_id)
        return self.invalidate_all()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def users_for_role(self, role_id: str) -> Set[str]:
        return set(self._role_index.get(role_id, ()))

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        return {
            "size": len(self._entries),
            "max_entries": self.config.max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "discarded": self._discarded,
            "inflight": len(self._inflight),
            "indexed_roles": len(self._role_index),
        }

    def __len__(self) -> int:
        return len(self._entries)

