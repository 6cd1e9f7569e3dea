"""
Permission Matcher - Wildcard-aware slug matching.

Slugs have the form ``service_action`` and are split on the FIRST underscore,
so ``books_bulk_update`` is service ``books`` with action ``bulk_update``.
Either segment of a held slug may be ``*``.

Malformed slugs (no underscore, or an empty segment) never match anything.
They are reported once per distinct value so a single bad row cannot flood
the logs or break resolution of unrelated permissions.
"""

from __future__ import annotations

import logging
import threading
from functools import lru_cache
from typing import Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

WILDCARD = "*"
SEPARATOR = "_"


def split_slug(slug: str) -> Optional[Tuple[str, str]]:
    """Split a slug into (service, action), or None when malformed."""
    if not isinstance(slug, str):
        return None
    return _split(slug)


@lru_cache(maxsize=4096)
def _split(slug: str) -> Optional[Tuple[str, str]]:
    service, sep, action = slug.partition(SEPARATOR)
    if not sep or not service or not action:
        return None
    return service, action


def is_wildcard(slug: str) -> bool:
    parts = split_slug(slug)
    return parts is not None and WILDCARD in parts


def _segment_covers(held: str, requested: str) -> bool:
    return held == WILDCARD or held == requested


class PermissionMatcher:
    """
    Decides whether a held permission pattern covers a requested slug.

    ``covers`` is total: it never raises, whatever the inputs.
    """

    def __init__(self):
        self._reported: set[str] = set()
        self._lock = threading.Lock()

    def covers(self, held: str, requested: str) -> bool:
        held_parts = split_slug(held)
        if held_parts is None:
            self.report_malformed(held)
            return False
        requested_parts = split_slug(requested)
        if requested_parts is None:
            self.report_malformed(requested)
            return False
        return (
            _segment_covers(held_parts[0], requested_parts[0])
            and _segment_covers(held_parts[1], requested_parts[1])
        )

    def covers_any(self, held: Iterable[str], requested: str) -> bool:
        """True iff any held pattern covers ``requested``."""
        if split_slug(requested) is None:
            self.report_malformed(requested)
            return False
        return any(self.covers(pattern, requested) for pattern in held)

    def report_malformed(self, slug: str) -> None:
        key = repr(slug)
        if key in self._reported:
            return
        with self._lock:
            if key in self._reported:
                return
            self._reported.add(key)
        logger.warning(f"Ignoring malformed permission slug {slug!r}: expected service_action")

    @property
    def reported(self) -> frozenset:
        return frozenset(self._reported)


_default_matcher: Optional[PermissionMatcher] = None


def get_permission_matcher() -> PermissionMatcher:
    """Get singleton permission matcher."""
    global _default_matcher
    if _default_matcher is None:
        _default_matcher = PermissionMatcher()
    return _default_matcher
