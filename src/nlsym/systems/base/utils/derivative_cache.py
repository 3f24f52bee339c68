# Copyright (C) 2025 Gil Benezer
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Single-slot derivative cache.

Holds the most recently computed symbolic Jacobian of a system together
with the (sparse, simplify) key that produced it. A request with a
different key recomputes and replaces the entry.

Concurrency: the entry is an immutable CacheEntry swapped in by a single
reference assignment, so readers see either the old or the new entry,
never a partial one. Concurrent misses with different keys race and the
last writer wins; serialize derivative computations per system if that
matters.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """Cached value and the option key it was computed with."""

    key: Hashable
    value: T


class DerivativeCache(Generic[T]):
    """
    Explicit ``get_or_compute`` cache with one slot.

    Example:
        >>> cache = DerivativeCache()
        >>> J = cache.get_or_compute((False, False), lambda: compute())
        >>> cache.get_or_compute((False, False), lambda: compute()) is J
        True
    """

    def __init__(self):
        self._entry: Optional[CacheEntry[T]] = None
        self.hits = 0
        self.misses = 0

    def get_or_compute(self, key: Hashable, compute_fn: Callable[[], T]) -> T:
        """
        Return the cached value for ``key`` or compute, store and return it.

        Args:
            key: Option key, e.g. (sparse, simplify)
            compute_fn: Zero-argument function producing the value

        Returns:
            The cached value (same object on a hit)
        """
        entry = self._entry
        if entry is not None and entry.key == key:
            self.hits += 1
            logger.debug("derivative cache hit for key %r", key)
            return entry.value

        self.misses += 1
        if entry is not None:
            logger.debug("derivative cache invalidated: %r -> %r", entry.key, key)
        value = compute_fn()
        self._entry = CacheEntry(key, value)
        return value

    def peek(self) -> Optional[CacheEntry[T]]:
        """Current entry without computing anything."""
        return self._entry

    @property
    def key(self) -> Optional[Hashable]:
        entry = self._entry
        return None if entry is None else entry.key

    def clear(self) -> None:
        self._entry = None

    def __repr__(self) -> str:
        return f"DerivativeCache(key={self.key!r}, hits={self.hits}, misses={self.misses})"
