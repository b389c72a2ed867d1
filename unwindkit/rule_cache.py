"""A fixed-size, address-indexed cache of unwind rules."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Union

from unwindkit.rules import UnwindRule

CACHE_ENTRY_COUNT = 509


@dataclass
class CacheStats:
    """Statistics about the effectiveness of the rule cache."""

    hit_count: int = 0
    """The number of successful cache hits."""
    miss_empty_slot_count: int = 0
    """The number of misses due to an empty slot."""
    miss_wrong_modules_count: int = 0
    """The number of misses due to a slot filled under a different module generation."""
    miss_wrong_address_count: int = 0
    """The number of misses due to slot collisions of different addresses."""

    def total(self) -> int:
        """The number of total lookups."""
        return self.hits() + self.misses()

    def hits(self) -> int:
        """The number of total hits."""
        return self.hit_count

    def misses(self) -> int:
        """The number of total misses."""
        return (
            self.miss_empty_slot_count
            + self.miss_wrong_modules_count
            + self.miss_wrong_address_count
        )


@dataclass(frozen=True, slots=True)
class CacheHandle:
    """Where a rule for a missed lookup should be stored."""

    slot: int
    address: int
    modules_generation: int


@dataclass(frozen=True, slots=True)
class _CacheEntry:
    address: int
    modules_generation: int
    rule: UnwindRule


class RuleCache:
    """Caches one unwind rule per slot, keyed by address and module generation."""

    __slots__ = ("_entries", "_stats")

    def __init__(self) -> None:
        self._entries: list[Optional[_CacheEntry]] = [None] * CACHE_ENTRY_COUNT
        self._stats = CacheStats()

    def lookup(self, address: int, modules_generation: int) -> Union[UnwindRule, CacheHandle]:
        """Return the cached rule on a hit, or a handle for ``insert`` on a miss."""
        slot = address % CACHE_ENTRY_COUNT
        entry = self._entries[slot]
        if entry is None:
            self._stats.miss_empty_slot_count += 1
        elif entry.modules_generation != modules_generation:
            self._stats.miss_wrong_modules_count += 1
        elif entry.address != address:
            self._stats.miss_wrong_address_count += 1
        else:
            self._stats.hit_count += 1
            return entry.rule
        return CacheHandle(slot, address, modules_generation)

    def insert(self, handle: CacheHandle, rule: UnwindRule) -> None:
        """Store ``rule`` in the slot described by ``handle``."""
        self._entries[handle.slot] = _CacheEntry(
            handle.address, handle.modules_generation, rule
        )

    def stats(self) -> CacheStats:
        """Return a snapshot of the cache usage statistics."""
        return replace(self._stats)