"""The unwinder cache for x86_64."""

from __future__ import annotations

from unwindkit.rule_cache import CacheStats, RuleCache


class CacheX86_64:
    """Holds cached unwind rules for an x86_64 unwinder; may be shared."""

    __slots__ = ("rule_cache",)

    def __init__(self) -> None:
        self.rule_cache = RuleCache()

    def stats(self) -> CacheStats:
        """Return a snapshot of the cache usage statistics."""
        return self.rule_cache.stats()