"""The x86_64 unwinder: module bookkeeping, rule caching and frame unwinding."""

from __future__ import annotations

import itertools
from bisect import bisect_left, bisect_right
from typing import Callable, Optional, Union

from unwindkit.cache import CacheX86_64
from unwindkit.cfi import ConversionError
from unwindkit.compact import CompactUnwindInfoError
from unwindkit.errors import UnwindError
from unwindkit.regs import UnwindRegsX86_64
from unwindkit.rules import (
    ExecRule,
    Uncacheable,
    UnwindRule,
    fallback_rule,
)
from unwindkit.sections import Module

ReadStack = Callable[[int], int]
ModuleResolver = Callable[
    [Module, int, bool, UnwindRegsX86_64, ReadStack],
    Union[ExecRule, Uncacheable],
]

_U32_MAX = 0xFFFFFFFF

# Shared by all unwinders so that one cache can serve several of them. It wraps
# at 16 bits; after 65536 module changes stale cache entries may collide.
_GLOBAL_MODULES_GENERATION = itertools.count()


def _next_global_modules_generation() -> int:
    return next(_GLOBAL_MODULES_GENERATION) & 0xFFFF


class _ModuleUnwindError(Exception):
    """The module's unwind data could not produce a result for an address."""


# Failures while consulting a module's unwind data; these select the fallback rule.
_RECOVERABLE_ERRORS = (
    _ModuleUnwindError,
    CompactUnwindInfoError,
    ConversionError,
    UnwindError,
    LookupError,
    ValueError,
)


def _no_decoder(
    module: Module,
    relative_address: int,
    is_first_frame: bool,
    regs: UnwindRegsX86_64,
    read_stack: ReadStack,
) -> Union[ExecRule, Uncacheable]:
    raise _ModuleUnwindError(
        f"no decoder for {type(module.unwind_data).__name__} in module {module.name!r}"
    )


class UnwinderX86_64:
    """Unwinds x86_64 stack frames across the modules of one process.

    ``resolver`` turns a module's unwind data into a step for a relative
    address; it may return an ``ExecRule`` (cached) or an ``Uncacheable``
    result. Without one, or when it fails, the fallback rule (frame pointer
    unwinding) is used.
    """

    __slots__ = ("_modules", "_modules_generation", "_resolve")

    def __init__(self, resolver: Optional[ModuleResolver] = None) -> None:
        self._modules: list[Module] = []
        self._modules_generation = _next_global_modules_generation()
        self._resolve: ModuleResolver = resolver if resolver is not None else _no_decoder

    def add_module(self, module: Module) -> None:
        """Add a module loaded in the process, keeping modules sorted by start."""
        index = bisect_left(self._modules, module.avma_range.start, key=_start)
        self._modules.insert(index, module)
        self._modules_generation = _next_global_modules_generation()

    def remove_module(self, module_avma_range_start: int) -> None:
        """Remove the module starting at this address; unknown starts are ignored."""
        index = bisect_left(self._modules, module_avma_range_start, key=_start)
        if index < len(self._modules) and _start(self._modules[index]) == module_avma_range_start:
            del self._modules[index]
            self._modules_generation = _next_global_modules_generation()

    def max_known_code_address(self) -> int:
        """The end of the highest module's address range, or 0 without modules."""
        if not self._modules:
            return 0
        return self._modules[-1].avma_range.stop

    def find_module_for_address(self, address: int) -> Optional[tuple[Module, int]]:
        """Return the module containing ``address`` and the address relative to its base."""
        index = bisect_right(self._modules, address, key=_start)
        if index == 0:
            return None
        module = self._modules[index - 1]
        if module.avma_range.start != address and module.avma_range.stop <= address:
            return None
        if address < module.base_avma:
            return None
        relative_address = address - module.base_avma
        if relative_address > _U32_MAX:
            return None
        return module, relative_address

    def unwind_frame(
        self,
        lookup_address: int,
        is_first_frame: bool,
        regs: UnwindRegsX86_64,
        cache: CacheX86_64,
        read_stack: ReadStack,
    ) -> Optional[int]:
        """Unwind one frame in place.

        Returns the caller's return address, or None at the end of the stack.
        Raises an ``UnwindError`` when the step cannot be completed.
        """
        looked_up = cache.rule_cache.lookup(lookup_address, self._modules_generation)
        if isinstance(looked_up, UnwindRule):
            return looked_up.exec(is_first_frame, regs, read_stack)
        handle = looked_up

        found = self.find_module_for_address(lookup_address)
        if found is None:
            rule = fallback_rule()
        else:
            module, relative_address = found
            try:
                result = self._resolve(module, relative_address, is_first_frame, regs, read_stack)
            except _RECOVERABLE_ERRORS:
                rule = fallback_rule()
            else:
                if isinstance(result, Uncacheable):
                    return result.return_address
                rule = result.rule

        cache.rule_cache.insert(handle, rule)
        return rule.exec(is_first_frame, regs, read_stack)


def _start(module: Module) -> int:
    return module.avma_range.start