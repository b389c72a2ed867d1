"""Cacheable x86_64 unwind rules and the results an unwinding step produces."""

from __future__ import annotations

from dataclasses import dataclass
from itertools import chain
from typing import Callable, Iterable, Optional

from unwindkit import register_ordering
from unwindkit.errors import (
    CouldNotReadStackError,
    DidNotAdvanceError,
    FramepointerMovedBackwardsError,
    IntegerOverflowError,
)
from unwindkit.regs import Reg, UnwindRegsX86_64

ReadStack = Callable[[int], int]

_U64_MAX = (1 << 64) - 1
_U16_MAX = 0xFFFF
_I16_MIN = -0x8000
_I16_MAX = 0x7FFF
_U8_MAX = 0xFF


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise ValueError(f"{name}={value} is outside [{low}, {high}]")


def _checked_add(a: int, b: int) -> int:
    result = a + b
    if not 0 <= result <= _U64_MAX:
        raise IntegerOverflowError()
    return result


def _read(read_stack: ReadStack, address: int) -> int:
    try:
        return read_stack(address)
    except LookupError:
        raise CouldNotReadStackError(address) from None


class UnwindRule:
    """A rule for recovering the caller's registers; the return address is
    always read from ``new_sp - 8``."""

    __slots__ = ()

    def _unwound_sp_and_bp(
        self, is_first_frame: bool, regs: UnwindRegsX86_64, read_stack: ReadStack
    ) -> Optional[tuple[int, int]]:
        raise NotImplementedError

    def exec(
        self, is_first_frame: bool, regs: UnwindRegsX86_64, read_stack: ReadStack
    ) -> Optional[int]:
        """Apply the rule to ``regs`` in place.

        Returns the return address, or None when the end of the stack is reached.
        """
        sp = regs.sp
        unwound = self._unwound_sp_and_bp(is_first_frame, regs, read_stack)
        if unwound is None:
            return None
        new_sp, new_bp = unwound
        if new_sp < 8:
            raise IntegerOverflowError()
        return_address = _read(read_stack, new_sp - 8)
        if return_address == 0:
            return None
        if new_sp == sp and return_address == regs.ip:
            raise DidNotAdvanceError()
        regs.ip = return_address
        regs.sp = new_sp
        regs.bp = new_bp
        return return_address


@dataclass(frozen=True, slots=True)
class EndOfStack(UnwindRule):
    """There is no caller."""

    def _unwound_sp_and_bp(self, is_first_frame, regs, read_stack):
        return None


@dataclass(frozen=True, slots=True)
class JustReturn(UnwindRule):
    """(sp, bp) = (sp + 8, bp)"""

    def _unwound_sp_and_bp(self, is_first_frame, regs, read_stack):
        return _checked_add(regs.sp, 8), regs.bp


def _frame_pointer_step(regs: UnwindRegsX86_64, read_stack: ReadStack) -> tuple[int, int]:
    sp, bp = regs.sp, regs.bp
    new_sp = _checked_add(bp, 16)
    if new_sp <= sp:
        raise FramepointerMovedBackwardsError()
    return new_sp, _read(read_stack, bp)


@dataclass(frozen=True, slots=True)
class JustReturnIfFirstFrameOtherwiseFp(UnwindRule):
    """(sp, bp) = (sp + 8, bp) in the first frame, else (bp + 16, *bp)."""

    def _unwound_sp_and_bp(self, is_first_frame, regs, read_stack):
        if is_first_frame:
            return _checked_add(regs.sp, 8), regs.bp
        return _frame_pointer_step(regs, read_stack)


@dataclass(frozen=True, slots=True)
class OffsetSp(UnwindRule):
    """(sp, bp) = (sp + 8 * sp_offset_by_8, bp)"""

    sp_offset_by_8: int

    def __post_init__(self) -> None:
        _check_range("sp_offset_by_8", self.sp_offset_by_8, 0, _U16_MAX)

    def _unwound_sp_and_bp(self, is_first_frame, regs, read_stack):
        return _checked_add(regs.sp, self.sp_offset_by_8 * 8), regs.bp


@dataclass(frozen=True, slots=True)
class OffsetSpAndRestoreBp(UnwindRule):
    """(sp, bp) = (sp + 8 * sp_offset_by_8, *(sp + 8 * bp_storage_offset_from_sp_by_8))"""

    sp_offset_by_8: int
    bp_storage_offset_from_sp_by_8: int

    def __post_init__(self) -> None:
        _check_range("sp_offset_by_8", self.sp_offset_by_8, 0, _U16_MAX)
        _check_range(
            "bp_storage_offset_from_sp_by_8",
            self.bp_storage_offset_from_sp_by_8,
            _I16_MIN,
            _I16_MAX,
        )

    def _unwound_sp_and_bp(self, is_first_frame, regs, read_stack):
        sp = regs.sp
        new_sp = _checked_add(sp, self.sp_offset_by_8 * 8)
        bp_location = _checked_add(sp, self.bp_storage_offset_from_sp_by_8 * 8)
        try:
            new_bp = read_stack(bp_location)
        except LookupError:
            # In a first-frame epilogue the saved bp may already be popped and
            # lie below sp, where the stack reader may refuse to look.
            if is_first_frame and bp_location < sp:
                new_bp = regs.bp
            else:
                raise CouldNotReadStackError(bp_location) from None
        return new_sp, new_bp


@dataclass(frozen=True, slots=True)
class UseFramePointer(UnwindRule):
    """(sp, bp) = (bp + 16, *bp); a zero bp ends the stack."""

    def _unwound_sp_and_bp(self, is_first_frame, regs, read_stack):
        if regs.bp == 0:
            return None
        return _frame_pointer_step(regs, read_stack)


@dataclass(frozen=True, slots=True)
class OffsetSpAndPopRegisters(UnwindRule):
    """Skip 8 * sp_offset_by_8 bytes, then pop the encoded callee-saved registers."""

    sp_offset_by_8: int
    register_count: int
    encoded_registers_to_pop: int

    def __post_init__(self) -> None:
        _check_range("sp_offset_by_8", self.sp_offset_by_8, 0, _U16_MAX)
        _check_range("register_count", self.register_count, 0, _U8_MAX)
        _check_range("encoded_registers_to_pop", self.encoded_registers_to_pop, 0, _U16_MAX)

    def _unwound_sp_and_bp(self, is_first_frame, regs, read_stack):
        sp = _checked_add(regs.sp, self.sp_offset_by_8 * 8)
        for reg in register_ordering.decode(self.register_count, self.encoded_registers_to_pop):
            value = _read(read_stack, sp)
            sp = _checked_add(sp, 8)
            regs.set(reg, value)
        return _checked_add(sp, 8), regs.bp


@dataclass(frozen=True, slots=True)
class OffsetBy8:
    """A stack pointer adjustment of ``value * 8`` bytes."""

    value: int


@dataclass(frozen=True, slots=True)
class Pop:
    """A pop of one register from the stack."""

    reg: Reg


@dataclass(frozen=True, slots=True)
class ExecRule:
    """The step is described by a cacheable rule."""

    rule: UnwindRule


@dataclass(frozen=True, slots=True)
class Uncacheable:
    """The step was already performed and produced this return address."""

    return_address: int


_END = object()


def rule_for_sequence_of_offset_or_pop(items: Iterable[object]) -> Optional[UnwindRule]:
    """Return the rule for an optional ``OffsetBy8`` followed by ``Pop`` items.

    Any other item, or a sequence that cannot be encoded, gives None.
    """
    iterator = iter(items)
    first = next(iterator, _END)
    if isinstance(first, OffsetBy8):
        sp_offset_by_8 = first.value
        rest: Iterable[object] = iterator
    else:
        sp_offset_by_8 = 0
        rest = iterator if first is _END else chain((first,), iterator)

    regs: list[Reg] = []
    for item in rest:
        if not isinstance(item, Pop) or len(regs) >= len(register_ordering.ENCODE_REGISTERS):
            return None
        regs.append(item.reg)

    if not regs and sp_offset_by_8 == 0:
        return JustReturn()
    encoded = register_ordering.encode(regs)
    if encoded is None:
        return None
    register_count, encoded_registers_to_pop = encoded
    return OffsetSpAndPopRegisters(sp_offset_by_8, register_count, encoded_registers_to_pop)


def rule_for_stub_functions() -> UnwindRule:
    return JustReturn()


def rule_for_function_start() -> UnwindRule:
    return JustReturn()


def fallback_rule() -> UnwindRule:
    return UseFramePointer()