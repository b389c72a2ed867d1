"""Turning mach-O compact unwind opcodes for x86_64 into unwind rules."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Union

from unwindkit.analysis import rule_from_instruction_analysis
from unwindkit.regs import Reg
from unwindkit.rules import (
    ExecRule,
    JustReturn,
    OffsetSp,
    OffsetSpAndRestoreBp,
    UnwindRule,
    UseFramePointer,
)

_U32_MAX = 0xFFFFFFFF
_U16_MAX = 0xFFFF
_I16_MIN = -0x8000
_I16_MAX = 0x7FFF


class CompactUnwindInfoError(Exception):
    """A compact unwind opcode could not be turned into a rule.

    ``reason`` is one of: function_has_no_info, bp_offset_does_not_fit,
    no_text_bytes_to_look_up_indirect_stack_offset,
    indirect_stack_offset_out_of_bounds, stack_adjust_overflow,
    stack_size_does_not_fit, bad_opcode_kind, invalid_frameless.
    """

    def __init__(self, reason: str, kind: Optional[int] = None) -> None:
        message = reason if kind is None else f"{reason} ({kind})"
        super().__init__(message)
        self.reason = reason
        self.kind = kind


@dataclass(frozen=True, slots=True)
class NullOpcode:
    """The function has no unwind information."""


@dataclass(frozen=True, slots=True)
class FramelessImmediate:
    stack_size_in_bytes: int
    saved_regs: Sequence[Optional[Reg]] = ()


@dataclass(frozen=True, slots=True)
class FramelessIndirect:
    immediate_offset_from_function_start: int
    stack_adjust_in_bytes: int
    saved_regs: Sequence[Optional[Reg]] = ()


@dataclass(frozen=True, slots=True)
class DwarfOpcode:
    eh_frame_fde: int


@dataclass(frozen=True, slots=True)
class FrameBased:
    stack_offset_in_bytes: int = 0
    saved_regs: Sequence[Optional[Reg]] = ()


@dataclass(frozen=True, slots=True)
class UnrecognizedKind:
    kind: int


@dataclass(frozen=True, slots=True)
class InvalidFrameless:
    """A frameless opcode with an invalid register encoding."""


@dataclass(frozen=True, slots=True)
class NeedDwarf:
    """The function must be unwound with the DWARF FDE at this eh_frame offset."""

    fde_offset: int


Opcode = Union[
    NullOpcode,
    FramelessImmediate,
    FramelessIndirect,
    DwarfOpcode,
    FrameBased,
    UnrecognizedKind,
    InvalidFrameless,
]


def _trunc_div8(value: int) -> int:
    quotient = abs(value) // 8
    return quotient if value >= 0 else -quotient


def _frameless_rule(stack_size_in_bytes: int, sp_offset_by_8: int, saved_regs) -> UnwindRule:
    pushed = [reg for reg in reversed(saved_regs) if reg is not None]
    if Reg.RBP not in pushed:
        return OffsetSp(sp_offset_by_8)
    position = pushed.index(Reg.RBP)
    bp_offset_from_sp = stack_size_in_bytes - 2 * 8 - position * 8
    bp_storage_offset_from_sp_by_8 = _trunc_div8(bp_offset_from_sp)
    if not _I16_MIN <= bp_storage_offset_from_sp_by_8 <= _I16_MAX:
        raise CompactUnwindInfoError("bp_offset_does_not_fit")
    return OffsetSpAndRestoreBp(sp_offset_by_8, bp_storage_offset_from_sp_by_8)


def unwind_frame_from_opcode(
    opcode: Opcode,
    is_first_frame: bool,
    address_offset_within_function: int,
    function_bytes: Optional[bytes],
) -> Union[ExecRule, NeedDwarf]:
    """Return the rule (or DWARF reference) for an address inside a function."""
    is_null = isinstance(opcode, NullOpcode)
    if is_first_frame:
        # Opcodes describe only the body; check for prologues and epilogues.
        if function_bytes is not None:
            rule = rule_from_instruction_analysis(function_bytes, address_offset_within_function)
            if rule is not None:
                return ExecRule(rule)
            if is_null and bytes(function_bytes[:4]) == b"\x55\x48\x89\xe5":
                return ExecRule(UseFramePointer())
        if is_null:
            return ExecRule(JustReturn())

    if is_null:
        raise CompactUnwindInfoError("function_has_no_info")
    if isinstance(opcode, FramelessImmediate):
        size = opcode.stack_size_in_bytes
        if size == 8:
            return ExecRule(JustReturn())
        return ExecRule(_frameless_rule(size, size // 8, opcode.saved_regs))
    if isinstance(opcode, FramelessIndirect):
        if function_bytes is None:
            raise CompactUnwindInfoError("no_text_bytes_to_look_up_indirect_stack_offset")
        start = opcode.immediate_offset_from_function_start
        immediate = bytes(function_bytes[start : start + 4])
        if len(immediate) != 4:
            raise CompactUnwindInfoError("indirect_stack_offset_out_of_bounds")
        size = int.from_bytes(immediate, "little") + opcode.stack_adjust_in_bytes
        if size > _U32_MAX:
            raise CompactUnwindInfoError("stack_adjust_overflow")
        sp_offset_by_8 = size // 8
        if sp_offset_by_8 > _U16_MAX:
            raise CompactUnwindInfoError("stack_size_does_not_fit")
        return ExecRule(_frameless_rule(size, sp_offset_by_8, opcode.saved_regs))
    if isinstance(opcode, DwarfOpcode):
        return NeedDwarf(opcode.eh_frame_fde)
    if isinstance(opcode, FrameBased):
        return ExecRule(UseFramePointer())
    if isinstance(opcode, UnrecognizedKind):
        raise CompactUnwindInfoError("bad_opcode_kind", opcode.kind)
    if isinstance(opcode, InvalidFrameless):
        raise CompactUnwindInfoError("invalid_frameless")
    raise TypeError(f"not a compact unwind opcode: {opcode!r}")


def rule_for_stub_helper(offset: int) -> ExecRule:
    """Return the rule for an offset inside the ``__stub_helper`` section.

    The section starts with a 16-byte shared trampoline (lea; push r11; jmp),
    followed by 10-byte stubs of ``push imm32; jmp shared``.
    """
    if offset < 0x7:
        rule: UnwindRule = OffsetSp(2)
    elif offset < 0x10:
        rule = OffsetSp(3)
    elif (offset - 0x10) % 10 < 5:
        rule = JustReturn()
    else:
        rule = OffsetSp(2)
    return ExecRule(rule)