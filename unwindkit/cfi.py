"""Translating x86_64 DWARF CFI rows into cacheable unwind rules."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from unwindkit.rules import (
    EndOfStack,
    JustReturnIfFirstFrameOtherwiseFp,
    OffsetSp,
    OffsetSpAndRestoreBp,
    UnwindRule,
    UseFramePointer,
)

# DWARF register numbers on x86_64.
DWARF_RBP = 6
DWARF_RSP = 7
DWARF_RA = 16

_U16_MAX = 0xFFFF
_I16_MIN = -0x8000
_I16_MAX = 0x7FFF


class ConversionError(Exception):
    """A CFI row could not be expressed as a cacheable unwind rule.

    ``reason`` is one of: register_not_stored_relative_to_cfa,
    return_address_rule_with_unexpected_offset, return_address_rule_was_weird,
    sp_offset_does_not_fit, fp_storage_offset_does_not_fit,
    frame_pointer_rule_does_not_restore_bp, frame_pointer_rule_has_strange_bp_offset,
    cfa_is_offset_from_unknown_register, cfa_is_expression.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True, slots=True)
class CfaRegisterAndOffset:
    """CFA = value of ``register`` + ``offset``."""

    register: int
    offset: int


@dataclass(frozen=True, slots=True)
class CfaExpression:
    """CFA is computed by a DWARF expression."""

    expression: bytes = b""


CfaRule = Union[CfaRegisterAndOffset, CfaExpression]


@dataclass(frozen=True, slots=True)
class Undefined:
    """The register's value cannot be recovered."""


@dataclass(frozen=True, slots=True)
class SameValue:
    """The register keeps its value in the caller."""


@dataclass(frozen=True, slots=True)
class Offset:
    """The register is saved at ``[CFA + offset]``."""

    offset: int


@dataclass(frozen=True, slots=True)
class OtherRegisterRule:
    """Any other register rule, such as an expression or a value in another register."""

    description: str = ""


RegisterRule = Union[Undefined, SameValue, Offset, OtherRegisterRule]


def _trunc_div8(value: int) -> int:
    quotient = abs(value) // 8
    return quotient if value >= 0 else -quotient


def register_rule_to_cfa_offset(rule: RegisterRule) -> Optional[int]:
    """Return the CFA offset the register is stored at, or None if it is unchanged."""
    if isinstance(rule, (Undefined, SameValue)):
        return None
    if isinstance(rule, Offset):
        return rule.offset
    raise ConversionError("register_not_stored_relative_to_cfa")


def translate_into_unwind_rule(
    cfa_rule: CfaRule, bp_rule: RegisterRule, ra_rule: RegisterRule
) -> UnwindRule:
    """Express a CFI row as an unwind rule, or raise ConversionError."""
    if isinstance(ra_rule, Undefined):
        # No return address: the end of the stack has been reached.
        return EndOfStack()
    if isinstance(ra_rule, Offset):
        if ra_rule.offset != -8:
            raise ConversionError("return_address_rule_with_unexpected_offset")
    else:
        raise ConversionError("return_address_rule_was_weird")

    if isinstance(cfa_rule, CfaExpression):
        raise ConversionError("cfa_is_expression")

    offset = cfa_rule.offset
    if cfa_rule.register == DWARF_RSP:
        sp_offset_by_8 = _trunc_div8(offset)
        if not 0 <= sp_offset_by_8 <= _U16_MAX:
            raise ConversionError("sp_offset_does_not_fit")
        bp_cfa_offset = register_rule_to_cfa_offset(bp_rule)
        if bp_cfa_offset is None:
            return OffsetSp(sp_offset_by_8)
        bp_storage = _trunc_div8(offset + bp_cfa_offset)
        if not _I16_MIN <= bp_storage <= _I16_MAX:
            raise ConversionError("fp_storage_offset_does_not_fit")
        return OffsetSpAndRestoreBp(sp_offset_by_8, bp_storage)

    if cfa_rule.register == DWARF_RBP:
        bp_cfa_offset = register_rule_to_cfa_offset(bp_rule)
        if bp_cfa_offset is None:
            raise ConversionError("frame_pointer_rule_does_not_restore_bp")
        if offset == 16 and bp_cfa_offset == -16:
            return UseFramePointer()
        raise ConversionError("frame_pointer_rule_has_strange_bp_offset")

    raise ConversionError("cfa_is_offset_from_unknown_register")


def rule_if_uncovered_by_fde() -> UnwindRule:
    """The rule for addresses that no FDE covers."""
    return JustReturnIfFirstFrameOtherwiseFp()