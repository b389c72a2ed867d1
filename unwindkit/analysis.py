"""Heuristic x86_64 instruction analysis for prologues and epilogues."""

from __future__ import annotations

from typing import Optional

from unwindkit.rules import (
    JustReturn,
    OffsetSp,
    OffsetSpAndRestoreBp,
    UnwindRule,
    UseFramePointer,
)

_PUSH_RBP_MOV_RBP_RSP = b"\x55\x48\x89\xe5"


def _split(text_bytes: bytes, pc_offset: int) -> tuple[bytes, bytes]:
    if not 0 <= pc_offset <= len(text_bytes):
        raise ValueError(f"pc offset {pc_offset} is outside the {len(text_bytes)} text bytes")
    data = bytes(text_bytes)
    return data[:pc_offset], data[pc_offset:]


def _is_next_instruction_expected_in_prologue(data: bytes) -> bool:
    if len(data) < 4:
        return False
    first, second = data[0], data[1]
    if first & 0xF8 == 0x50:  # push rXX
        return True
    if first & 0xFE == 0x40 and second & 0xF8 == 0x50:  # push rXX with prefix
        return True
    return data[:2] in (b"\x83\xec", b"\x81\xec") or data[:3] in (
        b"\x48\x83\xec",  # sub rsp, imm8
        b"\x48\x81\xec",  # sub rsp, imm32
        b"\x48\x89\xe5",  # mov rbp, rsp
    )


def rule_from_detected_prologue(text_bytes: bytes, pc_offset: int) -> Optional[UnwindRule]:
    """Return a rule if the instruction at ``pc_offset`` looks like part of a prologue."""
    before, after = _split(text_bytes, pc_offset)
    if not _is_next_instruction_expected_in_prologue(after):
        return None
    # Walk backwards over the pushes; variable length encoding makes this a heuristic.
    cursor = len(before)
    sp_offset_by_8 = 0
    while True:
        if cursor >= 4 and before[cursor - 4 : cursor] == _PUSH_RBP_MOV_RBP_RSP:
            return UseFramePointer()
        if cursor >= 1 and before[cursor - 1] & 0xF8 == 0x50:
            sp_offset_by_8 += 1
            cursor -= 1
            if cursor >= 1 and before[cursor - 1] & 0xFE == 0x40:
                cursor -= 1
            continue
        break
    return OffsetSp(sp_offset_by_8 + 1)


def rule_from_detected_epilogue(text_bytes: bytes, pc_offset: int) -> Optional[UnwindRule]:
    """Return a rule if ``pc_offset`` is inside a pop sequence ending in ret or a tail call."""
    before, after = _split(text_bytes, pc_offset)
    sp_offset_by_8 = 0
    bp_offset_by_8: Optional[int] = None
    pos = 0
    while True:
        if pos >= len(after):
            return None
        byte = after[pos]
        if byte == 0xC3:  # ret
            break
        if byte in (0xEB, 0xE9, 0xFF):  # jmp
            # A jmp directly after a pop is treated as a tail call.
            if sp_offset_by_8 != 0:
                break
            if before and before[-1] & 0xF8 == 0x58:
                break
            return None
        if byte == 0x5D:  # pop rbp
            bp_offset_by_8 = sp_offset_by_8
            sp_offset_by_8 += 1
            pos += 1
            continue
        if 0x58 <= byte <= 0x5F:  # pop rXX
            sp_offset_by_8 += 1
            pos += 1
            continue
        if pos + 1 < len(after) and byte & 0xFE == 0x40 and after[pos + 1] & 0xF8 == 0x58:
            sp_offset_by_8 += 1
            pos += 2
            continue
        return None

    if sp_offset_by_8 == 0:
        return JustReturn()
    sp_offset_by_8 += 1  # the return address
    if bp_offset_by_8 is not None:
        return OffsetSpAndRestoreBp(sp_offset_by_8, bp_offset_by_8)
    return OffsetSp(sp_offset_by_8)


def rule_from_instruction_analysis(text_bytes: bytes, pc_offset: int) -> Optional[UnwindRule]:
    """Try prologue analysis, then epilogue analysis; None outside the bytes."""
    if not 0 <= pc_offset <= len(text_bytes):
        return None
    rule = rule_from_detected_prologue(text_bytes, pc_offset)
    if rule is not None:
        return rule
    return rule_from_detected_epilogue(text_bytes, pc_offset)