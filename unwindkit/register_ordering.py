"""Compact encoding of an ordered set of callee-saved x86_64 registers."""

from __future__ import annotations

from typing import Optional, Sequence

from unwindkit.regs import Reg

ENCODE_REGISTERS: tuple[Reg, ...] = (
    Reg.RBX,
    Reg.RBP,
    Reg.RDI,
    Reg.RSI,
    Reg.R12,
    Reg.R13,
    Reg.R14,
    Reg.R15,
)


def decode(count: int, encoded_ordering: int) -> list[Reg]:
    """Return the first ``count`` registers of the encoded ordering."""
    regs = list(ENCODE_REGISTERS)
    remaining = encoded_ordering
    n = len(ENCODE_REGISTERS)
    while remaining:
        if n == 0:
            raise ValueError(f"invalid register ordering encoding {encoded_ordering}")
        index = remaining % n
        if index:
            base = len(ENCODE_REGISTERS) - n
            regs[base], regs[base + index] = regs[base + index], regs[base]
        remaining //= n
        n -= 1
    return regs[:count]


def encode(registers: Sequence[Reg]) -> Optional[tuple[int, int]]:
    """Encode a register ordering as ``(count, encoded)``.

    Returns None if a register is not callee-saved, appears twice, or there
    are too many registers.
    """
    if len(registers) > len(ENCODE_REGISTERS):
        return None

    order = list(ENCODE_REGISTERS)
    encoded = 0
    scale = 1
    for i, reg in enumerate(registers):
        try:
            index = order.index(reg, i)
        except ValueError:
            return None
        order[i], order[index] = order[index], order[i]
        encoded += (index - i) * scale
        scale *= len(ENCODE_REGISTERS) - i
    return len(registers), encoded