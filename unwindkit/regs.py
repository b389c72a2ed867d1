"""Register state for x86_64 unwinding."""

from __future__ import annotations

from enum import IntEnum


class Reg(IntEnum):
    """The general purpose x86_64 registers, in storage order."""

    RAX = 0
    RDX = 1
    RCX = 2
    RBX = 3
    RSI = 4
    RDI = 5
    RBP = 6
    RSP = 7
    R8 = 8
    R9 = 9
    R10 = 10
    R11 = 11
    R12 = 12
    R13 = 13
    R14 = 14
    R15 = 15


class UnwindRegsX86_64:
    """The instruction pointer and general purpose registers of one frame."""

    __slots__ = ("ip", "_regs")

    def __init__(self, ip: int, sp: int, bp: int) -> None:
        self.ip = ip
        self._regs = [0] * len(Reg)
        self.sp = sp
        self.bp = bp

    def get(self, reg: Reg) -> int:
        return self._regs[reg]

    def set(self, reg: Reg, value: int) -> None:
        self._regs[reg] = value

    @property
    def sp(self) -> int:
        return self._regs[Reg.RSP]

    @sp.setter
    def sp(self, value: int) -> None:
        self._regs[Reg.RSP] = value

    @property
    def bp(self) -> int:
        return self._regs[Reg.RBP]

    @bp.setter
    def bp(self, value: int) -> None:
        self._regs[Reg.RBP] = value

    def copy(self) -> UnwindRegsX86_64:
        new = type(self)(self.ip, self.sp, self.bp)
        new._regs = list(self._regs)
        return new

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UnwindRegsX86_64):
            return NotImplemented
        return self.ip == other.ip and self._regs == other._regs

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        fields = [f"ip={self.ip:#x}"]
        fields.extend(f"{reg.name.lower()}={self._regs[reg]:#x}" for reg in Reg)
        return f"{type(self).__name__}({', '.join(fields)})"