"""Frame addresses and an iterator that walks a whole stack."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Union

from unwindkit.cache import CacheX86_64
from unwindkit.errors import ReturnAddressIsNullError
from unwindkit.regs import UnwindRegsX86_64
from unwindkit.unwinder import UnwinderX86_64

ReadStack = Callable[[int], int]


@dataclass(frozen=True, slots=True)
class InstructionPointer:
    """The address of the instruction being executed in the innermost frame."""

    address: int

    @property
    def address_for_lookup(self) -> int:
        """The address whose unwind information describes this frame."""
        return self.address

    @property
    def is_return_address(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class ReturnAddress:
    """A non-zero return address of a caller frame."""

    address: int

    def __post_init__(self) -> None:
        if self.address == 0:
            raise ValueError("a return address cannot be zero")

    @property
    def address_for_lookup(self) -> int:
        """The address inside the call instruction, just before the return address."""
        return self.address - 1

    @property
    def is_return_address(self) -> bool:
        return True


FrameAddress = Union[InstructionPointer, ReturnAddress]


class UnwindIterator:
    """Yields the frames of a stack, starting with the instruction pointer.

    Iteration stops when a root function is reached. An ``UnwindError`` raised
    from ``__next__`` means the stack could not be walked further; the frames
    yielded before it remain valid.
    """

    __slots__ = ("_unwinder", "_next_pc", "_current", "_done", "regs", "_cache", "_read_stack")

    def __init__(
        self,
        unwinder: UnwinderX86_64,
        pc: int,
        regs: UnwindRegsX86_64,
        cache: CacheX86_64,
        read_stack: ReadStack,
    ) -> None:
        self._unwinder = unwinder
        self._next_pc: Optional[int] = pc
        self._current: Optional[FrameAddress] = None
        self._done = False
        self.regs = regs.copy()
        self._cache = cache
        self._read_stack = read_stack

    def __iter__(self) -> Iterator[FrameAddress]:
        return self

    def __next__(self) -> FrameAddress:
        if self._done:
            raise StopIteration
        if self._next_pc is not None:
            frame = InstructionPointer(self._next_pc)
            self._next_pc = None
            self._current = frame
            return frame

        current = self._current
        assert current is not None
        return_address = self._unwinder.unwind_frame(
            current.address_for_lookup,
            not current.is_return_address,
            self.regs,
            self._cache,
            self._read_stack,
        )
        if return_address is None:
            self._done = True
            raise StopIteration
        if return_address == 0:
            raise ReturnAddressIsNullError()
        frame = ReturnAddress(return_address)
        self._current = frame
        return frame


def iter_frames(
    unwinder: UnwinderX86_64,
    pc: int,
    regs: UnwindRegsX86_64,
    cache: CacheX86_64,
    read_stack: ReadStack,
) -> UnwindIterator:
    """Return an iterator that unwinds frame by frame until the end of the stack."""
    return UnwindIterator(unwinder, pc, regs, cache, read_stack)