"""Exceptions raised while unwinding stack frames."""

from __future__ import annotations


class StackReadError(LookupError):
    """Raised by a ``read_stack`` callback when an address cannot be read.

    Any ``LookupError`` raised by the callback counts as a failed read, so a
    callback that indexes into a list or dict works without extra handling.
    """


class UnwindError(Exception):
    """Base class for errors that stop the unwinding of a frame."""

    default_message = "unwinding failed"

    def __init__(self, *args: object) -> None:
        super().__init__(*(args or (self.default_message,)))

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and self.args == other.args  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self), self.args))


class IntegerOverflowError(UnwindError):
    """An address computation left the 64-bit address space."""

    default_message = "integer overflow while computing an address"


class CouldNotReadStackError(UnwindError):
    """The stack could not be read at the given address."""

    def __init__(self, address: int) -> None:
        super().__init__(address)
        self.address = address

    def __str__(self) -> str:
        return f"could not read stack at {self.address:#x}"


class FramepointerMovedBackwardsError(UnwindError):
    """Frame pointer unwinding would move the stack pointer backwards."""

    default_message = "frame pointer unwinding moved backwards"


class DidNotAdvanceError(UnwindError):
    """Unwinding produced the same stack pointer and instruction pointer."""

    default_message = "unwinding did not advance"


class ReturnAddressIsNullError(UnwindError):
    """A return address of zero was found where a caller was expected."""

    default_message = "return address is null"