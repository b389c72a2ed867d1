# unwindkit

`unwindkit` walks x86_64 call stacks. You supply three things:

- the register values at the point of interruption,
- a function that reads 8-byte words from the stack,
- the modules loaded into the process.

It then gives back the return address of each frame in turn.

It is meant for sampling profilers and crash reporters. These tools capture a
thread's registers and a copy of its stack, then rebuild the call chain later,
outside the process.

## What it provides

- **Unwind rules** (`unwindkit.rules`). Each rule is a small value object that
  recovers the caller's `sp`, `bp` and return address:
  `EndOfStack`, `JustReturn`, `JustReturnIfFirstFrameOtherwiseFp`,
  `OffsetSp`, `OffsetSpAndRestoreBp`, `UseFramePointer` and
  `OffsetSpAndPopRegisters`.
  - Run a rule with `rule.exec(is_first_frame, regs, read_stack)`.
  - `rule_for_sequence_of_offset_or_pop` builds a rule from an optional
    `OffsetBy8` followed by `Pop` items.
- **Register ordering** (`unwindkit.register_ordering`). `encode` and
  `decode` pack an ordered set of callee-saved registers into a small
  integer.
- **Instruction analysis** (`unwindkit.analysis`). It detects prologues
  (`push`, `sub rsp`, `mov rbp, rsp`) and epilogues (`pop`, `ret`, and a
  tail-call `jmp`). This lets the innermost frame unwind correctly even when
  the pc is inside a prologue or an epilogue.
- **Compact unwind opcodes** (`unwindkit.compact`).
  - `unwind_frame_from_opcode` turns an already decoded mach-O opcode into
    an `ExecRule`, or into a `NeedDwarf` reference. The opcode types are
    `NullOpcode`, `FramelessImmediate`, `FramelessIndirect`, `DwarfOpcode`,
    `FrameBased`, `UnrecognizedKind` and `InvalidFrameless`.
  - `rule_for_stub_helper` gives the fixed rules for `__stub_helper` code.
- **DWARF CFI rows** (`unwindkit.cfi`). `translate_into_unwind_rule` turns
  an already evaluated CFA rule and the register rules for `rbp` and the
  return address into a cacheable rule. If it cannot, it raises
  `ConversionError`.
- **A rule cache** (`unwindkit.cache.CacheX86_64`, built on
  `unwindkit.rule_cache.RuleCache`). It has 509 slots, keyed by address and
  module generation. `stats()` returns the hit and miss counts.
- **An unwinder and a frame iterator** (`unwindkit.unwinder`,
  `unwindkit.frames`).

## Installing

```
pip install unwindkit
```

It needs Python 3.10 or newer and has no runtime dependencies.

## Walking a stack

```python
from unwindkit.regs import UnwindRegsX86_64
from unwindkit.cache import CacheX86_64
from unwindkit.unwinder import UnwinderX86_64
from unwindkit.frames import iter_frames

stack = [1, 2, 0x100300, 4, 0x40, 0x100200, 5, 6, 0x70, 0x100100, 0, 0, 0, 0, 0, 0]

def read_stack(address):
    # Any LookupError (IndexError, KeyError, StackReadError) counts as a failed read.
    return stack[address // 8]

unwinder = UnwinderX86_64()   # no modules: frame pointer unwinding throughout
cache = CacheX86_64()
regs = UnwindRegsX86_64(ip=0x100400, sp=0x30, bp=0x40)

for frame in iter_frames(unwinder, 0x100400, regs, cache, read_stack):
    print(frame)
# InstructionPointer(address=1049600)
# ReturnAddress(address=1048832)
```

The first frame yielded is an `InstructionPointer`. Every later frame is a
`ReturnAddress`.

Iteration stops normally when a root is reached. That happens on a zero
frame pointer, a zero return address, or an `EndOfStack` rule.

When the stack cannot be walked further, `__next__` raises a subclass of
`unwindkit.errors.UnwindError` instead. The subclasses are:

- `CouldNotReadStackError`
- `IntegerOverflowError`
- `FramepointerMovedBackwardsError`
- `DidNotAdvanceError`
- `ReturnAddressIsNullError`

Stacks are often truncated, so collect frames as you go. That way you keep
the frames found before the error.

To step a single frame, call
`UnwinderX86_64.unwind_frame(lookup_address, is_first_frame, regs, cache, read_stack)`.
It updates `regs` in place. It returns the return address, or `None` at the
end of the stack.

## Modules

Describe each loaded image with `Module` and an `ExplicitModuleSectionInfo`.
Ranges may be given as `range` objects or as `(start, end)` pairs:

```python
from unwindkit.sections import Module, ExplicitModuleSectionInfo

info = ExplicitModuleSectionInfo(
    base_svma=0x100000000,
    text_svma=range(0x100000b64, 0x1001d2d18),
    text=b"\x55\x48\x89\xe5",
    stubs_svma=range(0x1001d2d18, 0x1001d309c),
)
module = Module("mybinary", range(0x1003fc000, 0x100634000), 0x1003fc000, info)
unwinder.add_module(module)
```

`classify_unwind_data` records which kind of unwind data a module carries:

- `CompactUnwindData`
- `EhFrameData`
- `DebugFrameData`
- `NoUnwindData`

You can also subclass `ModuleSectionInfo` to read sections from your own
object-file reader.

The unwinder keeps its modules sorted by start address. Other calls:

- `remove_module(start)` removes a module by the start of its range.
- `max_known_code_address()` returns the end of the highest module.
- `find_module_for_address(address)` returns the module and the address
  relative to the module's base.

## What it does not do

`unwindkit` does not parse binary unwind tables itself. It reads neither
`__unwind_info` pages, nor `.eh_frame` / `.eh_frame_hdr` / `.debug_frame`
records, nor object files.

To use a module's unwind data, pass a `resolver` to `UnwinderX86_64`. It is
called as `resolver(module, relative_address, is_first_frame, regs, read_stack)`
and must return either of these:

- an `ExecRule`, which is cached;
- an `Uncacheable(return_address)`.

The resolver can do its decoding work with the helpers in
`unwindkit.compact`, `unwindkit.cfi` and `unwindkit.analysis`.

The unwinder falls back to frame pointer unwinding (`UseFramePointer`) in
three cases:

- when there is no resolver,
- when the address lies outside every module,
- when the resolver fails.

Only x86_64 is covered.

## Running the tests

```
pip install -e .[test]
pytest
```