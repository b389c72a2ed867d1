import pytest

from unwindkit.cache import CacheX86_64
from unwindkit.errors import CouldNotReadStackError
from unwindkit.regs import UnwindRegsX86_64
from unwindkit.rules import ExecRule, OffsetSp, Uncacheable
from unwindkit.sections import ExplicitModuleSectionInfo, Module
from unwindkit.unwinder import UnwinderX86_64

STACK = [1, 2, 0x100300, 4, 0x40, 0x100200, 5, 6, 0x70, 0x100100, 7, 8, 9, 10, 0x0, 0x0]


def read_stack(addr):
    return STACK[addr // 8]


def make_module(start, stop, base=None, name="lib"):
    return Module(name, range(start, stop), start if base is None else base,
                  ExplicitModuleSectionInfo())


def test_max_known_code_address_empty():
    assert UnwinderX86_64().max_known_code_address() == 0


def test_max_known_code_address_uses_highest_module():
    unwinder = UnwinderX86_64()
    unwinder.add_module(make_module(0x5000, 0x6000))
    unwinder.add_module(make_module(0x1000, 0x2000))
    assert unwinder.max_known_code_address() == 0x6000


def test_find_module_for_address():
    unwinder = UnwinderX86_64()
    first = make_module(0x1000, 0x2000, base=0x800)
    second = make_module(0x3000, 0x4000)
    unwinder.add_module(second)
    unwinder.add_module(first)
    assert unwinder.find_module_for_address(0x1800) == (first, 0x1800 - 0x800)
    assert unwinder.find_module_for_address(0x3000) == (second, 0)
    assert unwinder.find_module_for_address(0x500) is None
    assert unwinder.find_module_for_address(0x2000) is None
    assert unwinder.find_module_for_address(0x5000) is None


def test_find_module_rejects_address_below_base():
    unwinder = UnwinderX86_64()
    unwinder.add_module(make_module(0x1000, 0x2000, base=0x1800))
    assert unwinder.find_module_for_address(0x1400) is None


def test_find_module_rejects_relative_address_beyond_u32():
    unwinder = UnwinderX86_64()
    unwinder.add_module(make_module(0x1000, 0x2_0000_0000, base=0))
    assert unwinder.find_module_for_address(0x1_0000_0000) is None
    module, rel = unwinder.find_module_for_address(0xFFFF_FFFF)
    assert rel == 0xFFFF_FFFF


def test_remove_module():
    unwinder = UnwinderX86_64()
    unwinder.add_module(make_module(0x1000, 0x2000))
    unwinder.add_module(make_module(0x3000, 0x4000))
    unwinder.remove_module(0x1234)
    assert unwinder.max_known_code_address() == 0x4000
    unwinder.remove_module(0x3000)
    assert unwinder.max_known_code_address() == 0x2000
    assert unwinder.find_module_for_address(0x3500) is None


def test_unwind_without_modules_uses_frame_pointer():
    unwinder = UnwinderX86_64()
    cache = CacheX86_64()
    regs = UnwindRegsX86_64(0x100300, 0x18, 0x20)
    assert unwinder.unwind_frame(0x100300, True, regs, cache, read_stack) == 0x100200
    assert (regs.ip, regs.sp, regs.bp) == (0x100200, 0x30, 0x40)
    assert unwinder.unwind_frame(0x100200, False, regs, cache, read_stack) == 0x100100
    assert (regs.ip, regs.sp, regs.bp) == (0x100100, 0x50, 0x70)
    assert unwinder.unwind_frame(0x100100, False, regs, cache, read_stack) is None


def test_second_lookup_hits_cache():
    unwinder = UnwinderX86_64()
    cache = CacheX86_64()
    for _ in range(2):
        regs = UnwindRegsX86_64(0x100300, 0x18, 0x20)
        assert unwinder.unwind_frame(0x100300, True, regs, cache, read_stack) == 0x100200
    stats = cache.stats()
    assert stats.hits() == 1
    assert stats.miss_empty_slot_count == 1
    assert stats.total() == 2


def test_module_change_invalidates_cache():
    unwinder = UnwinderX86_64()
    cache = CacheX86_64()
    regs = UnwindRegsX86_64(0x100300, 0x18, 0x20)
    unwinder.unwind_frame(0x100300, True, regs, cache, read_stack)
    unwinder.add_module(make_module(0x1000, 0x2000))
    regs = UnwindRegsX86_64(0x100300, 0x18, 0x20)
    unwinder.unwind_frame(0x100300, True, regs, cache, read_stack)
    stats = cache.stats()
    assert stats.miss_wrong_modules_count == 1
    assert stats.hits() == 0


def test_resolver_rule_is_cached():
    calls = []

    def resolver(module, rel, is_first_frame, regs, rs):
        calls.append((module.name, rel, is_first_frame))
        return ExecRule(OffsetSp(1))

    unwinder = UnwinderX86_64(resolver)
    unwinder.add_module(make_module(0x100000, 0x200000, name="main"))
    cache = CacheX86_64()
    for _ in range(2):
        regs = UnwindRegsX86_64(0x100400, 0x10, 0x20)
        assert unwinder.unwind_frame(0x100400, True, regs, cache, read_stack) == 0x100300
        assert (regs.sp, regs.bp) == (0x18, 0x20)
    assert calls == [("main", 0x400, True)]


def test_uncacheable_result_is_returned_and_not_cached():
    calls = []

    def resolver(module, rel, is_first_frame, regs, rs):
        calls.append(rel)
        return Uncacheable(0x4242)

    unwinder = UnwinderX86_64(resolver)
    unwinder.add_module(make_module(0x100000, 0x200000))
    cache = CacheX86_64()
    regs = UnwindRegsX86_64(0x100400, 0x10, 0x20)
    assert unwinder.unwind_frame(0x100400, True, regs, cache, read_stack) == 0x4242
    assert unwinder.unwind_frame(0x100400, True, regs, cache, read_stack) == 0x4242
    assert len(calls) == 2
    assert cache.stats().hits() == 0


def test_failing_resolver_falls_back_to_frame_pointer():
    def resolver(module, rel, is_first_frame, regs, rs):
        raise ValueError("bad unwind data")

    unwinder = UnwinderX86_64(resolver)
    unwinder.add_module(make_module(0x100000, 0x200000))
    cache = CacheX86_64()
    regs = UnwindRegsX86_64(0x100300, 0x18, 0x20)
    assert unwinder.unwind_frame(0x100300, True, regs, cache, read_stack) == 0x100200
    assert (regs.sp, regs.bp) == (0x30, 0x40)


def test_module_without_decoder_uses_fallback():
    unwinder = UnwinderX86_64()
    unwinder.add_module(make_module(0x100000, 0x200000))
    cache = CacheX86_64()
    regs = UnwindRegsX86_64(0x100300, 0x18, 0x20)
    assert unwinder.unwind_frame(0x100300, True, regs, cache, read_stack) == 0x100200


def test_unreadable_stack_raises():
    unwinder = UnwinderX86_64()
    cache = CacheX86_64()
    regs = UnwindRegsX86_64(0x100300, 0x18, 0x1000)
    with pytest.raises(CouldNotReadStackError) as info:
        unwinder.unwind_frame(0x100300, True, regs, cache, read_stack)
    assert info.value.address == 0x1000