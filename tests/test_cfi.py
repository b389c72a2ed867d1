import pytest

from unwindkit import cfi
from unwindkit.cfi import (
    CfaExpression,
    CfaRegisterAndOffset,
    ConversionError,
    Offset,
    OtherRegisterRule,
    SameValue,
    Undefined,
    register_rule_to_cfa_offset,
    rule_if_uncovered_by_fde,
    translate_into_unwind_rule,
)
from unwindkit.regs import UnwindRegsX86_64
from unwindkit.rules import (
    EndOfStack,
    JustReturn,
    JustReturnIfFirstFrameOtherwiseFp,
    OffsetSpAndRestoreBp,
    UseFramePointer,
)

RA = Offset(-8)


def rsp(offset):
    return CfaRegisterAndOffset(cfi.DWARF_RSP, offset)


def rbp(offset):
    return CfaRegisterAndOffset(cfi.DWARF_RBP, offset)


def test_undefined_return_address_is_end_of_stack():
    assert translate_into_unwind_rule(rsp(8), Undefined(), Undefined()) == EndOfStack()
    assert translate_into_unwind_rule(CfaExpression(b"\x01"), Undefined(), Undefined()) == EndOfStack()


def test_epilogue_row_with_bp_beyond_sp():
    # CFA=RSP+8: RBP=[CFA-16], RIP=[CFA-8]
    rule = translate_into_unwind_rule(rsp(8), Offset(-16), RA)
    assert rule == OffsetSpAndRestoreBp(1, -1)


def test_rsp_plus_8_behaves_like_just_return():
    rule = translate_into_unwind_rule(rsp(8), SameValue(), RA)
    stack = {0x330: 0x123456}
    regs_a = UnwindRegsX86_64(0x1000, 0x330, 0x348)
    regs_b = regs_a.copy()
    assert rule.exec(True, regs_a, stack.__getitem__) == JustReturn().exec(
        True, regs_b, stack.__getitem__
    )
    assert regs_a == regs_b


def test_frame_pointer_row():
    assert translate_into_unwind_rule(rbp(16), Offset(-16), RA) == UseFramePointer()


def test_frame_pointer_row_with_strange_offset():
    # CFA=reg6+32: reg6=[CFA-16], reg16=[CFA-8]
    with pytest.raises(ConversionError) as exc:
        translate_into_unwind_rule(rbp(32), Offset(-16), RA)
    assert exc.value.reason == "frame_pointer_rule_has_strange_bp_offset"


def test_frame_pointer_row_must_restore_bp():
    with pytest.raises(ConversionError) as exc:
        translate_into_unwind_rule(rbp(16), Undefined(), RA)
    assert exc.value.reason == "frame_pointer_rule_does_not_restore_bp"


def test_return_address_rules():
    with pytest.raises(ConversionError) as exc:
        translate_into_unwind_rule(CfaExpression(), Undefined(), Offset(-16))
    assert exc.value.reason == "return_address_rule_with_unexpected_offset"
    with pytest.raises(ConversionError) as exc:
        translate_into_unwind_rule(rsp(8), Undefined(), SameValue())
    assert exc.value.reason == "return_address_rule_was_weird"


def test_cfa_expression_and_unknown_register():
    with pytest.raises(ConversionError) as exc:
        translate_into_unwind_rule(CfaExpression(b"\x77"), Undefined(), RA)
    assert exc.value.reason == "cfa_is_expression"
    with pytest.raises(ConversionError) as exc:
        translate_into_unwind_rule(CfaRegisterAndOffset(3, 8), Undefined(), RA)
    assert exc.value.reason == "cfa_is_offset_from_unknown_register"


@pytest.mark.parametrize("offset", [-128, 8 * 0x10000])
def test_sp_offset_does_not_fit(offset):
    with pytest.raises(ConversionError) as exc:
        translate_into_unwind_rule(rsp(offset), Undefined(), RA)
    assert exc.value.reason == "sp_offset_does_not_fit"


def test_fp_storage_offset_does_not_fit():
    with pytest.raises(ConversionError) as exc:
        translate_into_unwind_rule(rsp(8), Offset(-8 * 40000), RA)
    assert exc.value.reason == "fp_storage_offset_does_not_fit"


def test_bp_rule_not_relative_to_cfa():
    with pytest.raises(ConversionError) as exc:
        translate_into_unwind_rule(rsp(8), OtherRegisterRule("expr"), RA)
    assert exc.value.reason == "register_not_stored_relative_to_cfa"


def test_register_rule_to_cfa_offset():
    assert register_rule_to_cfa_offset(Undefined()) is None
    assert register_rule_to_cfa_offset(SameValue()) is None
    assert register_rule_to_cfa_offset(Offset(-24)) == -24
    with pytest.raises(ConversionError):
        register_rule_to_cfa_offset(OtherRegisterRule())


def test_rule_if_uncovered_by_fde():
    assert rule_if_uncovered_by_fde() == JustReturnIfFirstFrameOtherwiseFp()