from itertools import permutations

import pytest

from unwindkit.register_ordering import ENCODE_REGISTERS, decode, encode
from unwindkit.regs import Reg


def test_volatile_register_is_not_encodable():
    assert encode([Reg.RAX]) is None


def test_repeated_register_is_not_encodable():
    assert encode([Reg.RSI, Reg.RSI]) is None


def test_too_many_registers_is_not_encodable():
    assert encode(list(ENCODE_REGISTERS) + [Reg.RBX]) is None


def test_empty_ordering():
    assert encode([]) == (0, 0)
    assert decode(0, 0) == []


def test_roundtrip_all_permutations():
    for k in range(len(ENCODE_REGISTERS) + 1):
        for perm in permutations(ENCODE_REGISTERS, k):
            result = encode(perm)
            assert result is not None, perm
            count, encoded = result
            assert count == k
            assert decode(count, encoded) == list(perm)


def test_decode_truncates_to_count():
    count, encoded = encode([Reg.R15, Reg.R14, Reg.RBX])
    assert count == 3
    assert decode(2, encoded) == [Reg.R15, Reg.R14]


def test_decode_rejects_out_of_range_encoding():
    with pytest.raises(ValueError):
        decode(8, 65535)