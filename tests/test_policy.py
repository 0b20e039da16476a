import os
import pytest

from bip32 import BIP32
from bip379.miniscript import Node
from bip379.policy import (
    After,
    And,
    Hash160,
    Key,
    Older,
    Or,
    Policy,
    PolicyError,
    PolicyParsingError,
    Sha256,
    Thresh,
    Trivial,
    Unsatisfiable,
    parse_policy,
)


def dummy_pk():
    return BIP32.from_seed(os.urandom(32)).get_pubkey_from_path("m").hex()


def parsing_error_span(policy_str):
    with pytest.raises(PolicyParsingError) as exc:
        parse_policy(policy_str)
    return exc.value.span


def test_parse_leaves():
    key = dummy_pk()
    policy = parse_policy(f"pk({key})")
    assert isinstance(policy, Key)
    assert policy.keys[0].bytes().hex() == key
    assert str(policy) == f"pk({key})"

    xpub = BIP32.from_seed(os.urandom(32)).get_xpub()
    assert str(parse_policy(f"pk({xpub})")) == f"pk({xpub})"

    policy = parse_policy("older(144)")
    assert isinstance(policy, Older) and policy.value == 144
    policy = parse_policy("after(500000001)")
    assert isinstance(policy, After) and policy.value == 500000001

    digest = os.urandom(32)
    policy = parse_policy(f"sha256({digest.hex()})")
    assert isinstance(policy, Sha256) and policy.digest == digest
    digest = os.urandom(20)
    policy = parse_policy(f"hash160({digest.hex()})")
    assert isinstance(policy, Hash160) and policy.digest == digest

    assert isinstance(parse_policy("TRIVIAL"), Trivial)
    assert isinstance(parse_policy("UNSATISFIABLE"), Unsatisfiable)


def test_parse_combinations():
    key_a, key_b, key_c = dummy_pk(), dummy_pk(), dummy_pk()

    policy_str = f"or(9@pk({key_a}),1@and(pk({key_b}),older(144)))"
    policy = Policy.from_str(policy_str)
    assert isinstance(policy, Or)
    assert policy.weights == [9, 1]
    assert isinstance(policy.subs[1], And)
    assert str(policy) == policy_str
    assert [k.bytes().hex() for k in policy.keys] == [key_a, key_b]

    # Weights default to 1, and are only printed when they matter.
    policy = parse_policy(f"or(pk({key_a}),1@pk({key_b}))")
    assert policy.weights == [1, 1]
    assert str(policy) == f"or(pk({key_a}),pk({key_b}))"
    policy = parse_policy(f"or(pk({key_a}),2@pk({key_b}))")
    assert str(policy) == f"or(1@pk({key_a}),2@pk({key_b}))"

    policy = parse_policy(f"thresh(2,pk({key_a}),pk({key_b}),pk({key_c}))")
    assert isinstance(policy, Thresh)
    assert policy.k == 2 and len(policy.subs) == 3

    # More than two children
    policy = parse_policy(f"and(pk({key_a}),pk({key_b}),after(10))")
    assert len(policy.subs) == 3

    # Whitespaces are ignored
    spaced = parse_policy(f" and( pk({key_a}) ,\n older(10) ) ")
    assert spaced == parse_policy(f"and(pk({key_a}),older(10))")


def test_policy_equality():
    key = dummy_pk()
    policy_a = parse_policy(f"or(pk({key}),older(10))")
    policy_b = Or([Key(key), Older(10)])
    assert policy_a == policy_b
    assert len({policy_a, policy_b}) == 1
    assert policy_a != parse_policy(f"or(pk({key}),older(11))")
    assert policy_a != Or([Key(key), Older(10)], [1, 2])


def test_policy_validation():
    key = dummy_pk()

    with pytest.raises(PolicyError):
        And([Key(key)])
    with pytest.raises(PolicyError):
        Or([Key(key)])
    with pytest.raises(PolicyError):
        Or([Key(key), Older(1)], [1, 0])
    with pytest.raises(PolicyError):
        Or([Key(key), Older(1)], [1, -3])
    with pytest.raises(PolicyError):
        Or([Key(key), Older(1)], [1])
    with pytest.raises(PolicyError):
        Thresh(0, [Key(key), Older(1)])
    with pytest.raises(PolicyError):
        Thresh(3, [Key(key), Older(1)])
    with pytest.raises(PolicyError):
        Older(0)
    with pytest.raises(PolicyError):
        After(2 ** 31)
    with pytest.raises(PolicyError):
        Sha256(os.urandom(20))
    with pytest.raises(PolicyError):
        Key("02" + "ff" * 32)

    # Parsing errors are policy errors too
    assert issubclass(PolicyParsingError, PolicyError)


def test_parsing_error_spans():
    key = dummy_pk()

    # Unknown fragment
    assert parsing_error_span("foo(1)") == (0, 3)
    # Invalid values point to the offending token.
    assert parsing_error_span("older(0)") == (6, 7)
    assert parsing_error_span("after(abc)") == (6, 9)
    assert parsing_error_span("sha256(zz)") == (7, 9)
    assert parsing_error_span(f"sha256({os.urandom(20).hex()})") == (7, 47)
    assert parsing_error_span(f"pk({'02' + 'ff' * 32})") == (3, 69)
    assert parsing_error_span(f"or(0@pk({key}),older(1))") == (3, 4)
    # Invalid combinations point to the whole fragment.
    policy_str = f"thresh(3,pk({key}),older(1))"
    assert parsing_error_span(policy_str) == (0, len(policy_str))
    policy_str = f"and(pk({key}))"
    assert parsing_error_span(policy_str) == (0, len(policy_str))
    # Syntax errors
    policy_str = f"pk({key}"
    assert parsing_error_span(policy_str) == (len(policy_str), len(policy_str))
    policy_str = f"pk({key}))"
    assert parsing_error_span(policy_str) == (len(policy_str) - 1, len(policy_str))
    assert parsing_error_span("and(,older(1))") == (4, 5)
    assert parsing_error_span("or(1#older(1),older(2))") == (4, 5)
    assert parsing_error_span("") == (0, 0)

    with pytest.raises(PolicyParsingError) as exc:
        parse_policy("older(0)")
    assert "(at 6:7)" in str(exc.value)


def test_lift_and_parse():
    key_a, key_b = dummy_pk(), dummy_pk()
    node = Node.from_str(f"or_d(pk({key_a}),and_v(v:pk({key_b}),older(144)))")
    lifted = node.lift()
    assert lifted == parse_policy(f"or(pk({key_a}),and(pk({key_b}),older(144)))")
    assert parse_policy(str(lifted)) == lifted
