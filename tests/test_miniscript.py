import os
import pytest

from bip32 import BIP32
from bip379.key import MiniscriptKey
from bip379.miniscript import fragments, Node, SatisfactionMaterial
from bip379.miniscript.errors import (
    MiniscriptMalformed,
    MiniscriptNodeCreationError,
    MiniscriptPropertyError,
    MiniscriptTypeError,
)
from bip379.miniscript.property import Property
from bip379.policy import Policy
from bip379.utils.hashes import hash160
from bip379.utils.script import CScript, OP_CHECKSIG


def dummy_pk():
    return BIP32.from_seed(os.urandom(32)).get_pubkey_from_path("m").hex()


def dummy_h256():
    return os.urandom(32).hex()


def dummy_h160():
    return os.urandom(20).hex()


def roundtrip(ms_str):
    """Test we can parse to and from Script and string representation."""
    node_a = Node.from_str(ms_str)
    node_b = Node.from_script(node_a.script)

    assert node_a == node_b
    assert node_b.script == node_a.script
    assert str(node_b) == str(Node.from_str(str(node_b)))

    return node_b


def test_simple_sanity_checks():
    """Some quick and basic sanity checks of the implem. The place to add new findings."""

    not_aliased = Node.from_str(
        "and_v(vc:pk_k(027a1b8c69c6a4e90ce85e0dd6fb99c51ef8af35b88f20f9f74f8f937f7acaec15),c:pk_k(023c110f0946ed6160ee95eee86efb79d13421d1b460f592b04dd21d74852d7631))"
    )
    aliased = Node.from_str(
        "and_v(v:pk(027a1b8c69c6a4e90ce85e0dd6fb99c51ef8af35b88f20f9f74f8f937f7acaec15),pk(023c110f0946ed6160ee95eee86efb79d13421d1b460f592b04dd21d74852d7631))"
    )
    assert aliased.script == not_aliased.script
    assert str(not_aliased) == str(aliased)

    assert roundtrip("older(1)").value == 1
    assert roundtrip("older(255)").value == 255
    assert roundtrip("older(16407)").value == 16407
    assert roundtrip("older(1621038656)").value == 1621038656
    assert roundtrip("after(1)").value == 1
    assert roundtrip("after(255)").value == 255
    assert roundtrip("after(16407)").value == 16407
    assert roundtrip("after(1621038656)").value == 1621038656
    # CSV with a negative value
    with pytest.raises(MiniscriptMalformed):
        Node.from_script(CScript(b"\x4f\xb2"))
    # CLTV with a negative value
    with pytest.raises(MiniscriptMalformed):
        Node.from_script(CScript(b"\x01\x81\xb1"))

    roundtrip(f"pk({dummy_pk()})")
    roundtrip(f"pk_k({dummy_pk()})")
    roundtrip(f"pkh({dummy_pk()})")
    roundtrip("older(100)")
    roundtrip("after(100)")
    roundtrip(f"sha256({dummy_h256()})")
    roundtrip(f"hash256({dummy_h256()})")
    roundtrip(f"ripemd160({dummy_h160()})")
    roundtrip(f"hash160({dummy_h160()})")
    roundtrip(f"multi(1,{dummy_pk()})")
    roundtrip(f"multi(1,{dummy_pk()},{dummy_pk()})")
    roundtrip(f"multi(2,{dummy_pk()},{dummy_pk()})")
    roundtrip(f"multi(2,{dummy_pk()},{dummy_pk()},{dummy_pk()})")
    roundtrip(f"c:pk_k({dummy_pk()})")
    roundtrip(f"and_v(and_v(vc:pk_k({dummy_pk()}),vc:pk_k({dummy_pk()})),older(2))")
    roundtrip(
        f"or_b(c:pk_k({dummy_pk()}),a:and_b(c:pk_k({dummy_pk()}),sc:pk_k({dummy_pk()})))"
    )
    roundtrip(
        f"or_b(c:pk_k({dummy_pk()}),a:and_n(c:pk_k({dummy_pk()}),c:pk_k({dummy_pk()})))"
    )
    roundtrip(f"or_b(c:pk_k({dummy_pk()}),sc:pk_k({dummy_pk()}))")
    roundtrip(f"or_d(c:pk_k({dummy_pk()}),c:pk_k({dummy_pk()}))")
    roundtrip(
        f"t:or_c(c:pk_k({dummy_pk()}),and_v(vc:pk_k({dummy_pk()}),or_c(c:pk_k({dummy_pk()}),v:hash160({dummy_h160()}))))"
    )
    roundtrip(f"or_i(and_v(vc:pk_k({dummy_pk()}),hash256({dummy_h256()})),older(20))")
    roundtrip(f"andor(c:pk_k({dummy_pk()}),older(25),c:pk_k({dummy_pk()}))")
    roundtrip(
        f"andor(c:pk_k({dummy_pk()}),or_i(and_v(vc:pk_k({dummy_pk()}),ripemd160({dummy_h160()})),older(35)),c:pk_k({dummy_pk()}))"
    )
    roundtrip(
        f"thresh(3,c:pk_k({dummy_pk()}),sc:pk_k({dummy_pk()}),sc:pk_k({dummy_pk()}),sndv:after(30))"
    )
    roundtrip(
        f"or_d(multi(1,{dummy_pk()}),or_b(multi(3,{dummy_pk()},{dummy_pk()},{dummy_pk()}),su:after(50)))"
    )
    roundtrip(f"uuj:and_v(v:multi(2,{dummy_pk()},{dummy_pk()}),after(10))")
    roundtrip(
        f"or_b(or_i(n:multi(1,{dummy_pk()},{dummy_pk()}),0),a:or_i(0,older(1111)))"
    )
    roundtrip(f"llllllll:pk({dummy_pk()})")


def test_aliases():
    key = dummy_pk()

    assert Node.from_str(f"and_v(v:pk({key}),1)") == Node.from_str(f"tv:pk({key})")
    assert isinstance(Node.from_str(f"tv:pk({key})"), fragments.AndV)
    assert Node.from_str(f"or_i(0,pk({key}))") == Node.from_str(f"l:pk({key})")
    assert Node.from_str(f"or_i(pk({key}),0)") == Node.from_str(f"u:pk({key})")
    assert Node.from_str(f"andor(pk({key}),older(1),0)") == Node.from_str(
        f"and_n(pk({key}),older(1))"
    )
    assert str(Node.from_str(f"c:pk_h({key})")) == f"pkh({key})"
    assert str(Node.from_str(f"u:pk({key})")) == f"u:pk({key})"

    # The aliases are how the decoder gives them back.
    assert str(roundtrip(f"and_v(v:pk({key}),1)")) == f"tv:pk({key})"
    assert str(roundtrip(f"or_i(0,pk({key}))")) == f"l:pk({key})"
    assert str(roundtrip(f"andor(pk({key}),older(1),0)")) == f"and_n(pk({key}),older(1))"


def test_equality():
    key = dummy_pk()
    assert Node.from_str(f"pk({key})") == Node.from_str(f"c:pk_k({key})")
    assert hash(Node.from_str(f"pk({key})")) == hash(Node.from_str(f"c:pk_k({key})"))
    assert Node.from_str(f"pk({key})") != Node.from_str(f"pk({dummy_pk()})")
    assert Node.from_str("older(1)") != Node.from_str("after(1)")
    assert len({Node.from_str("1"), Node.from_str("1"), Node.from_str("0")}) == 2


def test_types():
    key = dummy_pk()

    assert str(Node.from_str(f"pk_k({key})").p) == "Konudesm"
    assert str(Node.from_str(f"pk({key})").p) == "Bonudesm"
    assert Node.from_str(f"v:pk({key})").p.has_all("Vfs")
    assert Node.from_str(f"s:pk({key})").p.has_all("W")
    assert Node.from_str("older(144)").p.has_all("Bzfm")
    assert not Node.from_str("older(144)").p.has_any("ds")
    assert Node.from_str(f"sha256({dummy_h256()})").p.has_all("Bonudm")
    assert Node.from_str("0").p.has_all("Bzudems")
    assert Node.from_str("1").p.has_all("Bzufm")
    assert Node.from_str(f"or_d(pk({key}),older(12))").p.has_all("Bm")
    # or_d is only expressive when both of its branches are.
    other_key = dummy_pk()
    assert str(Node.from_str(f"or_d(sha256({dummy_h256()}),pk({key}))").p) == "Bdu"
    assert Node.from_str(f"or_d(pk({key}),pk({other_key}))").p.has_all("Bdue")

    # Properties are set once.
    prop = Node.from_str(f"pk({key})").p
    with pytest.raises(AttributeError):
        prop.B = False
    with pytest.raises(MiniscriptPropertyError):
        Property("Bx")
    with pytest.raises(MiniscriptPropertyError):
        Property("BV").check_valid()


def test_type_errors():
    key_a, key_b = MiniscriptKey(dummy_pk()), MiniscriptKey(dummy_pk())

    # Each composition rule refuses sub-fragments of the wrong type.
    invalid = [
        lambda: fragments.AndV(fragments.WrapC(fragments.Pk(key_a)), fragments.Pk(key_b)),
        lambda: fragments.AndB(fragments.WrapC(fragments.Pk(key_a)), fragments.WrapC(fragments.Pk(key_b))),
        lambda: fragments.AndOr(fragments.Older(1), fragments.Just1(), fragments.Just0()),
        lambda: fragments.OrB(fragments.WrapC(fragments.Pk(key_a)), fragments.WrapC(fragments.Pk(key_b))),
        lambda: fragments.OrC(fragments.Older(1), fragments.WrapV(fragments.Older(2))),
        lambda: fragments.OrD(fragments.WrapC(fragments.Pk(key_a)), fragments.WrapV(fragments.Older(2))),
        lambda: fragments.OrI(fragments.Pk(key_a), fragments.WrapC(fragments.Pk(key_b))),
        lambda: fragments.Thresh(1, [fragments.Older(1), fragments.Older(2)]),
        lambda: fragments.WrapA(fragments.Pk(key_a)),
        lambda: fragments.WrapS(fragments.Older(1)),
        lambda: fragments.WrapC(fragments.Older(1)),
        lambda: fragments.WrapD(fragments.Older(1)),
        lambda: fragments.WrapV(fragments.Pk(key_a)),
        lambda: fragments.WrapJ(fragments.Older(1)),
        lambda: fragments.WrapN(fragments.Pk(key_a)),
        lambda: fragments.WrapT(fragments.Older(1)),
    ]
    for make_node in invalid:
        with pytest.raises(MiniscriptTypeError):
            make_node()

    # The error points at the offending fragment.
    with pytest.raises(MiniscriptTypeError) as exc:
        Node.from_str(f"and_v(pk({key_a}),pk({key_b}))")
    assert exc.value.fragment != ""

    # Branches of an or_i() must leave the same number of elements on the stack.
    with pytest.raises(MiniscriptTypeError):
        Node.from_str(f"or_i(pk_k({key_a}),pk({key_b}))")


def test_invalid_nodes():
    with pytest.raises(MiniscriptNodeCreationError):
        fragments.Older(0)
    with pytest.raises(MiniscriptNodeCreationError):
        fragments.After(2 ** 31)
    with pytest.raises(MiniscriptNodeCreationError):
        fragments.Sha256(os.urandom(20))
    with pytest.raises(MiniscriptNodeCreationError):
        fragments.Hash160(os.urandom(32))
    with pytest.raises(MiniscriptNodeCreationError):
        fragments.Multi(3, [dummy_pk(), dummy_pk()])
    with pytest.raises(MiniscriptNodeCreationError):
        fragments.Multi(1, [dummy_pk() for _ in range(21)])
    with pytest.raises(MiniscriptNodeCreationError):
        fragments.AndV(fragments.Just1(), "1")


def test_string_parsing_errors():
    key = dummy_pk()
    invalid = [
        "",
        f"pk(02{'ff' * 32})",
        f"pk({key}",
        f"pk({key}))",
        f"and_v(v:pk({key}))",
        f"x:pk({key})",
        f"unknown({key})",
        "older(+1)",
        "older(1_0)",
        "older(ab)",
        f"sha256({dummy_h160()})",
        f"multi(1)",
        f"thresh(1)",
        "pk(02zz)",
        f"and_v(v:pk({key}),1)x",
    ]
    for ms_str in invalid:
        with pytest.raises((MiniscriptMalformed, MiniscriptNodeCreationError)):
            Node.from_str(ms_str)

    # Errors carry the position in the string.
    with pytest.raises(MiniscriptMalformed) as exc:
        Node.from_str(f"and_v(v:pk({key}),1)x")
    assert exc.value.position == len(f"and_v(v:pk({key}),1)")


def test_keys():
    keys = [dummy_pk() for _ in range(4)]
    node = Node.from_str(
        f"or_d(multi(2,{keys[0]},{keys[1]}),and_v(v:pkh({keys[2]}),pk({keys[3]})))"
    )
    assert [str(key) for key in node.keys] == keys

    # A pk_h() decoded without its key does not know it.
    decoded = Node.from_script(node.script)
    assert [str(key) for key in decoded.keys] == [keys[0], keys[1], keys[3]]
    keyhash = hash160(bytes.fromhex(keys[2]))
    assert f"pkh({keyhash.hex()})" in str(decoded)

    # Unless we tell the decoder about it.
    decoded = Node.from_script(node.script, pkh_keys={keyhash: MiniscriptKey(keys[2])})
    assert decoded.keys == node.keys
    assert str(decoded) == str(node)


def test_script_encoding():
    key = dummy_pk()
    assert Node.from_str(f"pk({key})").script == CScript([bytes.fromhex(key), OP_CHECKSIG])
    # CHECKSIG VERIFY is merged into CHECKSIGVERIFY
    assert Node.from_str(f"v:pk({key})").script == CScript(bytes.fromhex("21" + key + "ad"))
    assert Node.from_str("v:older(1)").script == CScript(bytes.fromhex("51b269"))
    assert Node.from_str("and_v(v:1,1)").script == CScript(bytes.fromhex("516951"))
    assert Node.from_str(f"v:sha256({'00' * 32})").script.hex().endswith("88")


def test_timelock_conflicts():
    # Absolute timelock simple conflicts
    assert Node.from_str("after(100)").no_timelock_mix
    assert Node.from_str("after(1000000000)").no_timelock_mix
    assert not Node.from_str("and_b(after(100),a:after(1000000000))").no_timelock_mix
    assert not Node.from_str("and_v(v:after(1000000000),after(100))").no_timelock_mix
    assert not Node.from_str("and_n(ndv:after(100),after(1000000000))").no_timelock_mix
    assert not Node.from_str(
        "andor(ndv:after(1000000000),after(100),after(1))"
    ).no_timelock_mix
    assert Node.from_str("andor(ndv:after(100),after(1),after(1000000000))").no_timelock_mix
    assert Node.from_str("or_b(dv:after(100),adv:after(1000000000))").no_timelock_mix
    assert Node.from_str("or_c(ndv:after(100),v:after(1000000000))").no_timelock_mix
    assert Node.from_str("or_d(ndv:after(1000000000),after(100))").no_timelock_mix
    assert Node.from_str("or_i(after(100),after(1000000004))").no_timelock_mix
    assert Node.from_str("thresh(1,ndv:after(1000000007),andv:after(12))").no_timelock_mix
    assert not Node.from_str("thresh(2,ndv:after(1000000007),andv:after(12))").no_timelock_mix

    # Relative timelock simple conflicts
    assert Node.from_str("older(4194304)").no_timelock_mix
    assert not Node.from_str("and_b(older(100),a:older(4194304))").no_timelock_mix
    assert not Node.from_str("and_v(v:older(4194304),older(100))").no_timelock_mix
    assert Node.from_str("or_i(older(100),older(4194304))").no_timelock_mix
    assert not Node.from_str(
        "thresh(2,ndv:older(12),andv:older(4194307),andv:older(3))"
    ).no_timelock_mix

    # There is no mix across relative and absolute timelocks
    assert Node.from_str("and_v(v:after(100),older(4194304))").no_timelock_mix
    assert Node.from_str(
        "thresh(2,ndv:older(12),andv:after(1000000000),andv:older(3))"
    ).no_timelock_mix

    # Conflicts deep in the tree are carried to the top.
    assert not Node.from_str(
        f"or_d(pk({dummy_pk()}),and_v(v:after(100),after(1000000000)))"
    ).no_timelock_mix


def test_ops_count():
    # Vectors from the C++ implem.
    assert Node.from_str("lltvln:after(1231488000)").ops_count == 12
    assert (
        Node.from_str(
            "uuj:and_v(v:multi(2,03d01115d548e7561b15c38f004d734633687cf4419620095bc5b0f47070afe85a,025601570cb47f238d2b0286db4a990fa0f3ba28d1a319f5e7cf55c2a2444da7cc),after(1231488000))"
        ).ops_count
        == 14
    )
    assert Node.from_str(f"pk({dummy_pk()})").ops_count == 1


def test_sanity():
    key_a, key_b = dummy_pk(), dummy_pk()

    assert Node.from_str(f"pk({key_a})").is_sane()
    assert Node.from_str(f"or_d(pk({key_a}),and_v(v:pk({key_b}),older(10)))").is_sane()
    # Not safe
    assert not Node.from_str("older(10)").is_sane()
    # Not a top-level fragment
    assert not Node.from_str(f"v:pk({key_a})").is_sane()
    # Duplicate keys
    assert not Node.from_str(f"and_v(v:pk({key_a}),pk({key_a}))").is_sane()
    # Timelocks mix
    assert not Node.from_str(
        f"and_v(v:pk({key_a}),and_v(v:after(100),after(1000000000)))"
    ).is_sane()
    # Too large, and too many opcodes
    keys = [dummy_pk() for _ in range(110)]
    too_large = Node.from_str(
        f"thresh(1,pk({keys[0]}),{','.join(f's:pk({key})' for key in keys[1:])})"
    )
    assert len(too_large.script) > 3600
    assert too_large.ops_count > 201
    assert not too_large.is_sane()


def test_lift():
    key_a, key_b, key_c = dummy_pk(), dummy_pk(), dummy_pk()
    h = dummy_h256()

    node = Node.from_str(f"or_d(pk({key_a}),and_v(v:pk({key_b}),older(10)))")
    assert node.lift() == Policy.from_str(f"or(pk({key_a}),and(pk({key_b}),older(10)))")

    node = Node.from_str(f"andor(pk({key_a}),sha256({h}),multi(1,{key_b},{key_c}))")
    assert str(node.lift()) == (
        f"or(and(pk({key_a}),sha256({h})),thresh(1,pk({key_b}),pk({key_c})))"
    )

    assert str(Node.from_str(f"tv:pk({key_a})").lift()) == f"pk({key_a})"
    assert str(Node.from_str("1").lift()) == "TRIVIAL"
    assert str(Node.from_str("0").lift()) == "UNSATISFIABLE"
    assert str(Node.from_str(f"and_n(pk({key_a}),after(5))").lift()) == (
        f"and(pk({key_a}),after(5))"
    )

    # A key hash can't be lifted.
    node = Node.from_script(Node.from_str(f"pkh({key_a})").script)
    with pytest.raises(MiniscriptNodeCreationError):
        node.lift()


def test_nodes_are_immutable_values():
    key = dummy_pk()
    node = Node.from_str(f"or_d(pk({key}),older(12))")
    script = node.script
    node.satisfaction(SatisfactionMaterial())
    node.dissatisfaction()
    assert node.script == script
    assert [str(n) for n in node.nodes()] == [
        f"or_d(pk({key}),older(12))",
        f"pk({key})",
        f"pk_k({key})",
        "older(12)",
    ]
