# Copyright (c) 2020 The Bitcoin Core developers
# Copyright (c) 2021 Antoine Poinsot
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.
"""
The Miniscript type system.

Every kind of fragment has exactly one composition rule deriving its type and
properties from the ones of its sub-fragments. See https://bitcoin.sipa.be/miniscript/
for the tables these rules implement. Types are for P2WSH Script.
"""

from enum import Enum, auto

from .errors import MiniscriptPropertyError, MiniscriptTypeError
from .property import Property


class Fragment(Enum):
    JUST_0 = auto()
    JUST_1 = auto()
    PK_K = auto()
    PK_H = auto()
    OLDER = auto()
    AFTER = auto()
    SHA256 = auto()
    HASH256 = auto()
    RIPEMD160 = auto()
    HASH160 = auto()
    MULTI = auto()
    AND_V = auto()
    AND_B = auto()
    AND_OR = auto()
    OR_B = auto()
    OR_C = auto()
    OR_D = auto()
    OR_I = auto()
    THRESH = auto()
    WRAP_A = auto()
    WRAP_S = auto()
    WRAP_C = auto()
    WRAP_D = auto()
    WRAP_V = auto()
    WRAP_J = auto()
    WRAP_N = auto()

    def __str__(self):
        return self.name.lower()


def _flag(letter, cond):
    return letter if cond else ""


def _describe(kind, subs):
    return f"{kind}({','.join(str(sub.p) for sub in subs)})"


def _require(kind, subs, index, types):
    """Check the sub-fragment at {index} has all of {types}."""
    p = subs[index].p
    if not p.has_all(types):
        raise MiniscriptTypeError(
            f"Sub-fragment {index} of {kind} must be '{types}', got '{p}'",
            _describe(kind, subs),
        )
    return p


def _require_same_type(kind, subs, first, second):
    """Branches of a disjunction must leave the same number of elements on the
    stack, which holds iff they share a basic type among B, K and V."""
    x, y = subs[first].p, subs[second].p
    if x.type() != y.type() or x.type() not in ("B", "K", "V"):
        raise MiniscriptTypeError(
            f"Branches of {kind} leave different stack depths: '{x.type()}' and '{y.type()}'",
            _describe(kind, subs),
        )
    return x, y


TERMINALS = {
    Fragment.JUST_0: "Bzudesm",
    Fragment.JUST_1: "Bzufm",
    Fragment.PK_K: "Konudesm",
    Fragment.PK_H: "Knudesm",
    Fragment.OLDER: "Bzfm",
    Fragment.AFTER: "Bzfm",
    Fragment.SHA256: "Bondum",
    Fragment.HASH256: "Bondum",
    Fragment.RIPEMD160: "Bondum",
    Fragment.HASH160: "Bondum",
    Fragment.MULTI: "Bnudesm",
}


def _terminal(kind, subs, k):
    return TERMINALS[kind]


def _and_v(kind, subs, k):
    x = _require(kind, subs, 0, "V")
    y = subs[1].p
    if not y.has_any("BKV"):
        raise MiniscriptTypeError(
            f"Sub-fragment 1 of {kind} must be 'B', 'K' or 'V', got '{y}'",
            _describe(kind, subs),
        )
    return (
        y.type()
        + _flag("z", x.z and y.z)
        + _flag("o", x.z and y.o or x.o and y.z)
        + _flag("n", x.n or x.z and y.n)
        + _flag("u", y.u)
        + _flag("f", y.f or x.s)
        + _flag("s", x.s or y.s)
        + _flag("m", x.m and y.m)
    )


def _and_b(kind, subs, k):
    x = _require(kind, subs, 0, "B")
    y = _require(kind, subs, 1, "W")
    return (
        "Bu"
        + _flag("z", x.z and y.z)
        + _flag("o", x.z and y.o or x.o and y.z)
        + _flag("n", x.n or x.z and y.n)
        + _flag("d", x.d and y.d)
        + _flag("e", x.e and y.e and x.s and y.s)
        + _flag("f", x.f and y.f or x.has_all("sf") or y.has_all("sf"))
        + _flag("s", x.s or y.s)
        + _flag("m", x.m and y.m)
    )


def _and_or(kind, subs, k):
    x = _require(kind, subs, 0, "Bdu")
    y, z = _require_same_type(kind, subs, 1, 2)
    return (
        y.type()
        + _flag("z", x.z and y.z and z.z)
        + _flag("o", x.z and y.o and z.o or x.o and y.z and z.z)
        + _flag("u", y.u and z.u)
        + _flag("d", z.d)
        + _flag("f", z.f and (x.s or y.f))
        + _flag("e", x.e and z.e and (x.s or y.f))
        + _flag("s", z.s and (x.s or y.s))
        + _flag("m", x.m and y.m and z.m and x.e and (x.s or y.s or z.s))
    )


def _or_b(kind, subs, k):
    x = _require(kind, subs, 0, "Bd")
    z = _require(kind, subs, 1, "Wd")
    return (
        "Bdu"
        + _flag("z", x.z and z.z)
        + _flag("o", x.z and z.o or x.o and z.z)
        + _flag("e", x.e and z.e)
        + _flag("s", x.s and z.s)
        + _flag("m", x.m and z.m and x.e and z.e and (x.s or z.s))
    )


def _or_c(kind, subs, k):
    x = _require(kind, subs, 0, "Bdu")
    z = _require(kind, subs, 1, "V")
    return (
        "Vf"
        + _flag("z", x.z and z.z)
        + _flag("o", x.o and z.z)
        + _flag("s", x.s and z.s)
        + _flag("m", x.m and z.m and x.e and (x.s or z.s))
    )


def _or_d(kind, subs, k):
    x = _require(kind, subs, 0, "Bdu")
    z = _require(kind, subs, 1, "B")
    return (
        "B"
        + _flag("z", x.z and z.z)
        + _flag("o", x.o and z.z)
        + _flag("d", z.d)
        + _flag("u", z.u)
        + _flag("f", z.f)
        + _flag("e", x.e and z.e)
        + _flag("s", x.s and z.s)
        + _flag("m", x.m and z.m and x.e and (x.s or z.s))
    )


def _or_i(kind, subs, k):
    x, z = _require_same_type(kind, subs, 0, 1)
    return (
        x.type()
        + _flag("o", x.z and z.z)
        + _flag("u", x.u and z.u)
        + _flag("d", x.d or z.d)
        + _flag("f", x.f and z.f)
        + _flag("e", x.e and z.f or x.f and z.e)
        + _flag("s", x.s and z.s)
        + _flag("m", x.m and z.m and (x.s or z.s))
    )


def _thresh(kind, subs, k):
    n = len(subs)
    if not 1 <= k <= n:
        raise MiniscriptTypeError(
            f"Threshold {k} out of range for {n} sub-fragments", _describe(kind, subs)
        )
    all_e, all_m, num_s, args = True, True, 0, 0
    for i in range(n):
        p = _require(kind, subs, i, "Wdu" if i > 0 else "Bdu")
        all_e = all_e and p.e
        all_m = all_m and p.m
        num_s += int(p.s)
        args += 0 if p.z else 1 if p.o else 2
    return (
        "Bdu"
        + _flag("z", args == 0)
        + _flag("o", args == 1)
        + _flag("e", all_e and num_s == n)
        + _flag("s", num_s >= n - k + 1)
        + _flag("m", all_e and all_m and num_s >= n - k)
    )


def _wrap_a(kind, subs, k):
    x = _require(kind, subs, 0, "B")
    return "W" + "".join(c for c in "udfesm" if getattr(x, c))


def _wrap_s(kind, subs, k):
    x = _require(kind, subs, 0, "Bo")
    return "W" + "".join(c for c in "udfesm" if getattr(x, c))


def _wrap_c(kind, subs, k):
    x = _require(kind, subs, 0, "K")
    return "Bus" + "".join(c for c in "ondfem" if getattr(x, c))


def _wrap_d(kind, subs, k):
    x = _require(kind, subs, 0, "Vz")
    return "Bond" + _flag("e", x.f) + "".join(c for c in "sm" if getattr(x, c))


def _wrap_v(kind, subs, k):
    x = _require(kind, subs, 0, "B")
    return "Vf" + "".join(c for c in "zonsm" if getattr(x, c))


def _wrap_j(kind, subs, k):
    x = _require(kind, subs, 0, "Bn")
    return "Bnd" + _flag("e", x.f) + "".join(c for c in "ousm" if getattr(x, c))


def _wrap_n(kind, subs, k):
    x = _require(kind, subs, 0, "B")
    return "Bu" + "".join(c for c in "zondfesm" if getattr(x, c))


RULES = {
    Fragment.JUST_0: _terminal,
    Fragment.JUST_1: _terminal,
    Fragment.PK_K: _terminal,
    Fragment.PK_H: _terminal,
    Fragment.OLDER: _terminal,
    Fragment.AFTER: _terminal,
    Fragment.SHA256: _terminal,
    Fragment.HASH256: _terminal,
    Fragment.RIPEMD160: _terminal,
    Fragment.HASH160: _terminal,
    Fragment.MULTI: _terminal,
    Fragment.AND_V: _and_v,
    Fragment.AND_B: _and_b,
    Fragment.AND_OR: _and_or,
    Fragment.OR_B: _or_b,
    Fragment.OR_C: _or_c,
    Fragment.OR_D: _or_d,
    Fragment.OR_I: _or_i,
    Fragment.THRESH: _thresh,
    Fragment.WRAP_A: _wrap_a,
    Fragment.WRAP_S: _wrap_s,
    Fragment.WRAP_C: _wrap_c,
    Fragment.WRAP_D: _wrap_d,
    Fragment.WRAP_V: _wrap_v,
    Fragment.WRAP_J: _wrap_j,
    Fragment.WRAP_N: _wrap_n,
}
ARITY = {
    Fragment.AND_V: 2,
    Fragment.AND_B: 2,
    Fragment.AND_OR: 3,
    Fragment.OR_B: 2,
    Fragment.OR_C: 2,
    Fragment.OR_D: 2,
    Fragment.OR_I: 2,
}
assert set(RULES) == set(Fragment), "A fragment kind has no type rule"


def derive_type(kind, subs=(), k=None):
    """Derive the type and properties of a fragment of the given {kind} from its
    {subs}-fragments (and threshold {k} for thresh).

    :raises MiniscriptTypeError: if the sub-fragments can't be composed this way.
    """
    rule = RULES.get(kind)
    if rule is None:
        raise MiniscriptTypeError(f"No type rule for fragment '{kind}'")

    if kind in TERMINALS:
        expected = 0
    elif kind == Fragment.THRESH:
        expected = len(subs) if subs else 1
    else:
        expected = ARITY.get(kind, 1)
    if len(subs) != expected:
        raise MiniscriptTypeError(
            f"{kind} takes {expected} sub-fragment(s), got {len(subs)}",
            _describe(kind, subs),
        )

    p = Property(rule(kind, subs, k))
    try:
        p.check_valid()
    except MiniscriptPropertyError as e:
        raise MiniscriptTypeError(e.message, _describe(kind, subs)) from e
    return p
