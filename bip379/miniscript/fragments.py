"""
Miniscript AST elements.

Each element correspond to a Bitcoin Script fragment, and has various type properties.
See the Miniscript website for the specification of the type system: https://bitcoin.sipa.be/miniscript/.
"""

import itertools
import logging

from ..key import MiniscriptKey
from ..utils.hashes import hash160, hash256, ripemd160, sha256
from ..utils.script import (
    CScript,
    CScriptOp,
    OP_0,
    OP_1,
    OP_16,
    OP_ADD,
    OP_BOOLAND,
    OP_BOOLOR,
    OP_CHECKLOCKTIMEVERIFY,
    OP_CHECKMULTISIG,
    OP_CHECKMULTISIGVERIFY,
    OP_CHECKSEQUENCEVERIFY,
    OP_CHECKSIG,
    OP_CHECKSIGVERIFY,
    OP_DUP,
    OP_ELSE,
    OP_ENDIF,
    OP_EQUAL,
    OP_EQUALVERIFY,
    OP_FROMALTSTACK,
    OP_HASH160,
    OP_HASH256,
    OP_IF,
    OP_IFDUP,
    OP_NOTIF,
    OP_NUMEQUAL,
    OP_NUMEQUALVERIFY,
    OP_RIPEMD160,
    OP_SHA256,
    OP_SIZE,
    OP_SWAP,
    OP_TOALTSTACK,
    OP_VERIFY,
    OP_0NOTEQUAL,
)

from .errors import MiniscriptNodeCreationError
from .satisfaction import LOCKTIME_THRESHOLD, SEQUENCE_LOCKTIME_TYPE_FLAG, Satisfaction
from .typing_rules import Fragment, derive_type


logger = logging.getLogger(__name__)

# Standardness limits for a P2WSH witness script.
MAX_STANDARD_P2WSH_SCRIPT_SIZE = 3600
MAX_OPS_PER_SCRIPT = 201
# Consensus limit on the number of keys of a CHECKMULTISIG.
MAX_PUBKEYS_PER_MULTISIG = 20

# The opcode a 'v:' wrapper merges into, if the wrapped fragment ends with it.
VERIFY_OPCODES = {
    OP_CHECKSIG: OP_CHECKSIGVERIFY,
    OP_CHECKMULTISIG: OP_CHECKMULTISIGVERIFY,
    OP_EQUAL: OP_EQUALVERIFY,
    OP_NUMEQUAL: OP_NUMEQUALVERIFY,
}

TIMELOCK_ATTRS = ("abs_heightlocks", "rel_heightlocks", "abs_timelocks", "rel_timelocks")


def timelocks_conflict(node_a, node_b):
    """Whether satisfying both nodes would require a height and a time lock of the
    same kind, which a transaction can't have."""
    return (
        node_a.abs_heightlocks
        and node_b.abs_timelocks
        or node_a.abs_timelocks
        and node_b.abs_heightlocks
        or node_a.rel_heightlocks
        and node_b.rel_timelocks
        or node_a.rel_timelocks
        and node_b.rel_heightlocks
    )


class Node:
    """A Miniscript fragment."""

    # The kind of fragment, which determines the rule used to derive its type.
    kind = None
    # The fragment's type and properties
    p = None
    # List of all sub fragments
    subs = []
    # Whether this node or any of its subs contains an absolute heightlock
    abs_heightlocks = False
    # Whether this node or any of its subs contains a relative heightlock
    rel_heightlocks = False
    # Whether this node or any of its subs contains an absolute timelock
    abs_timelocks = False
    # Whether this node or any of its subs contains a relative timelock
    rel_timelocks = False
    # Whether this node does not contain a mix of timelock or heightlock of different types.
    # That is, not (abs_heightlocks and rel_heightlocks or abs_timelocks and abs_timelocks)
    no_timelock_mix = True
    # The encoded Script, computed on first access.
    _cscript = None

    def __init__(self, *args, **kwargs):
        # Needs to be implemented by derived classes.
        raise NotImplementedError

    def _set_subs(self, subs, k=None, conjunctive=None):
        """Set the sub-fragments of this node, derive its type from theirs and
        aggregate their timelocks.

        :param conjunctive: the subs which must all be satisfied together.
        """
        for sub in subs:
            if not isinstance(sub, Node):
                raise MiniscriptNodeCreationError(f"Invalid sub-fragment: '{sub}'")
        self.subs = list(subs)
        self.p = derive_type(self.kind, self.subs, k)

        for attr in TIMELOCK_ATTRS:
            setattr(self, attr, any(getattr(sub, attr) for sub in self.subs))
        self.no_timelock_mix = all(sub.no_timelock_mix for sub in self.subs) and not any(
            timelocks_conflict(a, b)
            for a, b in itertools.combinations(conjunctive or [], 2)
        )

    @staticmethod
    def from_str(ms_str):
        """Parse a Miniscript fragment from its string representation."""
        from .parsing import miniscript_from_str

        assert isinstance(ms_str, str)
        return miniscript_from_str(ms_str)

    @staticmethod
    def from_script(script, pkh_keys=None):
        """Decode a Miniscript fragment from its Script representation.

        :param pkh_keys: an optional mapping from hash160 to the key it commits to, used
                         to decode 'pk_h' fragments into their key instead of their hash.
        """
        from .decoding import miniscript_from_script

        assert isinstance(script, (bytes, bytearray))
        return miniscript_from_script(CScript(script), pkh_keys)

    @property
    def _script(self):
        """The list of Script elements of this fragment."""
        # Needs to be implemented by derived classes.
        raise NotImplementedError

    @property
    def script(self):
        if self._cscript is None:
            self._cscript = CScript(self._script)
        return self._cscript

    def __eq__(self, other):
        # Equal Scripts, not equal trees: 'and_v(X,1)' == 't:X', and and_v() nestings
        # that differ only in associativity encode the same.
        return isinstance(other, Node) and self.script == other.script

    def __hash__(self):
        return hash(bytes(self.script))

    @property
    def keys(self):
        """Get the list of all keys from this Miniscript, in order of apparition."""
        # Overriden by fragments that actually have keys.
        return [key for sub in self.subs for key in sub.keys]

    def nodes(self):
        """Iterate over this fragment and all its sub-fragments, depth first."""
        yield self
        for sub in self.subs:
            yield from sub.nodes()

    @property
    def ops_count(self):
        """The number of non-push opcodes in the Script, counting the keys of a
        CHECKMULTISIG as the interpreter does."""
        ops = sum(
            1 for op, data, _ in self.script.raw_iter() if data is None and op > OP_16
        )
        return ops + sum(len(node.keys) for node in self.nodes() if isinstance(node, Multi))

    def is_sane(self):
        """Whether this is a top-level fragment that can safely be used on its own: it
        needs a signature, can't be malleated, is satisfiable at all and fits within the
        P2WSH resource limits."""
        keys = [key.bytes() for key in self.keys]
        return (
            self.p.has_all("Bsm")
            and self.no_timelock_mix
            and len(keys) == len(set(keys))
            and len(self.script) <= MAX_STANDARD_P2WSH_SCRIPT_SIZE
            and self.ops_count <= MAX_OPS_PER_SCRIPT
        )

    def satisfy(self, sat_material, malleable=False):
        """Get the witness of the smallest non-malleable satisfaction for this fragment,
        if one exists.

        :param sat_material: a Satisfier (for instance a SatisfactionMaterial) providing
                             the data available to satisfy challenges.
        :param malleable: if True, get the smallest satisfaction even if a third party
                          could turn it into another valid witness.
        :returns: the witness as a list of stack elements, or None if we can't satisfy it.
        """
        sat = self.satisfaction(sat_material, malleable)
        if not sat.is_available():
            logger.debug(
                "Could not satisfy '%s': %s",
                self,
                "impossible" if sat.is_impossible else "malleable",
            )
            return None
        return sat.witness

    def satisfaction(self, sat_material, malleable=False):
        """Get the satisfaction for this fragment.

        :param sat_material: a Satisfier providing the data available to satisfy
                             challenges.
        :param malleable: whether to allow malleable choices.
        """
        # Needs to be implemented by derived classes.
        raise NotImplementedError

    def dissatisfaction(self, sat_material=None, malleable=False):
        """Get the dissatisfaction for this fragment."""
        # Needs to be implemented by derived classes.
        raise NotImplementedError

    def lift(self):
        """Get the abstract policy this fragment encodes."""
        # Needs to be implemented by derived classes.
        raise NotImplementedError


class Just0(Node):
    kind = Fragment.JUST_0

    def __init__(self):
        self._set_subs([])

    @property
    def _script(self):
        return [OP_0]

    def satisfaction(self, sat_material, malleable=False):
        return Satisfaction.impossible()

    def dissatisfaction(self, sat_material=None, malleable=False):
        return Satisfaction(witness=[])

    def lift(self):
        from ..policy import Unsatisfiable

        return Unsatisfiable()

    def __repr__(self):
        return "0"


class Just1(Node):
    kind = Fragment.JUST_1

    def __init__(self):
        self._set_subs([])

    @property
    def _script(self):
        return [OP_1]

    def satisfaction(self, sat_material, malleable=False):
        return Satisfaction(witness=[])

    def dissatisfaction(self, sat_material=None, malleable=False):
        return Satisfaction.impossible()

    def lift(self):
        from ..policy import Trivial

        return Trivial()

    def __repr__(self):
        return "1"


class PkNode(Node):
    """A virtual class for nodes containing a single public key.

    Should not be instanced directly, use Pk() or Pkh().
    """

    def __init__(self, pubkey):
        self.pubkey = MiniscriptKey(pubkey)
        self._set_subs([])

    @property
    def keys(self):
        return [self.pubkey]

    def lift(self):
        from ..policy import Key

        return Key(self.pubkey)


class Pk(PkNode):
    kind = Fragment.PK_K

    @property
    def _script(self):
        return [self.pubkey.bytes()]

    def satisfaction(self, sat_material, malleable=False):
        sig = sat_material.lookup_sig(self.pubkey)
        if sig is None:
            return Satisfaction.impossible()
        return Satisfaction([sig], has_sig=True)

    def dissatisfaction(self, sat_material=None, malleable=False):
        return Satisfaction(witness=[b""])

    def __repr__(self):
        return f"pk_k({self.pubkey})"


class Pkh(PkNode):
    """A pk_h() fragment. May be created from the key or only from its hash, in which
    case the key must be provided by the satisfier."""

    kind = Fragment.PK_H

    def __init__(self, pubkey):
        if isinstance(pubkey, bytes) and len(pubkey) == 20:
            self.pubkey = None
            self.keyhash = pubkey
            self._set_subs([])
        else:
            PkNode.__init__(self, pubkey)
            self.keyhash = self.pubkey.hash160()

    @property
    def keys(self):
        return [] if self.pubkey is None else [self.pubkey]

    @property
    def _script(self):
        return [OP_DUP, OP_HASH160, self.keyhash, OP_EQUALVERIFY]

    def _get_key(self, sat_material):
        if self.pubkey is not None:
            return self.pubkey
        if sat_material is None:
            return None
        key = sat_material.lookup_pkh_key(self.keyhash)
        if key is None or key.hash160() != self.keyhash:
            return None
        return key

    def satisfaction(self, sat_material, malleable=False):
        key = self._get_key(sat_material)
        if key is None:
            return Satisfaction.impossible()
        sig = sat_material.lookup_sig(key)
        if sig is None:
            return Satisfaction.impossible()
        return Satisfaction(witness=[sig, key.bytes()], has_sig=True)

    def dissatisfaction(self, sat_material=None, malleable=False):
        key = self._get_key(sat_material)
        if key is None:
            return Satisfaction.impossible()
        return Satisfaction(witness=[b"", key.bytes()])

    def lift(self):
        if self.pubkey is None:
            raise MiniscriptNodeCreationError(
                f"Can't lift pk_h({self.keyhash.hex()}) without knowing its key"
            )
        return PkNode.lift(self)

    def key_str(self):
        """The key, or its hash if we don't know it."""
        return self.keyhash.hex() if self.pubkey is None else str(self.pubkey)

    def __repr__(self):
        return f"pk_h({self.key_str()})"


class TimelockNode(Node):
    """A virtual class for 'older()' and 'after()'."""

    name = None

    def __init__(self, value):
        if not isinstance(value, int) or not 0 < value < 2 ** 31:
            raise MiniscriptNodeCreationError(f"Invalid {self.name} value: '{value}'")
        self.value = value
        self._set_subs([])

    def satisfaction(self, sat_material, malleable=False):
        if self.is_met(sat_material):
            return Satisfaction(witness=[])
        return Satisfaction.impossible()

    def dissatisfaction(self, sat_material=None, malleable=False):
        return Satisfaction.impossible()

    def __repr__(self):
        return f"{self.name}({self.value})"


class Older(TimelockNode):
    kind = Fragment.OLDER
    name = "older"

    def __init__(self, value):
        TimelockNode.__init__(self, value)
        self.rel_timelocks = bool(value & SEQUENCE_LOCKTIME_TYPE_FLAG)
        self.rel_heightlocks = not self.rel_timelocks

    @property
    def _script(self):
        return [self.value, OP_CHECKSEQUENCEVERIFY]

    def is_met(self, sat_material):
        return sat_material.check_older(self.value)

    def lift(self):
        from ..policy import Older as OlderPolicy

        return OlderPolicy(self.value)


class After(TimelockNode):
    kind = Fragment.AFTER
    name = "after"

    def __init__(self, value):
        TimelockNode.__init__(self, value)
        self.abs_heightlocks = value < LOCKTIME_THRESHOLD
        self.abs_timelocks = not self.abs_heightlocks

    @property
    def _script(self):
        return [self.value, OP_CHECKLOCKTIMEVERIFY]

    def is_met(self, sat_material):
        return sat_material.check_after(self.value)

    def lift(self):
        from ..policy import After as AfterPolicy

        return AfterPolicy(self.value)


class HashNode(Node):
    """A virtual class for fragments with hashlock semantics.

    Should not be instanced directly, use concrete fragments instead.
    """

    name = None
    digest_size = 32
    hash_op = None

    def __init__(self, digest):
        if not isinstance(digest, bytes) or len(digest) != self.digest_size:
            raise MiniscriptNodeCreationError(
                f"{self.name}() takes a {self.digest_size} bytes digest"
            )
        self.digest = digest
        self._set_subs([])

    @staticmethod
    def hash_fn(data):
        raise NotImplementedError

    @property
    def _script(self):
        return [OP_SIZE, 32, OP_EQUALVERIFY, self.hash_op, self.digest, OP_EQUAL]

    def satisfaction(self, sat_material, malleable=False):
        preimage = sat_material.lookup_preimage(self.name, self.digest)
        if (
            preimage is None
            or len(preimage) != 32
            or self.hash_fn(preimage) != self.digest
        ):
            return Satisfaction.impossible()
        return Satisfaction(witness=[preimage])

    def dissatisfaction(self, sat_material=None, malleable=False):
        return Satisfaction(witness=[b"\x00" * 32])

    def lift(self):
        from .. import policy

        return getattr(policy, type(self).__name__)(self.digest)

    def __repr__(self):
        return f"{self.name}({self.digest.hex()})"


class Sha256(HashNode):
    kind = Fragment.SHA256
    name = "sha256"
    hash_op = OP_SHA256
    hash_fn = staticmethod(sha256)


class Hash256(HashNode):
    kind = Fragment.HASH256
    name = "hash256"
    hash_op = OP_HASH256
    hash_fn = staticmethod(hash256)


class Ripemd160(HashNode):
    kind = Fragment.RIPEMD160
    name = "ripemd160"
    digest_size = 20
    hash_op = OP_RIPEMD160
    hash_fn = staticmethod(ripemd160)


class Hash160(HashNode):
    kind = Fragment.HASH160
    name = "hash160"
    digest_size = 20
    hash_op = OP_HASH160
    hash_fn = staticmethod(hash160)


class Multi(Node):
    kind = Fragment.MULTI

    def __init__(self, k, keys):
        if not isinstance(k, int) or not 1 <= k <= len(keys) <= MAX_PUBKEYS_PER_MULTISIG:
            raise MiniscriptNodeCreationError(
                f"Invalid multi() threshold {k} for {len(keys)} keys"
            )
        self.k = k
        self.pubkeys = [MiniscriptKey(key) for key in keys]
        self._set_subs([])

    @property
    def keys(self):
        return self.pubkeys

    @property
    def _script(self):
        return [self.k, *[key.bytes() for key in self.pubkeys], len(self.pubkeys), OP_CHECKMULTISIG]

    def satisfaction(self, sat_material, malleable=False):
        # Signatures must be in the same order as the keys.
        sigs = []
        for key in self.pubkeys:
            sig = sat_material.lookup_sig(key)
            if sig is not None:
                sigs.append(sig)
            if len(sigs) == self.k:
                break
        if len(sigs) < self.k:
            return Satisfaction.impossible()
        # One more element is consumed by CHECKMULTISIG.
        return Satisfaction(witness=[b""] + sigs, has_sig=True)

    def dissatisfaction(self, sat_material=None, malleable=False):
        return Satisfaction(witness=[b""] * (self.k + 1))

    def lift(self):
        from ..policy import Key, Thresh as ThreshPolicy

        return ThreshPolicy(self.k, [Key(key) for key in self.pubkeys])

    def __repr__(self):
        return f"multi({self.k},{','.join(map(str, self.pubkeys))})"


class AndV(Node):
    kind = Fragment.AND_V

    def __init__(self, sub_x, sub_y):
        self._set_subs([sub_x, sub_y], conjunctive=[sub_x, sub_y])

    @property
    def _script(self):
        return self.subs[0]._script + self.subs[1]._script

    def satisfaction(self, sat_material, malleable=False):
        return self.subs[1].satisfaction(sat_material, malleable) + self.subs[
            0
        ].satisfaction(sat_material, malleable)

    def dissatisfaction(self, sat_material=None, malleable=False):
        return Satisfaction.impossible()  # it's V.

    def lift(self):
        from ..policy import And

        return And([sub.lift() for sub in self.subs])

    def __repr__(self):
        return f"and_v({','.join(map(str, self.subs))})"


class AndB(Node):
    kind = Fragment.AND_B

    def __init__(self, sub_x, sub_y):
        self._set_subs([sub_x, sub_y], conjunctive=[sub_x, sub_y])

    @property
    def _script(self):
        return self.subs[0]._script + self.subs[1]._script + [OP_BOOLAND]

    def satisfaction(self, sat_material, malleable=False):
        return self.subs[1].satisfaction(sat_material, malleable) + self.subs[
            0
        ].satisfaction(sat_material, malleable)

    def dissatisfaction(self, sat_material=None, malleable=False):
        return self.subs[1].dissatisfaction(sat_material, malleable) + self.subs[
            0
        ].dissatisfaction(sat_material, malleable)

    def lift(self):
        from ..policy import And

        return And([sub.lift() for sub in self.subs])

    def __repr__(self):
        return f"and_b({','.join(map(str, self.subs))})"


class AndOr(Node):
    kind = Fragment.AND_OR

    def __init__(self, sub_x, sub_y, sub_z):
        self._set_subs([sub_x, sub_y, sub_z], conjunctive=[sub_x, sub_y])

    @property
    def _script(self):
        return (
            self.subs[0]._script
            + [OP_NOTIF]
            + self.subs[2]._script
            + [OP_ELSE]
            + self.subs[1]._script
            + [OP_ENDIF]
        )

    def satisfaction(self, sat_material, malleable=False):
        sub_x, sub_y, sub_z = self.subs
        return Satisfaction.choose(
            sub_y.satisfaction(sat_material, malleable)
            + sub_x.satisfaction(sat_material, malleable),
            sub_z.satisfaction(sat_material, malleable)
            + sub_x.dissatisfaction(sat_material, malleable),
            malleable,
        )

    def dissatisfaction(self, sat_material=None, malleable=False):
        return self.subs[2].dissatisfaction(sat_material, malleable) + self.subs[
            0
        ].dissatisfaction(sat_material, malleable)

    def lift(self):
        from ..policy import And, Or

        sub_x, sub_y, sub_z = (sub.lift() for sub in self.subs)
        return Or([And([sub_x, sub_y]), sub_z])

    def __repr__(self):
        return f"andor({','.join(map(str, self.subs))})"


class AndN(AndOr):
    """and_n(X,Y) is an alias for andor(X,Y,0)."""

    def __init__(self, sub_x, sub_y):
        AndOr.__init__(self, sub_x, sub_y, Just0())

    def lift(self):
        from ..policy import And

        return And([self.subs[0].lift(), self.subs[1].lift()])

    def __repr__(self):
        return f"and_n({self.subs[0]},{self.subs[1]})"


class OrNode(Node):
    """A virtual class for the binary disjunctions."""

    def __init__(self, sub_x, sub_z):
        self._set_subs([sub_x, sub_z])

    def lift(self):
        from ..policy import Or

        return Or([sub.lift() for sub in self.subs])


class OrB(OrNode):
    kind = Fragment.OR_B

    @property
    def _script(self):
        return self.subs[0]._script + self.subs[1]._script + [OP_BOOLOR]

    def satisfaction(self, sat_material, malleable=False):
        sub_x, sub_z = self.subs
        return Satisfaction.choose(
            sub_z.dissatisfaction(sat_material, malleable)
            + sub_x.satisfaction(sat_material, malleable),
            sub_z.satisfaction(sat_material, malleable)
            + sub_x.dissatisfaction(sat_material, malleable),
            malleable,
        )

    def dissatisfaction(self, sat_material=None, malleable=False):
        return self.subs[1].dissatisfaction(sat_material, malleable) + self.subs[
            0
        ].dissatisfaction(sat_material, malleable)

    def __repr__(self):
        return f"or_b({','.join(map(str, self.subs))})"


class OrC(OrNode):
    kind = Fragment.OR_C

    @property
    def _script(self):
        return self.subs[0]._script + [OP_NOTIF] + self.subs[1]._script + [OP_ENDIF]

    def satisfaction(self, sat_material, malleable=False):
        sub_x, sub_z = self.subs
        return Satisfaction.choose(
            sub_x.satisfaction(sat_material, malleable),
            sub_z.satisfaction(sat_material, malleable)
            + sub_x.dissatisfaction(sat_material, malleable),
            malleable,
        )

    def dissatisfaction(self, sat_material=None, malleable=False):
        return Satisfaction.impossible()  # it's V.

    def __repr__(self):
        return f"or_c({','.join(map(str, self.subs))})"


class OrD(OrNode):
    kind = Fragment.OR_D

    @property
    def _script(self):
        return (
            self.subs[0]._script
            + [OP_IFDUP, OP_NOTIF]
            + self.subs[1]._script
            + [OP_ENDIF]
        )

    def satisfaction(self, sat_material, malleable=False):
        sub_x, sub_z = self.subs
        return Satisfaction.choose(
            sub_x.satisfaction(sat_material, malleable),
            sub_z.satisfaction(sat_material, malleable)
            + sub_x.dissatisfaction(sat_material, malleable),
            malleable,
        )

    def dissatisfaction(self, sat_material=None, malleable=False):
        return self.subs[1].dissatisfaction(sat_material, malleable) + self.subs[
            0
        ].dissatisfaction(sat_material, malleable)

    def __repr__(self):
        return f"or_d({','.join(map(str, self.subs))})"


class OrI(OrNode):
    kind = Fragment.OR_I

    @property
    def _script(self):
        return (
            [OP_IF]
            + self.subs[0]._script
            + [OP_ELSE]
            + self.subs[1]._script
            + [OP_ENDIF]
        )

    def satisfaction(self, sat_material, malleable=False):
        return Satisfaction.choose(
            self.subs[0].satisfaction(sat_material, malleable)
            + Satisfaction(witness=[b"\x01"]),
            self.subs[1].satisfaction(sat_material, malleable)
            + Satisfaction(witness=[b""]),
            malleable,
        )

    def dissatisfaction(self, sat_material=None, malleable=False):
        return Satisfaction.choose(
            self.subs[0].dissatisfaction(sat_material, malleable)
            + Satisfaction(witness=[b"\x01"]),
            self.subs[1].dissatisfaction(sat_material, malleable)
            + Satisfaction(witness=[b""]),
            malleable,
        )

    def __repr__(self):
        return f"or_i({','.join(map(str, self.subs))})"


class Thresh(Node):
    kind = Fragment.THRESH

    def __init__(self, k, subs):
        self.k = k
        # With a threshold of 1 only a single sub is ever satisfied.
        self._set_subs(subs, k=k, conjunctive=subs if k > 1 else None)

    @property
    def _script(self):
        return (
            self.subs[0]._script
            + sum(((sub._script + [OP_ADD]) for sub in self.subs[1:]), start=[])
            + [self.k, OP_EQUAL]
        )

    def satisfaction(self, sat_material, malleable=False):
        return Satisfaction.from_thresh(
            self.k,
            [sub.satisfaction(sat_material, malleable) for sub in self.subs],
            [sub.dissatisfaction(sat_material, malleable) for sub in self.subs],
            malleable,
        )

    def dissatisfaction(self, sat_material=None, malleable=False):
        return sum(
            [sub.dissatisfaction(sat_material, malleable) for sub in reversed(self.subs)],
            start=Satisfaction(witness=[]),
        )

    def lift(self):
        from ..policy import Thresh as ThreshPolicy

        return ThreshPolicy(self.k, [sub.lift() for sub in self.subs])

    def __repr__(self):
        return f"thresh({self.k},{','.join(map(str, self.subs))})"


class WrapperNode(Node):
    """A virtual class for wrappers.

    Don't instanciate it directly, use concret wrapper fragments instead.
    """

    letter = None

    def __init__(self, sub):
        self._set_subs([sub])

    @property
    def sub(self):
        return self.subs[0]

    @property
    def is_alias(self):
        """Whether this wrapper is not printed as a wrapper (eg 'pk()')."""
        return False

    def satisfaction(self, sat_material, malleable=False):
        return self.sub.satisfaction(sat_material, malleable)

    def dissatisfaction(self, sat_material=None, malleable=False):
        return self.sub.dissatisfaction(sat_material, malleable)

    def lift(self):
        return self.sub.lift()

    def __repr__(self):
        # Avoid duplicating colons
        if isinstance(self.sub, WrapperNode) and not self.sub.is_alias:
            return f"{self.letter}{self.sub}"
        return f"{self.letter}:{self.sub}"


class WrapA(WrapperNode):
    kind = Fragment.WRAP_A
    letter = "a"

    @property
    def _script(self):
        return [OP_TOALTSTACK] + self.sub._script + [OP_FROMALTSTACK]


class WrapS(WrapperNode):
    kind = Fragment.WRAP_S
    letter = "s"

    @property
    def _script(self):
        return [OP_SWAP] + self.sub._script


class WrapC(WrapperNode):
    kind = Fragment.WRAP_C
    letter = "c"

    @property
    def _script(self):
        return self.sub._script + [OP_CHECKSIG]

    @property
    def is_alias(self):
        return isinstance(self.sub, (Pk, Pkh))

    def __repr__(self):
        # Special case of aliases
        if isinstance(self.sub, Pk):
            return f"pk({self.sub.pubkey})"
        if isinstance(self.sub, Pkh):
            return f"pkh({self.sub.key_str()})"
        return WrapperNode.__repr__(self)


class WrapD(WrapperNode):
    kind = Fragment.WRAP_D
    letter = "d"

    @property
    def _script(self):
        return [OP_DUP, OP_IF] + self.sub._script + [OP_ENDIF]

    def satisfaction(self, sat_material, malleable=False):
        return self.sub.satisfaction(sat_material, malleable) + Satisfaction(
            witness=[b"\x01"]
        )

    def dissatisfaction(self, sat_material=None, malleable=False):
        return Satisfaction(witness=[b""])


class WrapV(WrapperNode):
    kind = Fragment.WRAP_V
    letter = "v"

    @property
    def _script(self):
        script = self.sub._script
        last = script[-1]
        if isinstance(last, CScriptOp) and last in VERIFY_OPCODES:
            return script[:-1] + [VERIFY_OPCODES[last]]
        return script + [OP_VERIFY]

    def dissatisfaction(self, sat_material=None, malleable=False):
        return Satisfaction.impossible()  # It's V.


class WrapJ(WrapperNode):
    kind = Fragment.WRAP_J
    letter = "j"

    @property
    def _script(self):
        return [OP_SIZE, OP_0NOTEQUAL, OP_IF, *self.sub._script, OP_ENDIF]

    def dissatisfaction(self, sat_material=None, malleable=False):
        return Satisfaction(witness=[b""])


class WrapN(WrapperNode):
    kind = Fragment.WRAP_N
    letter = "n"

    @property
    def _script(self):
        return self.sub._script + [OP_0NOTEQUAL]


class WrapT(AndV, WrapperNode):
    """t:X is an alias for and_v(X,1)."""

    letter = "t"

    def __init__(self, sub):
        AndV.__init__(self, sub, Just1())

    def lift(self):
        return self.sub.lift()

    def __repr__(self):
        return WrapperNode.__repr__(self)


class WrapL(OrI, WrapperNode):
    """l:X is an alias for or_i(0,X)."""

    letter = "l"

    def __init__(self, sub):
        OrI.__init__(self, Just0(), sub)

    @property
    def sub(self):
        return self.subs[1]

    def lift(self):
        return self.sub.lift()

    def __repr__(self):
        return WrapperNode.__repr__(self)


class WrapU(OrI, WrapperNode):
    """u:X is an alias for or_i(X,0)."""

    letter = "u"

    def __init__(self, sub):
        OrI.__init__(self, sub, Just0())

    def lift(self):
        return self.sub.lift()

    def __repr__(self):
        return WrapperNode.__repr__(self)
