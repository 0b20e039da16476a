"""
Utilities to decode Miniscript from its Script representation.

The Script is first split into a list of elements, in which terminal fragments are
recognized. Non-terminal fragments are then reduced from the right-most match until
a single node remains.
"""

import logging

from ..key import MiniscriptKeyError
from ..utils.script import (
    CScriptInvalidError,
    CScriptOp,
    OP_0NOTEQUAL,
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
    ScriptNumError,
    is_minimal_push,
    read_script_number,
)

from .errors import MiniscriptMalformed, MiniscriptNodeCreationError, MiniscriptTypeError
from .fragments import (
    AndB,
    AndN,
    AndOr,
    AndV,
    After,
    Hash160,
    Hash256,
    Just0,
    Just1,
    Multi,
    Node,
    Older,
    OrB,
    OrC,
    OrD,
    OrI,
    Pk,
    Pkh,
    Ripemd160,
    Sha256,
    Thresh,
    WrapA,
    WrapC,
    WrapD,
    WrapJ,
    WrapL,
    WrapN,
    WrapS,
    WrapT,
    WrapU,
    WrapV,
)


logger = logging.getLogger(__name__)

# The non-push opcodes a Miniscript may contain.
MINISCRIPT_OPCODES = {
    OP_0NOTEQUAL,
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
}

# The -VERIFY opcodes, and the pair of opcodes they stand for.
VERIFY_OPCODES = {
    OP_CHECKSIGVERIFY: OP_CHECKSIG,
    OP_CHECKMULTISIGVERIFY: OP_CHECKMULTISIG,
    OP_EQUALVERIFY: OP_EQUAL,
    OP_NUMEQUALVERIFY: OP_NUMEQUAL,
}

HASH_FRAGMENTS = {
    OP_SHA256: Sha256,
    OP_HASH256: Hash256,
    OP_RIPEMD160: Ripemd160,
    OP_HASH160: Hash160,
}


def stack_item_to_int(item):
    """
    Convert a stack item to an integer depending on its type.
    May raise an exception if the item is bytes, otherwise return None if it
    cannot perform the conversion.
    """
    if isinstance(item, bytes):
        return read_script_number(item)

    if isinstance(item, Node):
        if isinstance(item, Just1):
            return 1
        if isinstance(item, Just0):
            return 0
        return None

    if isinstance(item, int) and not isinstance(item, CScriptOp):
        return item

    return None


def decompose_script(script):
    """Create a list of Script element from a CScript, decomposing the compact
    -VERIFY opcodes into the non-VERIFY OP and an OP_VERIFY.

    :raises MiniscriptMalformed: if the Script contains a non-Miniscript opcode, an
                                 invalid or non-minimal push, or an OP_VERIFY which
                                 should have been merged with the previous opcode.
    """
    elems = []
    prev_op = None
    try:
        for opcode, data, pos in script.raw_iter():
            if data is not None:
                if not is_minimal_push(opcode, data):
                    raise MiniscriptMalformed("Non-minimal push", pos)
                elems.append(data)
                prev_op = None
                continue

            if opcode.is_small_int():
                elems.append(opcode.decode_op_n())
            elif opcode in VERIFY_OPCODES:
                elems += [VERIFY_OPCODES[opcode], OP_VERIFY]
            elif opcode == OP_VERIFY and prev_op in VERIFY_OPCODES.values():
                raise MiniscriptMalformed(
                    f"OP_VERIFY after {prev_op} instead of {prev_op}VERIFY", pos
                )
            elif opcode in MINISCRIPT_OPCODES:
                elems.append(opcode)
            else:
                raise MiniscriptMalformed(f"Unexpected opcode {opcode}", pos)
            prev_op = opcode
    except CScriptInvalidError as e:
        raise MiniscriptMalformed(f"Invalid Script: {e}", len(script)) from e

    return elems


def parse_term_single_elem(expr_list, idx, pkh_keys):
    """
    Try to parse a terminal node from the element of {expr_list} at {idx}.
    """
    # Match against pk_k(key).
    if isinstance(expr_list[idx], bytes) and len(expr_list[idx]) == 33:
        try:
            expr_list[idx] = Pk(expr_list[idx])
        except MiniscriptKeyError as e:
            raise MiniscriptMalformed(f"Invalid public key: {e}") from e

    # Match against JUST_1 and JUST_0.
    if expr_list[idx] == 1:
        expr_list[idx] = Just1()
    if expr_list[idx] == b"":
        expr_list[idx] = Just0()


def parse_term_2_elems(expr_list, idx):
    """
    Try to parse a terminal node from two elements of {expr_list}, starting
    from {idx}.
    Return the new expression list on success, None if there was no match.
    """
    elem_a = expr_list[idx]
    elem_b = expr_list[idx + 1]

    # Only older() and after() as term with 2 stack items
    if elem_b not in (OP_CHECKSEQUENCEVERIFY, OP_CHECKLOCKTIMEVERIFY):
        return
    try:
        n = stack_item_to_int(elem_a)
    except ScriptNumError as e:
        raise MiniscriptMalformed(f"Invalid timelock: {e.message}") from e
    if n is None or n <= 0 or n >= 2 ** 31:
        raise MiniscriptMalformed(f"Invalid timelock value before {elem_b}")

    node = Older(n) if elem_b == OP_CHECKSEQUENCEVERIFY else After(n)
    expr_list[idx : idx + 2] = [node]
    return expr_list


def parse_term_5_elems(expr_list, idx, pkh_keys):
    """
    Try to parse a terminal node from five elements of {expr_list}, starting
    from {idx}.
    Return the new expression list on success, None if there was no match.
    """
    # The only 5 items node is pk_h
    if expr_list[idx : idx + 2] != [OP_DUP, OP_HASH160]:
        return
    if not isinstance(expr_list[idx + 2], bytes):
        return
    if len(expr_list[idx + 2]) != 20:
        return
    if expr_list[idx + 3 : idx + 5] != [OP_EQUAL, OP_VERIFY]:
        return

    key_hash = expr_list[idx + 2]
    # Without the key we can only keep its hash.
    node = Pkh(pkh_keys.get(key_hash, key_hash))
    if node.keyhash != key_hash:
        raise MiniscriptMalformed(f"Key provided for '{key_hash.hex()}' does not match")
    expr_list[idx : idx + 5] = [node]
    return expr_list


def parse_term_7_elems(expr_list, idx):
    """
    Try to parse a terminal node from seven elements of {expr_list}, starting
    from {idx}.
    Return the new expression list on success, None if there was no match.
    """
    # Note how all the hashes are 7 elems because the VERIFY was decomposed
    if expr_list[idx : idx + 4] != [OP_SIZE, b"\x20", OP_EQUAL, OP_VERIFY]:
        return
    fragment = HASH_FRAGMENTS.get(expr_list[idx + 4])
    if (
        fragment is None
        or not isinstance(expr_list[idx + 5], bytes)
        or len(expr_list[idx + 5]) != fragment.digest_size
        or expr_list[idx + 6] != OP_EQUAL
    ):
        return

    node = fragment(expr_list[idx + 5])
    expr_list[idx : idx + 7] = [node]
    return expr_list


def parse_multi(expr_list, idx):
    """
    Try to parse a multi() from at least four elements of {expr_list}, starting
    from {idx}. It's of the form <k> (<key>)* <n> CHECKMULTISIG.
    Return the new expression list on success, None if there was no match.
    """
    try:
        k = stack_item_to_int(expr_list[idx])
    except ScriptNumError:
        return
    if k is None:
        return

    # Get the keys
    keys = []
    i = idx + 1
    while i < len(expr_list) and isinstance(expr_list[i], Pk):
        keys.append(expr_list[i].pubkey)
        i += 1
    if i + 1 >= len(expr_list) or expr_list[i + 1] != OP_CHECKMULTISIG:
        return

    try:
        n = stack_item_to_int(expr_list[i])
    except ScriptNumError as e:
        raise MiniscriptMalformed(f"Invalid multi() key count: {e.message}") from e
    if n is None or n != len(keys):
        raise MiniscriptMalformed(f"multi() key count does not match its {len(keys)} keys")

    node = Multi(k, keys)
    expr_list[idx : i + 2] = [node]
    return expr_list


def parse_nonterm_2_elems(expr_list, idx):
    """
    Try to parse a non-terminal node from two elements of {expr_list}, starting
    from {idx}.
    Return the new expression list on success, None if there was no match.
    """
    elem_a = expr_list[idx]
    elem_b = expr_list[idx + 1]

    if isinstance(elem_a, Node):
        # Match against and_v.
        if isinstance(elem_b, Node) and elem_a.p.V and elem_b.p.has_any("BKV"):
            # Is it a special case of t: wrapper?
            if isinstance(elem_b, Just1):
                node = WrapT(elem_a)
            else:
                node = AndV(elem_a, elem_b)
            expr_list[idx : idx + 2] = [node]
            return expr_list

        # Match against c wrapper.
        if elem_b == OP_CHECKSIG and elem_a.p.K:
            node = WrapC(elem_a)
            expr_list[idx : idx + 2] = [node]
            return expr_list

        # Match against v wrapper.
        if elem_b == OP_VERIFY and elem_a.p.B:
            node = WrapV(elem_a)
            expr_list[idx : idx + 2] = [node]
            return expr_list

        # Match against n wrapper.
        if elem_b == OP_0NOTEQUAL and elem_a.p.B:
            node = WrapN(elem_a)
            expr_list[idx : idx + 2] = [node]
            return expr_list

    # Match against s wrapper.
    if isinstance(elem_b, Node) and elem_a == OP_SWAP and elem_b.p.has_all("Bo"):
        node = WrapS(elem_b)
        expr_list[idx : idx + 2] = [node]
        return expr_list


def parse_nonterm_3_elems(expr_list, idx):
    """
    Try to parse a non-terminal node from *at least* three elements of
    {expr_list}, starting from {idx}.
    Return the new expression list on success, None if there was no match.
    """
    elem_a = expr_list[idx]
    elem_b = expr_list[idx + 1]
    elem_c = expr_list[idx + 2]

    if isinstance(elem_a, Node) and isinstance(elem_b, Node):
        # Match against and_b.
        if elem_c == OP_BOOLAND and elem_a.p.B and elem_b.p.W:
            node = AndB(elem_a, elem_b)
            expr_list[idx : idx + 3] = [node]
            return expr_list

        # Match against or_b.
        if elem_c == OP_BOOLOR and elem_a.p.has_all("Bd") and elem_b.p.has_all("Wd"):
            node = OrB(elem_a, elem_b)
            expr_list[idx : idx + 3] = [node]
            return expr_list

    # Match against a wrapper.
    if (
        elem_a == OP_TOALTSTACK
        and isinstance(elem_b, Node)
        and elem_b.p.B
        and elem_c == OP_FROMALTSTACK
    ):
        node = WrapA(elem_b)
        expr_list[idx : idx + 3] = [node]
        return expr_list


def parse_nonterm_4_elems(expr_list, idx):
    """
    Try to parse a non-terminal node from at least four elements of {expr_list},
    starting from {idx}.
    Return the new expression list on success, None if there was no match.
    """
    (it_a, it_b, it_c, it_d) = expr_list[idx : idx + 4]

    # Match against thresh. It's of the form [X] ([X] ADD)* k EQUAL
    if isinstance(it_a, Node) and it_a.p.has_all("Bdu"):
        subs = [it_a]
        # The first matches, now do all the ([X] ADD)s and return
        # if a pair is of the form (k, EQUAL).
        for i in range(idx + 1, len(expr_list) - 1, 2):
            if (
                isinstance(expr_list[i], Node)
                and expr_list[i].p.has_all("Wdu")
                and expr_list[i + 1] == OP_ADD
            ):
                subs.append(expr_list[i])
                continue
            elif expr_list[i + 1] == OP_EQUAL:
                try:
                    k = stack_item_to_int(expr_list[i])
                except ScriptNumError:
                    break
                if k is not None and len(subs) >= k >= 1:
                    node = Thresh(k, subs)
                    expr_list[idx : i + 1 + 1] = [node]
                    return expr_list
            break

    # Match against or_c.
    if (
        isinstance(it_a, Node)
        and it_a.p.has_all("Bdu")
        and it_b == OP_NOTIF
        and isinstance(it_c, Node)
        and it_c.p.V
        and it_d == OP_ENDIF
    ):
        node = OrC(it_a, it_c)
        expr_list[idx : idx + 4] = [node]
        return expr_list

    # Match against d wrapper.
    if (
        [it_a, it_b] == [OP_DUP, OP_IF]
        and isinstance(it_c, Node)
        and it_c.p.has_all("Vz")
        and it_d == OP_ENDIF
    ):
        node = WrapD(it_c)
        expr_list[idx : idx + 4] = [node]
        return expr_list

    return parse_multi(expr_list, idx)


def parse_nonterm_5_elems(expr_list, idx):
    """
    Try to parse a non-terminal node from five elements of {expr_list}, starting
    from {idx}.
    Return the new expression list on success, None if there was no match.
    """
    (it_a, it_b, it_c, it_d, it_e) = expr_list[idx : idx + 5]

    # Match against or_d.
    if (
        isinstance(it_a, Node)
        and it_a.p.has_all("Bdu")
        and [it_b, it_c] == [OP_IFDUP, OP_NOTIF]
        and isinstance(it_d, Node)
        and it_d.p.B
        and it_e == OP_ENDIF
    ):
        node = OrD(it_a, it_d)
        expr_list[idx : idx + 5] = [node]
        return expr_list

    # Match against or_i.
    if (
        it_a == OP_IF
        and isinstance(it_b, Node)
        and it_b.p.has_any("BKV")
        and it_c == OP_ELSE
        and isinstance(it_d, Node)
        and it_d.p.has_any("BKV")
        and it_e == OP_ENDIF
    ):
        if isinstance(it_b, Just0):
            node = WrapL(it_d)
        elif isinstance(it_d, Just0):
            node = WrapU(it_b)
        else:
            node = OrI(it_b, it_d)
        expr_list[idx : idx + 5] = [node]
        return expr_list

    # Match against j wrapper.
    if (
        [it_a, it_b, it_c] == [OP_SIZE, OP_0NOTEQUAL, OP_IF]
        and isinstance(it_d, Node)
        and it_d.p.has_all("Bn")
        and it_e == OP_ENDIF
    ):
        node = WrapJ(it_d)
        expr_list[idx : idx + 5] = [node]
        return expr_list


def parse_nonterm_6_elems(expr_list, idx):
    """
    Try to parse a non-terminal node from six elements of {expr_list}, starting
    from {idx}.
    Return the new expression list on success, None if there was no match.
    """
    (it_a, it_b, it_c, it_d, it_e, it_f) = expr_list[idx : idx + 6]

    # Match against andor.
    if (
        isinstance(it_a, Node)
        and it_a.p.has_all("Bdu")
        and it_b == OP_NOTIF
        and isinstance(it_c, Node)
        and it_c.p.has_any("BKV")
        and it_d == OP_ELSE
        and isinstance(it_e, Node)
        and it_e.p.has_any("BKV")
        and it_f == OP_ENDIF
    ):
        if isinstance(it_c, Just0):
            node = AndN(it_a, it_e)
        else:
            node = AndOr(it_a, it_e, it_c)
        expr_list[idx : idx + 6] = [node]
        return expr_list


NONTERM_PARSERS = [
    (2, parse_nonterm_2_elems),
    (3, parse_nonterm_3_elems),
    (4, parse_nonterm_4_elems),
    (5, parse_nonterm_5_elems),
    (6, parse_nonterm_6_elems),
]


def reduce_once(expr_list):
    """Reduce the right-most non-terminal fragment we can match in {expr_list}.
    Return the new expression list, or None if nothing matched."""
    idx = len(expr_list) - 1
    while idx >= 0:
        for size, parser in NONTERM_PARSERS:
            if len(expr_list) - idx >= size:
                new_expr_list = parser(expr_list, idx)
                if new_expr_list is not None:
                    return new_expr_list
        # Right-to-left parsing.
        # Step one position left.
        idx -= 1


def parse_expr_list(expr_list):
    """Parse a node from a list of Script elements."""
    # Every iteration must progress the AST construction, until it is
    # complete (single root node remains).
    while not (len(expr_list) == 1 and isinstance(expr_list[0], Node)):
        expr_list = reduce_once(expr_list)
        if expr_list is None:
            raise MiniscriptMalformed("Script is not a valid Miniscript")
    return expr_list[0]


def miniscript_from_script(script, pkh_keys=None):
    """Construct miniscript node from script.

    :param script: The Bitcoin Script to decode.
    :param pkh_keys: A mapping from keyhash to key to decode pk_h() fragments.

    :raises MiniscriptMalformed: if the Script is not the canonical encoding of a
                                 well-typed Miniscript.
    """
    pkh_keys = pkh_keys or {}
    expr_list = decompose_script(script)
    if not expr_list:
        raise MiniscriptMalformed("Empty Script", 0)

    try:
        # We first parse terminal expressions.
        idx = 0
        while idx < len(expr_list):
            parse_term_single_elem(expr_list, idx, pkh_keys)

            if len(expr_list) - idx >= 2:
                parse_term_2_elems(expr_list, idx)

            if len(expr_list) - idx >= 5:
                parse_term_5_elems(expr_list, idx, pkh_keys)

            if len(expr_list) - idx >= 7:
                parse_term_7_elems(expr_list, idx)

            idx += 1

        # And then parse non-terminal ones.
        node = parse_expr_list(expr_list)
    except (MiniscriptTypeError, MiniscriptNodeCreationError) as e:
        logger.debug("Rejecting Script '%s': %s", script.hex(), e)
        raise MiniscriptMalformed(f"Invalid fragment: {e}") from e

    # Only the canonical encoding of a Miniscript is accepted.
    if node.script != script:
        logger.debug("Rejecting non-canonical Script '%s'", script.hex())
        raise MiniscriptMalformed("Script is not the canonical encoding of a Miniscript")

    return node
