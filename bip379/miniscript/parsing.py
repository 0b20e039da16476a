"""
Utilities to parse Miniscript from its string representation.

Positions in errors are offsets in the parsed string.
"""

from ..key import MiniscriptKey, MiniscriptKeyError

from .errors import MiniscriptMalformed
from .fragments import (
    After,
    AndB,
    AndN,
    AndOr,
    AndV,
    Hash160,
    Hash256,
    Just0,
    Just1,
    Multi,
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


WRAPPERS = {
    "a": WrapA,
    "s": WrapS,
    "c": WrapC,
    "t": WrapT,
    "d": WrapD,
    "v": WrapV,
    "j": WrapJ,
    "n": WrapN,
    "l": WrapL,
    "u": WrapU,
}

HASHES = {
    "sha256": Sha256,
    "hash256": Hash256,
    "ripemd160": Ripemd160,
    "hash160": Hash160,
}

# (fragment, number of subs)
CONNECTIVES = {
    "and_v": (AndV, 2),
    "and_b": (AndB, 2),
    "and_n": (AndN, 2),
    "or_b": (OrB, 2),
    "or_c": (OrC, 2),
    "or_d": (OrD, 2),
    "or_i": (OrI, 2),
    "andor": (AndOr, 3),
}

TERMINALS = ["pk", "pkh", "pk_k", "pk_h", "older", "after", "multi", *HASHES]


def split_params(string, pos):
    """Read a list of values before the next ')'. Split the result by comma.
    Returns the values and the position after the closing parenthesis."""
    i = string.find(")", pos)
    if i < 0:
        raise MiniscriptMalformed("Missing closing parenthesis", len(string))

    return string[pos:i].split(","), i + 1


def parse_many(string, pos):
    """Read a list of nodes before the next ')'."""
    subs = []
    while True:
        sub, pos = parse_one(string, pos)
        subs.append(sub)
        if pos >= len(string):
            raise MiniscriptMalformed("Missing closing parenthesis", pos)
        if string[pos] == ")":
            return subs, pos + 1
        if string[pos] != ",":
            raise MiniscriptMalformed(f"Unexpected character '{string[pos]}'", pos)
        pos += 1


def parse_one_num(string, pos):
    """Read an integer before the next comma."""
    i = string.find(",", pos)
    if i < 0:
        raise MiniscriptMalformed("Expected a ',' after the threshold", pos)

    return parse_int(string[pos:i], pos), i + 1


def parse_int(value, pos):
    # Only plain decimal, Python's int() accepts too much ("+1", "1_0", " 1").
    if not value.isdigit() or not value.isascii():
        raise MiniscriptMalformed(f"Invalid number '{value}'", pos)
    return int(value)


def parse_hex(value, size, pos):
    try:
        data = bytes.fromhex(value)
    except ValueError:
        raise MiniscriptMalformed(f"Invalid hex '{value}'", pos)
    if len(data) != size or len(value) != 2 * size:
        raise MiniscriptMalformed(f"Expected {size} bytes, got '{value}'", pos)
    return data


def parse_key(value, pos):
    try:
        return MiniscriptKey(value)
    except MiniscriptKeyError as e:
        raise MiniscriptMalformed(f"Invalid key '{value}': {e}", pos)


def parse_terminal(tag, params, pos):
    """Create the terminal fragment {tag} from its (string) parameters."""
    if tag == "multi":
        if len(params) < 2:
            raise MiniscriptMalformed("multi() takes a threshold and keys", pos)
        k = parse_int(params[0], pos)
        return Multi(k, [parse_key(param, pos) for param in params[1:]])

    if len(params) != 1:
        raise MiniscriptMalformed(f"{tag}() takes a single argument", pos)
    param = params[0]

    if tag in ("pk", "pk_k"):
        node = Pk(parse_key(param, pos))
        return WrapC(node) if tag == "pk" else node

    if tag in ("pkh", "pk_h"):
        # The key itself, or only its hash.
        if len(param) == 40:
            node = Pkh(parse_hex(param, 20, pos))
        else:
            node = Pkh(parse_key(param, pos))
        return WrapC(node) if tag == "pkh" else node

    if tag == "older":
        return Older(parse_int(param, pos))

    if tag == "after":
        return After(parse_int(param, pos))

    fragment = HASHES[tag]
    return fragment(parse_hex(param, fragment.digest_size, pos))


def parse_one(string, pos=0):
    """Read a node and its subs recursively from a string.
    Returns the node and the position of the part of the string not consumed.
    """
    if pos >= len(string):
        raise MiniscriptMalformed("Unexpected end of string", pos)

    # We special case Just1 and Just0 since they are the only one which don't
    # have a function syntax.
    if string[pos] == "0":
        return Just0(), pos + 1
    if string[pos] == "1":
        return Just1(), pos + 1

    # Now, find the separator for all functions.
    for i in range(pos, len(string)):
        if string[i] in "(:":
            break
    else:
        raise MiniscriptMalformed(f"Unexpected '{string[pos:]}'", pos)
    char = string[i]

    # Wrappers
    if char == ":":
        letters = string[pos:i]
        if not letters:
            raise MiniscriptMalformed("Empty wrapper", pos)
        for letter_pos, letter in enumerate(letters, start=pos):
            if letter not in WRAPPERS:
                raise MiniscriptMalformed(f"Unknown wrapper '{letter}'", letter_pos)
        node, remaining = parse_one(string, i + 1)
        # The last wrapper is the innermost one.
        for letter in reversed(letters):
            node = WRAPPERS[letter](node)
        return node, remaining

    tag, params_pos = string[pos:i], i + 1

    # Terminal elements other than 0 and 1
    if tag in TERMINALS:
        params, remaining = split_params(string, params_pos)
        return parse_terminal(tag, params, pos), remaining

    # Non-terminal elements (connectives)
    # We special case Thresh, as its first sub is an integer.
    if tag == "thresh":
        k, params_pos = parse_one_num(string, params_pos)
        subs, remaining = parse_many(string, params_pos)
        return Thresh(k, subs), remaining

    if tag not in CONNECTIVES:
        raise MiniscriptMalformed(f"Unknown fragment '{tag}'", pos)
    fragment, arity = CONNECTIVES[tag]
    subs, remaining = parse_many(string, params_pos)
    if len(subs) != arity:
        raise MiniscriptMalformed(
            f"{tag}() takes {arity} arguments, got {len(subs)}", pos
        )
    return fragment(*subs), remaining


def miniscript_from_str(ms_str):
    """Construct miniscript node from string representation"""
    node, remaining = parse_one(ms_str)
    if remaining != len(ms_str):
        raise MiniscriptMalformed(
            f"Unexpected trailing characters '{ms_str[remaining:]}'", remaining
        )
    return node
