"""
Utilities to parse a spending policy from its string representation, such as
"or(9@pk(A),and(pk(B),older(144)))".
"""

import re

from . import (
    After,
    And,
    Hash160,
    Hash256,
    Key,
    Older,
    Or,
    Ripemd160,
    Sha256,
    Thresh,
    Trivial,
    Unsatisfiable,
)
from .errors import PolicyError, PolicyParsingError


TOKEN_RE = re.compile(r"\s*(?:([A-Za-z0-9_]+)|(\S))")

HASHLOCKS = {
    "sha256": Sha256,
    "hash256": Hash256,
    "ripemd160": Ripemd160,
    "hash160": Hash160,
}
TIMELOCKS = {
    "older": Older,
    "after": After,
}
CONSTANTS = {
    "TRIVIAL": Trivial,
    "UNSATISFIABLE": Unsatisfiable,
}


class Token:
    """A word (name, number, key or hex) or a punctuation character."""

    def __init__(self, value, start, end, is_word):
        self.value = value
        self.start = start
        self.end = end
        self.is_word = is_word

    @property
    def span(self):
        return (self.start, self.end)

    def __repr__(self):
        return f"'{self.value}'"


def tokenize(policy_str):
    """Split the string into tokens, ignoring whitespaces."""
    tokens = []
    pos = 0
    while pos < len(policy_str):
        match = TOKEN_RE.match(policy_str, pos)
        if match is None:
            # Only trailing whitespaces are left.
            break
        word, punct = match.group(1), match.group(2)
        if word is not None:
            tokens.append(Token(word, match.start(1), match.end(1), True))
        else:
            tokens.append(Token(punct, match.start(2), match.end(2), False))
        pos = match.end()
    return tokens


class PolicyParser:
    def __init__(self, policy_str):
        self.policy_str = policy_str
        self.tokens = tokenize(policy_str)
        self.pos = 0

    def peek(self):
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None

    def next(self):
        token = self.peek()
        if token is None:
            end = len(self.policy_str)
            raise PolicyParsingError("Unexpected end of policy", (end, end))
        self.pos += 1
        return token

    def expect(self, value):
        token = self.next()
        if token.value != value:
            raise PolicyParsingError(
                f"Expected '{value}', got '{token.value}'", token.span
            )
        return token

    def word(self):
        token = self.next()
        if not token.is_word:
            raise PolicyParsingError(f"Unexpected '{token.value}'", token.span)
        return token

    def number(self):
        token = self.word()
        if not token.value.isdigit():
            raise PolicyParsingError(f"Expected a number, got '{token.value}'", token.span)
        return int(token.value), token

    def parse(self):
        policy = self.parse_one()
        token = self.peek()
        if token is not None:
            raise PolicyParsingError(f"Unexpected trailing '{token.value}'", token.span)
        return policy

    def parse_many(self):
        """Read a comma-separated list of policies up to the closing parenthesis."""
        subs = [self.parse_one()]
        while self.next_is(","):
            subs.append(self.parse_one())
        self.expect(")")
        return subs

    def next_is(self, value):
        token = self.peek()
        if token is not None and token.value == value:
            self.pos += 1
            return True
        return False

    def parse_branch(self):
        """Read an or() branch, optionally prefixed by its weight."""
        token = self.peek()
        if token is not None and token.is_word and token.value.isdigit():
            weight, token = self.number()
            self.expect("@")
            if weight == 0:
                raise PolicyParsingError("or() weights must be positive", token.span)
            return weight, self.parse_one()
        return 1, self.parse_one()

    def parse_one(self):
        name = self.word()
        if name.value in CONSTANTS:
            return CONSTANTS[name.value]()
        self.expect("(")

        try:
            if name.value == "pk":
                key = self.word()
                self.expect(")")
                return self.build(Key, key, key.value)

            if name.value in TIMELOCKS:
                value, token = self.number()
                self.expect(")")
                return self.build(TIMELOCKS[name.value], token, value)

            if name.value in HASHLOCKS:
                token = self.word()
                self.expect(")")
                try:
                    digest = bytes.fromhex(token.value)
                except ValueError:
                    raise PolicyParsingError(f"Invalid hex '{token.value}'", token.span)
                return self.build(HASHLOCKS[name.value], token, digest)

            if name.value == "and":
                return And(self.parse_many())

            if name.value == "or":
                branches = [self.parse_branch()]
                while self.next_is(","):
                    branches.append(self.parse_branch())
                self.expect(")")
                return Or([sub for _, sub in branches], [w for w, _ in branches])

            if name.value == "thresh":
                k, _ = self.number()
                self.expect(",")
                return Thresh(k, self.parse_many())
        except PolicyParsingError:
            raise
        except PolicyError as e:
            # Point to the whole fragment.
            end = self.tokens[self.pos - 1].end
            raise PolicyParsingError(e.message, (name.start, end))

        raise PolicyParsingError(f"Unknown policy fragment '{name.value}'", name.span)

    @staticmethod
    def build(policy_cls, token, value):
        try:
            return policy_cls(value)
        except PolicyError as e:
            raise PolicyParsingError(e.message, token.span)


def parse_policy(policy_str):
    """Parse a policy from its string representation.

    :raises PolicyParsingError: with the span of the offending token.
    """
    return PolicyParser(policy_str).parse()
