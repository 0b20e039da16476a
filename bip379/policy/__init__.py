"""
Abstract spending policies.

A policy describes who can spend and under which conditions, without committing to a
Script encoding. It can be compiled to a Miniscript, and a Miniscript can be lifted
back to a policy.
"""

from ..key import MiniscriptKey, MiniscriptKeyError

from .errors import PolicyCompilationError, PolicyError, PolicyParsingError


class Policy:
    """A spending policy."""

    # List of all sub policies
    subs = []

    def __init__(self, *args, **kwargs):
        # Needs to be implemented by derived classes.
        raise NotImplementedError

    @staticmethod
    def from_str(policy_str):
        """Parse a policy from its string representation."""
        from .parsing import parse_policy

        return parse_policy(policy_str)

    def compile(self, cost_model=None, require_safe=False):
        """Get the cheapest Miniscript implementing this policy."""
        from .compiler import compile_policy

        return compile_policy(self, cost_model, require_safe)

    @property
    def keys(self):
        """Get the list of all keys from this policy, in order of apparition."""
        return [key for sub in self.subs for key in sub.keys]

    def __eq__(self, other):
        return isinstance(other, Policy) and str(self) == str(other)

    def __hash__(self):
        return hash(str(self))


class Trivial(Policy):
    def __init__(self):
        pass

    def __repr__(self):
        return "TRIVIAL"


class Unsatisfiable(Policy):
    def __init__(self):
        pass

    def __repr__(self):
        return "UNSATISFIABLE"


class Key(Policy):
    """A signature for this key is required."""

    def __init__(self, key):
        try:
            self.key = MiniscriptKey(key)
        except MiniscriptKeyError as e:
            raise PolicyError(f"Invalid key: {e}")

    @property
    def keys(self):
        return [self.key]

    def __repr__(self):
        return f"pk({self.key})"


class Timelock(Policy):
    name = None

    def __init__(self, value):
        if not isinstance(value, int) or not 0 < value < 2 ** 31:
            raise PolicyError(f"Invalid {self.name} value: '{value}'")
        self.value = value

    def __repr__(self):
        return f"{self.name}({self.value})"


class Older(Timelock):
    """The spending input must have a relative timelock of at least this value."""

    name = "older"


class After(Timelock):
    """The spending transaction must have an absolute timelock of at least this value."""

    name = "after"


class Hashlock(Policy):
    name = None
    digest_size = 32

    def __init__(self, digest):
        if not isinstance(digest, bytes) or len(digest) != self.digest_size:
            raise PolicyError(f"{self.name}() takes a {self.digest_size} bytes digest")
        self.digest = digest

    def __repr__(self):
        return f"{self.name}({self.digest.hex()})"


class Sha256(Hashlock):
    name = "sha256"


class Hash256(Hashlock):
    name = "hash256"


class Ripemd160(Hashlock):
    name = "ripemd160"
    digest_size = 20


class Hash160(Hashlock):
    name = "hash160"
    digest_size = 20


class And(Policy):
    """All the sub policies must be satisfied."""

    def __init__(self, subs):
        if len(subs) < 2:
            raise PolicyError("and() takes at least two sub policies")
        self.subs = list(subs)

    def __repr__(self):
        return f"and({','.join(map(str, self.subs))})"


class Or(Policy):
    """One of the sub policies must be satisfied.

    Each sub policy has a weight, the relative likelihood of it being the one used.
    """

    def __init__(self, subs, weights=None):
        if len(subs) < 2:
            raise PolicyError("or() takes at least two sub policies")
        weights = [1] * len(subs) if weights is None else list(weights)
        if len(weights) != len(subs):
            raise PolicyError("There must be one weight per or() branch")
        for weight in weights:
            if not isinstance(weight, int) or weight <= 0:
                raise PolicyError(f"Invalid or() weight: '{weight}'")
        self.subs = list(subs)
        self.weights = weights

    def __repr__(self):
        if all(w == 1 for w in self.weights):
            return f"or({','.join(map(str, self.subs))})"
        branches = (f"{w}@{sub}" for w, sub in zip(self.weights, self.subs))
        return f"or({','.join(branches)})"


class Thresh(Policy):
    """At least k of the sub policies must be satisfied."""

    def __init__(self, k, subs):
        if not isinstance(k, int) or not 1 <= k <= len(subs):
            raise PolicyError(f"Invalid threshold {k} for {len(subs)} sub policies")
        self.k = k
        self.subs = list(subs)

    def __repr__(self):
        return f"thresh({self.k},{','.join(map(str, self.subs))})"


def parse_policy(policy_str):
    """Parse a policy from its string representation."""
    from .parsing import parse_policy as parse

    return parse(policy_str)


__all__ = [
    "After",
    "And",
    "Hash160",
    "Hash256",
    "Key",
    "Older",
    "Or",
    "Policy",
    "PolicyCompilationError",
    "PolicyError",
    "PolicyParsingError",
    "Ripemd160",
    "Sha256",
    "Thresh",
    "Trivial",
    "Unsatisfiable",
    "parse_policy",
]
