"""
Miniscript satisfaction.

This module contains logic for "signing for" a Miniscript (constructing a valid witness
that meets the conditions set by the Script) and analysis of such satisfaction(s) (eg the
maximum cost in a given resource).
By default only non-malleable satisfactions are produced, a malleable mode picks the
smallest witness instead. We take shortcuts to not care about non-canonical
(dis)satisfactions.
"""

from ..key import MiniscriptKey


# Threshold for nLockTime: below this value it is interpreted as block number,
# otherwise as UNIX timestamp.
LOCKTIME_THRESHOLD = 500000000  # Tue Nov  5 00:53:20 1985 UTC

# If this flag is set, CTxIn::nSequence is NOT interpreted as a relative lock-time.
SEQUENCE_LOCKTIME_DISABLE_FLAG = 1 << 31

# If CTxIn::nSequence encodes a relative lock-time and this flag
# is set, the relative lock-time has units of 512 seconds,
# otherwise it specifies blocks with a granularity of 1.
SEQUENCE_LOCKTIME_TYPE_FLAG = 1 << 22

# The part of a nSequence that encodes the relative lock-time value.
SEQUENCE_LOCKTIME_MASK = 0x0000FFFF


class Satisfier:
    """The source of the data needed to satisfy a Miniscript.

    Subclass it and override the lookups for which you have data, the default
    implementations answer that nothing is available.
    """

    def lookup_sig(self, key):
        """Get a signature for this MiniscriptKey, or None."""
        return None

    def lookup_pkh_key(self, keyhash):
        """Get the public key (a MiniscriptKey) whose hash160 is {keyhash}, or None."""
        return None

    def lookup_preimage(self, hash_name, digest):
        """Get the preimage of {digest} for the hash function {hash_name} (one of
        'sha256', 'hash256', 'ripemd160' or 'hash160'), or None."""
        return None

    def check_older(self, value):
        """Whether the spending transaction satisfies a relative timelock of {value}."""
        return False

    def check_after(self, value):
        """Whether the spending transaction satisfies an absolute timelock of {value}."""
        return False


class SatisfactionMaterial(Satisfier):
    """Data that may be needed in order to satisfy a Miniscript fragment."""

    def __init__(
        self,
        preimages=None,
        signatures=None,
        max_sequence=None,
        max_lock_time=None,
        pkh_keys=None,
    ):
        """
        :param preimages: Mapping from a hash (as bytes), to its 32-bytes preimage.
        :param signatures: Mapping from a public key (as bytes or MiniscriptKey), to a
                           signature for this key.
        :param max_sequence: The nSequence of the spending input. None if the input
                             can't have a relative timelock.
        :param max_lock_time: The nLockTime of the spending transaction. None if the
                              transaction can't have an absolute timelock.
        :param pkh_keys: Mapping from a hash160 (as bytes) to the public key it commits
                         to, for pk_h() fragments that only contain the key hash.
        """
        self.preimages = dict(preimages or {})
        self.signatures = {
            MiniscriptKey(k).bytes(): sig for k, sig in (signatures or {}).items()
        }
        self.max_sequence = max_sequence
        self.max_lock_time = max_lock_time
        self.pkh_keys = {
            keyhash: MiniscriptKey(k) for keyhash, k in (pkh_keys or {}).items()
        }

    def clear(self):
        self.preimages.clear()
        self.signatures.clear()
        self.pkh_keys.clear()
        self.max_sequence = None
        self.max_lock_time = None

    def lookup_sig(self, key):
        return self.signatures.get(key.bytes())

    def lookup_pkh_key(self, keyhash):
        return self.pkh_keys.get(keyhash)

    def lookup_preimage(self, hash_name, digest):
        return self.preimages.get(digest)

    def check_older(self, value):
        seq = self.max_sequence
        if seq is None or seq & SEQUENCE_LOCKTIME_DISABLE_FLAG:
            return False
        # Heights can't be compared to times.
        if (value & SEQUENCE_LOCKTIME_TYPE_FLAG) != (seq & SEQUENCE_LOCKTIME_TYPE_FLAG):
            return False
        return value & SEQUENCE_LOCKTIME_MASK <= seq & SEQUENCE_LOCKTIME_MASK

    def check_after(self, value):
        lock_time = self.max_lock_time
        if lock_time is None:
            return False
        if (value < LOCKTIME_THRESHOLD) != (lock_time < LOCKTIME_THRESHOLD):
            return False
        return value <= lock_time


class CombinedSatisfier(Satisfier):
    """Chain several satisfiers, for instance one per signer.

    A lookup returns the first answer any of them has, a timelock is met if any of
    them says so.
    """

    def __init__(self, *satisfiers):
        self.satisfiers = list(satisfiers)

    def _first(self, lookup, *args):
        for satisfier in self.satisfiers:
            result = getattr(satisfier, lookup)(*args)
            if result is not None:
                return result
        return None

    def lookup_sig(self, key):
        return self._first("lookup_sig", key)

    def lookup_pkh_key(self, keyhash):
        return self._first("lookup_pkh_key", keyhash)

    def lookup_preimage(self, hash_name, digest):
        return self._first("lookup_preimage", hash_name, digest)

    def check_older(self, value):
        return any(satisfier.check_older(value) for satisfier in self.satisfiers)

    def check_after(self, value):
        return any(satisfier.check_after(value) for satisfier in self.satisfiers)


class Satisfaction:
    """All information about a satisfaction.

    A satisfaction is either a witness (a list of stack elements, first element at the
    bottom of the stack), "impossible" when we lack the data to produce it (a signature, a
    preimage, a timelock the transaction does not meet), or "unavailable" when any witness
    we could produce would let a third party swap it for another valid one.
    """

    def __init__(self, witness, has_sig=False, is_impossible=False):
        assert isinstance(witness, list) or witness is None

        self.witness = witness
        self.has_sig = has_sig
        self.is_impossible = is_impossible
        # TODO: we probably need to take into account non-canon sats, as the algorithm
        # described on the website mandates.

    def __repr__(self):
        if self.is_impossible:
            return "Satisfaction(impossible)"
        if self.witness is None:
            return "Satisfaction(unavailable)"
        return f"Satisfaction([{', '.join(e.hex() for e in self.witness)}], has_sig={self.has_sig})"

    def __add__(self, other):
        """Concatenate two satisfactions together, {other} being on top of the stack."""
        if self.is_impossible or other.is_impossible:
            return Satisfaction.impossible()
        if self.witness is None or other.witness is None:
            return Satisfaction(witness=None, has_sig=self.has_sig or other.has_sig)

        return Satisfaction(self.witness + other.witness, self.has_sig or other.has_sig)

    def __or__(self, other):
        """Choose between two (possibly unavailable) satisfactions.

        A third party could always drop a signature-less satisfaction in place of the
        one we chose, so prefer the satisfaction without signature if there is one. If
        neither needs a signature the choice is malleable and we don't make it.
        """
        # If only one of them is possible at all, it is the one to use.
        if self.is_impossible:
            return other
        if other.is_impossible:
            return self

        if not self.has_sig and not other.has_sig:
            return Satisfaction.unavailable()
        if not self.has_sig:
            return Satisfaction(self.witness, has_sig=False)
        if not other.has_sig:
            return Satisfaction(other.witness, has_sig=False)

        if self.witness is None:
            return other
        if other.witness is None:
            return self
        return self if self.size() <= other.size() else other

    
    def choose(sat_a, sat_b, malleable=False):
        """Choose between two satisfactions. Unless {malleable} is set this is the
        non-malleable choice of {sat_a} | {sat_b}, otherwise the smallest of the
        possible satisfactions regardless of signatures."""
        if not malleable:
            return sat_a | sat_b
        if not sat_a.is_available():
            return sat_b
        if not sat_b.is_available():
            return sat_a
        return sat_a if sat_a.size() <= sat_b.size() else sat_b

    def is_available(self):
        return self.witness is not None

    def size(self):
        return len(self.witness) + sum(len(elem) for elem in self.witness)

    @staticmethod
    def unavailable():
        return Satisfaction(witness=None)

    @staticmethod
    def impossible():
        return Satisfaction(witness=None, is_impossible=True)

    @staticmethod
    def from_thresh(k, sats, dissats, malleable=False):
        """Get the satisfaction of a threshold among the given satisfactions and
        dissatisfactions (in the order of the subs in the Script).

        The {k} satisfactions to use are chosen in the non-malleable and cheapest
        way: first those that don't need a signature, then those whose satisfaction
        costs the least compared to their dissatisfaction. Ties go to the first sub.
        If {malleable} is set only the cost matters.
        """
        assert len(sats) == len(dissats) and 0 < k <= len(sats)

        def sort_key(i):
            sat, dissat = sats[i], dissats[i]
            if not sat.is_available():
                weight = float("inf")
            elif not dissat.is_available():
                weight = float("-inf")
            else:
                weight = sat.size() - dissat.size()
            if malleable:
                return (not sat.is_available(), weight)
            return (sat.is_impossible, sat.has_sig, weight)

        indexes = sorted(range(len(sats)), key=sort_key)
        chosen = set(indexes[:k])

        if sats[indexes[k - 1]].is_impossible:
            return Satisfaction.impossible()
        # A satisfaction without signature we did not pick could be swapped in by anyone.
        if not malleable and k < len(indexes):
            next_best = sats[indexes[k]]
            if not next_best.has_sig and not next_best.is_impossible:
                return Satisfaction.unavailable()

        # The first sub is executed first, hence its (dis)satisfaction is on top.
        sat = Satisfaction(witness=[])
        for i in reversed(range(len(sats))):
            sat += sats[i] if i in chosen else dissats[i]
        return sat
