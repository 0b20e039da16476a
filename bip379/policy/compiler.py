"""
A compiler from spending policies to Miniscript.

Each sub policy is compiled into a set of candidate fragments, one per type and
properties, under the probability it is satisfied and the probability it is
dissatisfied by its parent. A candidate is dropped when another one can be used
everywhere it can and is cheaper. Candidates are then combined upward with every
fragment able to implement the parent policy, and the cheapest well-typed root wins.

The cost of a candidate is the size of its Script plus the expected size of the
witness: the probability it is satisfied times the expected size of its satisfaction,
plus the probability it is dissatisfied times the size of its dissatisfaction.
"""

import logging
import math

from ..miniscript.errors import MiniscriptTypeError
from ..miniscript.fragments import (
    After as AfterNode,
    AndB,
    AndN,
    AndOr,
    AndV,
    Hash160 as Hash160Node,
    Hash256 as Hash256Node,
    Just0,
    Just1,
    MAX_PUBKEYS_PER_MULTISIG,
    Multi,
    Older as OlderNode,
    OrB,
    OrC,
    OrD,
    OrI,
    Pk,
    Pkh,
    Ripemd160 as Ripemd160Node,
    Sha256 as Sha256Node,
    Thresh as ThreshNode,
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

from . import (
    After,
    And,
    Hash160,
    Hash256,
    Key,
    Older,
    Or,
    Policy,
    Ripemd160,
    Sha256,
    Thresh,
    Trivial,
    Unsatisfiable,
)
from .errors import PolicyCompilationError
from .parsing import parse_policy


logger = logging.getLogger(__name__)

WRAPPERS = [WrapA, WrapS, WrapC, WrapD, WrapV, WrapJ, WrapN, WrapT, WrapL, WrapU]

# How many wrappers we try to stack on top of a candidate that is too expensive to
# be kept for its own sake.
MAX_UNUSABLE_WRAPPERS = 3
# Upper bound on the wrappers stacked on a candidate in a single insertion.
MAX_WRAPPERS = 6

LEAVES = {
    Older: OlderNode,
    After: AfterNode,
    Sha256: Sha256Node,
    Hash256: Hash256Node,
    Ripemd160: Ripemd160Node,
    Hash160: Hash160Node,
}


class CostModel:
    """The size in bytes of the witness elements, including their length prefix.

    The defaults are the sizes for P2WSH with ECDSA signatures.
    """

    def __init__(
        self,
        signature_size=73,
        pubkey_size=34,
        preimage_size=33,
        empty_size=1,
        true_size=2,
    ):
        self.signature_size = signature_size
        self.pubkey_size = pubkey_size
        self.preimage_size = preimage_size
        self.empty_size = empty_size
        self.true_size = true_size


def weighted(prob, cost):
    # Never weight an impossible cost by a null probability.
    return 0 if prob == 0 else prob * cost


def add(*costs):
    """Sum of the costs, None if one of them is None."""
    if any(cost is None for cost in costs):
        return None
    return sum(costs)


class Candidate:
    """A Miniscript fragment along with the costs of its witnesses.

    :param sat_cost: the expected size of its satisfaction.
    :param dissat_cost: the size of its dissatisfaction, None if it can't be dissatisfied.
    :param worst_sat: the size of its largest satisfaction.
    """

    def __init__(self, node, sat_cost, dissat_cost, worst_sat):
        self.node = node
        self.sat_cost = sat_cost
        self.dissat_cost = dissat_cost
        self.worst_sat = worst_sat
        self.script_size = len(node.script)

    @property
    def p(self):
        return self.node.p

    def is_usable(self, dissat_prob):
        """Whether it can be used where it may need to be dissatisfied."""
        return dissat_prob is None or self.dissat_cost is not None

    def cost(self, sat_prob, dissat_prob):
        cost = self.script_size + weighted(sat_prob, self.sat_cost)
        if dissat_prob is not None:
            if self.dissat_cost is None:
                return math.inf
            cost += weighted(dissat_prob, self.dissat_cost)
        return cost

    def sort_key(self, sat_prob, dissat_prob):
        return (
            round(self.cost(sat_prob, dissat_prob), 9),
            self.worst_sat,
            bytes(self.node.script),
        )

    @property
    def root_cost(self):
        """The cost of this candidate used as the top-level fragment."""
        return self.cost(1.0, None)

    def __repr__(self):
        return (
            f"Candidate({self.node}, script_size={self.script_size}, sat_cost="
            f"{self.sat_cost}, dissat_cost={self.dissat_cost}, worst_sat={self.worst_sat})"
        )


def normalize(policy):
    """Get an equivalent policy with only binary and() and or()."""
    if isinstance(policy, And):
        subs = [normalize(sub) for sub in policy.subs]
        node = subs[-1]
        for sub in reversed(subs[:-1]):
            node = And([sub, node])
        return node

    if isinstance(policy, Or):
        subs = [normalize(sub) for sub in policy.subs]
        node, weight = subs[-1], policy.weights[-1]
        for sub, sub_weight in zip(reversed(subs[:-1]), reversed(policy.weights[:-1])):
            node = Or([sub, node], [sub_weight, weight])
            weight += sub_weight
        return node

    if isinstance(policy, Thresh):
        return Thresh(policy.k, [normalize(sub) for sub in policy.subs])

    return policy


class CompilationRun:
    """The state of a single compilation: the candidates found for each sub policy
    in each context."""

    def __init__(self, cost_model):
        self.cost_model = cost_model
        # (id(policy), sat_prob, dissat_prob) -> {Property: (sort_key, Candidate)}
        self.cache = {}
        # Equivalent policies for thresholds, kept alive for the duration of the run.
        self.alternatives = {}

    def leaf(self, node):
        """Candidate for a terminal fragment."""
        cm = self.cost_model
        if isinstance(node, Pk):
            return Candidate(node, cm.signature_size, cm.empty_size, cm.signature_size)
        if isinstance(node, Pkh):
            sat = cm.signature_size + cm.pubkey_size
            return Candidate(node, sat, cm.empty_size + cm.pubkey_size, sat)
        if isinstance(node, (OlderNode, AfterNode, Just1)):
            return Candidate(node, 0, None, 0)
        if isinstance(node, Just0):
            return Candidate(node, math.inf, 0, math.inf)
        if isinstance(node, Multi):
            sat = cm.empty_size + node.k * cm.signature_size
            return Candidate(node, sat, (node.k + 1) * cm.empty_size, sat)
        # Hashes
        return Candidate(node, cm.preimage_size, cm.preimage_size, cm.preimage_size)

    def wrap(self, cand, wrapper):
        """Candidate for {wrapper} around {cand}, None if it does not type."""
        try:
            node = wrapper(cand.node)
        except MiniscriptTypeError:
            return None

        cm = self.cost_model
        sat, dissat, worst = cand.sat_cost, cand.dissat_cost, cand.worst_sat
        if wrapper is WrapD:
            sat, worst, dissat = sat + cm.true_size, worst + cm.true_size, cm.empty_size
        elif wrapper in (WrapV, WrapT):
            dissat = None
        elif wrapper is WrapJ:
            dissat = cm.empty_size
        elif wrapper is WrapL:
            sat, worst = sat + cm.empty_size, worst + cm.empty_size
            dissat = cm.true_size
        elif wrapper is WrapU:
            sat, worst = sat + cm.true_size, worst + cm.true_size
            dissat = cm.empty_size
        return Candidate(node, sat, dissat, worst)

    def combine(self, node, subs, weights=(1.0, 1.0)):
        """Candidate for a non-terminal {node} made of the {subs} candidates. {weights}
        are the probabilities of each branch of a disjunction."""
        cm = self.cost_model
        lw, rw = weights

        if isinstance(node, AndN):
            a, b = subs
            return Candidate(
                node, a.sat_cost + b.sat_cost, a.dissat_cost, a.worst_sat + b.worst_sat
            )

        if isinstance(node, AndOr):
            a, b, c = subs
            if a.dissat_cost is None:
                return None
            sat = weighted(lw, a.sat_cost + b.sat_cost) + weighted(
                rw, a.dissat_cost + c.sat_cost
            )
            worst = max(a.worst_sat + b.worst_sat, a.dissat_cost + c.worst_sat)
            return Candidate(node, sat, add(a.dissat_cost, c.dissat_cost), worst)

        if isinstance(node, AndV):
            x, y = subs
            return Candidate(
                node, x.sat_cost + y.sat_cost, None, x.worst_sat + y.worst_sat
            )

        if isinstance(node, AndB):
            x, y = subs
            return Candidate(
                node,
                x.sat_cost + y.sat_cost,
                add(x.dissat_cost, y.dissat_cost),
                x.worst_sat + y.worst_sat,
            )

        if isinstance(node, ThreshNode):
            if any(sub.dissat_cost is None for sub in subs):
                return None
            n, k = len(subs), node.k
            sat = sum(
                weighted(k / n, sub.sat_cost) + weighted((n - k) / n, sub.dissat_cost)
                for sub in subs
            )
            dissat = sum(sub.dissat_cost for sub in subs)
            extra = sorted((sub.worst_sat - sub.dissat_cost for sub in subs), reverse=True)
            return Candidate(node, sat, dissat, dissat + sum(extra[:k]))

        l, r = subs
        if isinstance(node, OrI):
            sat = weighted(lw, l.sat_cost + cm.true_size) + weighted(
                rw, r.sat_cost + cm.empty_size
            )
            dissats = [
                cost
                for cost in (
                    add(l.dissat_cost, cm.true_size),
                    add(r.dissat_cost, cm.empty_size),
                )
                if cost is not None
            ]
            worst = max(l.worst_sat + cm.true_size, r.worst_sat + cm.empty_size)
            return Candidate(node, sat, min(dissats, default=None), worst)

        # The left branch of the other disjunctions is dissatisfied to use the right one.
        if l.dissat_cost is None:
            return None

        if isinstance(node, OrB):
            if r.dissat_cost is None:
                return None
            sat = weighted(lw, l.sat_cost + r.dissat_cost) + weighted(
                rw, r.sat_cost + l.dissat_cost
            )
            worst = max(l.worst_sat + r.dissat_cost, r.worst_sat + l.dissat_cost)
            return Candidate(node, sat, l.dissat_cost + r.dissat_cost, worst)

        # or_c and or_d
        sat = weighted(lw, l.sat_cost) + weighted(rw, r.sat_cost + l.dissat_cost)
        worst = max(l.worst_sat, r.worst_sat + l.dissat_cost)
        dissat = add(l.dissat_cost, r.dissat_cost) if isinstance(node, OrD) else None
        return Candidate(node, sat, dissat, worst)

    @staticmethod
    def insert(cands, cand, sat_prob, dissat_prob):
        """Insert {cand} unless another candidate dominates it, removing the ones it
        dominates. Return whether it was inserted."""
        if not cand.is_usable(dissat_prob):
            return False
        key = cand.sort_key(sat_prob, dissat_prob)

        for other_key, other in cands.values():
            if other.p.is_subtype(cand.p) and other_key <= key:
                return False

        dominated = [
            p for p, (other_key, _) in cands.items() if cand.p.is_subtype(p) and key < other_key
        ]
        for p in dominated:
            del cands[p]
        cands[cand.p] = (key, cand)
        return True

    def insert_wrapped(self, cands, cand, sat_prob, dissat_prob):
        """Insert {cand} and all the candidates we get by wrapping it."""
        if cand is None:
            return
        queue = [(cand, 0)]
        while queue:
            cand, depth = queue.pop()
            if self.insert(cands, cand, sat_prob, dissat_prob):
                max_depth = MAX_WRAPPERS
            elif not cand.is_usable(dissat_prob):
                # Wrapping may give it a dissatisfaction.
                max_depth = MAX_UNUSABLE_WRAPPERS
            else:
                continue
            if depth >= max_depth:
                continue
            for wrapper in WRAPPERS:
                wrapped = self.wrap(cand, wrapper)
                if wrapped is not None:
                    queue.append((wrapped, depth + 1))

    def compile_binary(self, cands, node_cls, left, right, weights, sat_prob, dissat_prob):
        for _, l in list(left.values()):
            for _, r in list(right.values()):
                try:
                    node = node_cls(l.node, r.node)
                except MiniscriptTypeError:
                    continue
                self.insert_wrapped(
                    cands, self.combine(node, [l, r], weights), sat_prob, dissat_prob
                )

    def compile_andor(self, cands, first, second, third, weights, sat_prob, dissat_prob):
        for _, a in list(first.values()):
            if not a.p.has_all("Bdu"):
                continue
            for _, b in list(second.values()):
                for _, c in list(third.values()):
                    if b.p.type() != c.p.type():
                        continue
                    try:
                        node = AndOr(a.node, b.node, c.node)
                    except MiniscriptTypeError:
                        continue
                    self.insert_wrapped(
                        cands,
                        self.combine(node, [a, b, c], weights),
                        sat_prob,
                        dissat_prob,
                    )

    def best(self, policy, sat_prob, dissat_prob):
        """Get the candidates for {policy} satisfied with probability {sat_prob} and
        dissatisfied with probability {dissat_prob} (None if it never is)."""
        cache_key = (id(policy), sat_prob, dissat_prob)
        if cache_key in self.cache:
            return self.cache[cache_key]

        cands = {}
        if isinstance(policy, Key):
            for node in (Pk(policy.key), Pkh(policy.key)):
                self.insert_wrapped(cands, self.leaf(node), sat_prob, dissat_prob)
        elif isinstance(policy, Trivial):
            self.insert_wrapped(cands, self.leaf(Just1()), sat_prob, dissat_prob)
        elif isinstance(policy, Unsatisfiable):
            self.insert_wrapped(cands, self.leaf(Just0()), sat_prob, dissat_prob)
        elif type(policy) in LEAVES:
            node_cls = LEAVES[type(policy)]
            value = policy.digest if hasattr(policy, "digest") else policy.value
            self.insert_wrapped(cands, self.leaf(node_cls(value)), sat_prob, dissat_prob)
        elif isinstance(policy, And):
            self.compile_and(cands, policy, sat_prob, dissat_prob)
        elif isinstance(policy, Or):
            self.compile_or(cands, policy, sat_prob, dissat_prob)
        elif isinstance(policy, Thresh):
            self.compile_thresh(cands, policy, sat_prob, dissat_prob)
        else:
            raise PolicyCompilationError(f"Unknown policy '{type(policy).__name__}'")

        logger.debug(
            "%d candidate(s) for '%s' (sat_prob=%s, dissat_prob=%s)",
            len(cands),
            policy,
            sat_prob,
            dissat_prob,
        )
        self.cache[cache_key] = cands
        return cands

    def compile_and(self, cands, policy, sat_prob, dissat_prob):
        l, r = policy.subs
        left = self.best(l, sat_prob, dissat_prob)
        right = self.best(r, sat_prob, dissat_prob)
        q_zero_left = self.best(l, sat_prob, None)
        q_zero_right = self.best(r, sat_prob, None)

        for x, y in ((left, right), (right, left)):
            self.compile_binary(cands, AndB, x, y, (1.0, 1.0), sat_prob, dissat_prob)
        for x, y in ((q_zero_left, q_zero_right), (q_zero_right, q_zero_left)):
            self.compile_binary(cands, AndV, x, y, (1.0, 1.0), sat_prob, dissat_prob)
        # and_n(X,Y) is andor(X,Y,0), X's dissatisfaction is the whole's.
        for x, y in ((left, q_zero_right), (right, q_zero_left)):
            self.compile_binary(cands, AndN, x, y, (1.0, 0.0), sat_prob, dissat_prob)

    def compile_or(self, cands, policy, sat_prob, dissat_prob):
        l, r = policy.subs
        total = sum(policy.weights)
        lw, rw = policy.weights[0] / total, policy.weights[1] / total
        dissat_prob_or_zero = dissat_prob or 0

        # andor(X,Y,Z) when one of the branches is a conjunction of X and Y.
        for conj, other, conj_w, other_w in ((l, r, lw, rw), (r, l, rw, lw)):
            if not isinstance(conj, And):
                continue
            x, y = conj.subs
            x_dissat = self.best(x, conj_w * sat_prob, dissat_prob_or_zero + other_w * sat_prob)
            x_sat = self.best(x, conj_w * sat_prob, None)
            y_dissat = self.best(y, conj_w * sat_prob, dissat_prob_or_zero + other_w * sat_prob)
            y_sat = self.best(y, conj_w * sat_prob, None)
            z = self.best(other, other_w * sat_prob, dissat_prob)
            weights = (conj_w, other_w)
            self.compile_andor(cands, x_dissat, y_sat, z, weights, sat_prob, dissat_prob)
            self.compile_andor(cands, y_dissat, x_sat, z, weights, sat_prob, dissat_prob)

        l_sat = self.best(l, lw * sat_prob, None)
        l_dissat = self.best(l, lw * sat_prob, dissat_prob_or_zero + rw * sat_prob)
        r_sat = self.best(r, rw * sat_prob, None)
        r_dissat = self.best(r, rw * sat_prob, dissat_prob_or_zero + lw * sat_prob)
        # The second branch of an or_d, and either branch of an or_i, carries the
        # dissatisfaction of the whole.
        l_either = self.best(l, lw * sat_prob, dissat_prob)
        r_either = self.best(r, rw * sat_prob, dissat_prob)

        for (x_dissat, x_either, y_sat, y_dissat, y_either, weights) in (
            (l_dissat, l_either, r_sat, r_dissat, r_either, (lw, rw)),
            (r_dissat, r_either, l_sat, l_dissat, l_either, (rw, lw)),
        ):
            self.compile_binary(cands, OrB, x_dissat, y_dissat, weights, sat_prob, dissat_prob)
            self.compile_binary(cands, OrD, x_dissat, y_either, weights, sat_prob, dissat_prob)
            self.compile_binary(cands, OrC, x_dissat, y_sat, weights, sat_prob, dissat_prob)
            self.compile_binary(cands, OrI, x_either, y_either, weights, sat_prob, dissat_prob)

    def compile_thresh(self, cands, policy, sat_prob, dissat_prob):
        k, n = policy.k, len(policy.subs)

        # thresh() with the cheapest expression first and wrapped expressions after.
        sub_sat_prob = sat_prob * k / n
        sub_dissat_prob = (dissat_prob or 0) + sat_prob * (n - k) / n
        sub_cands = [self.best(sub, sub_sat_prob, sub_dissat_prob) for sub in policy.subs]
        for extra_props in ("", "em"):
            best_e, best_w = [], []
            for sub_cand in sub_cands:
                best_e.append(self.cheapest(sub_cand, "Bdu" + extra_props))
                best_w.append(self.cheapest(sub_cand, "Wdu" + extra_props))
            if any(c is None for c in best_e + best_w):
                continue
            first = min(
                range(n),
                key=lambda i: best_e[i].cost(sub_sat_prob, sub_dissat_prob)
                - best_w[i].cost(sub_sat_prob, sub_dissat_prob),
            )
            subs = [best_e[first]] + [best_w[i] for i in range(n) if i != first]
            try:
                node = ThreshNode(k, [c.node for c in subs])
            except MiniscriptTypeError:
                continue
            self.insert_wrapped(cands, self.combine(node, subs), sat_prob, dissat_prob)

        if all(isinstance(sub, Key) for sub in policy.subs) and n <= MAX_PUBKEYS_PER_MULTISIG:
            node = Multi(k, [sub.key for sub in policy.subs])
            self.insert_wrapped(cands, self.leaf(node), sat_prob, dissat_prob)

        # All of them is a conjunction, any of them a disjunction.
        if k == n or k == 1:
            alternative = self.alternatives.get(id(policy))
            if alternative is None:
                if n == 1:
                    alternative = policy.subs[0]
                elif k == n:
                    alternative = normalize(And(policy.subs))
                else:
                    alternative = normalize(Or(policy.subs))
                self.alternatives[id(policy)] = alternative
            for _, cand in self.best(alternative, sat_prob, dissat_prob).values():
                self.insert(cands, cand, sat_prob, dissat_prob)

    @staticmethod
    def cheapest(cands, props):
        found = [(key, cand) for key, cand in cands.values() if cand.p.has_all(props)]
        if not found:
            return None
        return min(found, key=lambda c: c[0])[1]


class Compiler:
    """Compiles policies to the cheapest Miniscript implementing them.

    :param cost_model: the CostModel used to estimate witness sizes.
    :param require_safe: whether the Miniscript must require a signature to be satisfied.
    """

    def __init__(self, cost_model=None, require_safe=False):
        self.cost_model = cost_model or CostModel()
        self.require_safe = require_safe

    def best_candidate(self, policy):
        """Get the cheapest Candidate for this policy.

        :raises PolicyCompilationError: if no Miniscript with the required properties
                                        implements this policy.
        """
        if isinstance(policy, str):
            policy = parse_policy(policy)
        if not isinstance(policy, Policy):
            raise PolicyCompilationError(f"Not a policy: '{policy}'")

        run = CompilationRun(self.cost_model)
        cands = run.best(normalize(policy), 1.0, None)

        required = "Bms" if self.require_safe else "Bm"
        roots = [(key, cand) for key, cand in cands.values() if cand.p.has_all(required)]
        if not roots:
            logger.debug(
                "No '%s' candidate among %s for '%s'",
                required,
                [str(cand.p) for _, cand in cands.values()],
                policy,
            )
            raise PolicyCompilationError(
                f"No non-malleable{' safe' if self.require_safe else ''} compilation",
                str(policy),
            )

        _, best = min(roots, key=lambda c: c[0])
        if not best.node.no_timelock_mix:
            raise PolicyCompilationError(
                "Policy requires both a height and a time lock of the same kind", str(policy)
            )
        logger.debug("Compiled '%s' to '%s' (cost %s)", policy, best.node, best.root_cost)
        return best

    def compile(self, policy):
        """Get the cheapest Miniscript implementing this policy."""
        return self.best_candidate(policy).node


def compile_policy(policy, cost_model=None, require_safe=False):
    """Compile a policy (or its string representation) to Miniscript."""
    return Compiler(cost_model, require_safe).compile(policy)
