# Copyright (c) 2020 The Bitcoin Core developers
# Copyright (c) 2021 Antoine Poinsot
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.

from .errors import MiniscriptPropertyError


class Property:
    """Miniscript expression property.

    Computed once when a fragment is created and never modified afterward.
    """

    # "B": Base type
    # "V": Verify type
    # "K": Key type
    # "W": Wrapped type
    # "z": Zero-arg property
    # "o": One-arg property
    # "n": Nonzero arg property
    # "d": Dissatisfiable property
    # "u": Unit property
    # "e": Expression property
    # "f": Forced property
    # "s": Safe property
    # "m": Nonmalleable property
    types = "BVKW"
    props = "zonduefsm"

    def __init__(self, property_str=""):
        """Create a property, optionally from a str of property and types"""
        for c in property_str:
            if c not in self.types + self.props:
                raise MiniscriptPropertyError(f"Invalid property/type character '{c}'")

        for literal in self.types + self.props:
            object.__setattr__(self, literal, literal in property_str)

    def __setattr__(self, name, value):
        raise AttributeError("Property is immutable")

    def __repr__(self):
        """Generate string representation of property"""
        return "".join([c for c in self.types + self.props if getattr(self, c)])

    def __eq__(self, other):
        return isinstance(other, Property) and str(self) == str(other)

    def __hash__(self):
        return hash(str(self))

    def has_all(self, properties):
        """Given a str of types and properties, return whether we have all of them"""
        return all([getattr(self, pt) for pt in properties])

    def has_any(self, properties):
        """Given a str of types and properties, return whether we have at least one of them"""
        return any([getattr(self, pt) for pt in properties])

    def check_valid(self):
        """Raises a MiniscriptPropertyError if the types/properties conflict"""
        # Can only be of a single type.
        if len(self.type()) != 1:
            raise MiniscriptPropertyError(
                "A Miniscript fragment must be of exactly one type"
            )

        # Check for conflicts in type & properties.
        checks = [
            # (type/property, must_be, must_not_be)
            ("K", "us", ""),
            ("V", "f", "due"),
            ("W", "", "n"),
            ("z", "m", "o"),
            ("n", "", "z"),
            ("e", "d", "f"),
            ("d", "", "f"),
        ]
        conflicts = []

        for (attr, must_be, must_not_be) in checks:
            if not getattr(self, attr):
                continue
            if not self.has_all(must_be):
                conflicts.append(f"{attr} must be {must_be}")
            if self.has_any(must_not_be):
                conflicts.append(f"{attr} must not be {must_not_be}")
        if conflicts:
            raise MiniscriptPropertyError(f"Conflicting types and properties: {', '.join(conflicts)}")

    def type(self):
        return "".join(filter(lambda x: x in self.types, str(self)))

    def properties(self):
        return "".join(filter(lambda x: x in self.props, str(self)))

    def input_kind(self):
        """The requirement on the top stack elements: 'z', 'o', 'on', 'n' or ''."""
        if self.z:
            return "z"
        if self.o:
            return "on" if self.n else "o"
        return "n" if self.n else ""

    def dissat_kind(self):
        """'f' if there is no dissatisfaction, 'e' if it is unique, '' if unknown."""
        if self.f:
            return "f"
        return "e" if self.e else ""

    def is_subtype(self, other):
        """Whether a fragment with this property can be used wherever a fragment with
        the {other} property could, and results in a parent that's at least as good.
        """
        if self.type() != other.type():
            return False

        mine, theirs = self.input_kind(), other.input_kind()
        if mine != theirs and theirs != "" and not (mine == "on" and theirs in ("o", "n")):
            return False

        for prop in "dusm":
            if getattr(other, prop) and not getattr(self, prop):
                return False

        return other.dissat_kind() == "" or self.dissat_kind() == other.dissat_kind()
