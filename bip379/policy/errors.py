"""
All the exceptions raised when dealing with spending policies.
"""


class PolicyError(ValueError):
    """Invalid policy values (threshold, weights, timelocks, digests)."""

    def __init__(self, message: str):
        self.message: str = message

    def __str__(self):
        return self.message


class PolicyParsingError(PolicyError):
    """Error while parsing a policy from its string representation.

    {span} is the (start, end) offsets of the offending token in the string.
    """

    def __init__(self, message: str, span: tuple = None):
        self.message: str = message
        self.span = span

    def __str__(self):
        if self.span is not None:
            return f"{self.message} (at {self.span[0]}:{self.span[1]})"
        return self.message


class PolicyCompilationError(ValueError):
    """No well-typed Miniscript with the required properties could be found for
    {policy} (the string representation of the policy)."""

    def __init__(self, message: str, policy: str = ""):
        self.message: str = message
        self.policy: str = policy

    def __str__(self):
        if self.policy:
            return f"{self.message}: '{self.policy}'"
        return self.message
