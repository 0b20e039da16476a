"""
All the exceptions raised when dealing with Miniscript.
"""


class MiniscriptNodeCreationError(ValueError):
    def __init__(self, message: str):
        self.message: str = message

    def __str__(self):
        return self.message


class MiniscriptPropertyError(ValueError):
    def __init__(self, message: str):
        self.message: str = message

    def __str__(self):
        return self.message


class MiniscriptTypeError(ValueError):
    """A fragment was given sub-fragments it can't be composed with.

    {fragment} is a description of the offending node (its name and the type of
    its sub-fragments).
    """

    def __init__(self, message: str, fragment: str = ""):
        self.message: str = message
        self.fragment: str = fragment

    def __str__(self):
        if self.fragment:
            return f"{self.message} (in '{self.fragment}')"
        return self.message


class MiniscriptMalformed(ValueError):
    """Miniscript could not be parsed from its Script or string representation.

    {position} is the index of the offending opcode when decoding Script, or the
    offset in the string when parsing text. None when it can't be pinpointed.
    """

    def __init__(self, message: str, position: int = None):
        self.message: str = message
        self.position = position

    def __str__(self):
        if self.position is not None:
            return f"{self.message} (at position {self.position})"
        return self.message
