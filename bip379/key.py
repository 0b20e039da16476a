from __future__ import annotations

from typing import Union

import coincurve
from bip32 import BIP32

from bip379.utils.hashes import hash160


class MiniscriptKeyError(ValueError):
    def __init__(self, message: str):
        self.message: str = message

    def __str__(self) -> str:
        return self.message


class MiniscriptKey:
    """A public key checked by a Miniscript fragment.

    May be a raw compressed public key, or an extended public key in which case
    the key checked by Script is the extended key's own public key. Deriving
    child keys is left to the caller.
    """

    key: Union[coincurve.PublicKey, BIP32]

    def __init__(self, key: Union[bytes, str, coincurve.PublicKey, BIP32, MiniscriptKey]):
        if isinstance(key, MiniscriptKey):
            self.key = key.key

        elif isinstance(key, (coincurve.PublicKey, BIP32)):
            self.key = key

        elif isinstance(key, bytes):
            if len(key) != 33:
                raise MiniscriptKeyError("Only compressed keys are supported")
            try:
                self.key = coincurve.PublicKey(key)
            except ValueError as e:
                raise MiniscriptKeyError(f"Public key parsing error: '{str(e)}'")

        elif isinstance(key, str):
            # Is it a raw key?
            if len(key) == 66:
                try:
                    self.key = coincurve.PublicKey(bytes.fromhex(key))
                except ValueError as e:
                    raise MiniscriptKeyError(f"Public key parsing error: '{str(e)}'")
            # If not it must be an xpub.
            else:
                try:
                    self.key = BIP32.from_xpub(key)
                except ValueError as e:
                    raise MiniscriptKeyError(f"Xpub parsing error: '{str(e)}'")

        else:
            raise MiniscriptKeyError(
                "Invalid parameter type: expecting bytes, hex str, xpub or BIP32 instance."
            )

    def __repr__(self) -> str:
        if isinstance(self.key, BIP32):
            return self.key.get_xpub()
        return self.key.format().hex()

    def __eq__(self, other) -> bool:
        return isinstance(other, MiniscriptKey) and self.bytes() == other.bytes()

    def __hash__(self) -> int:
        return hash(self.bytes())

    def bytes(self) -> bytes:
        if isinstance(self.key, coincurve.PublicKey):
            return self.key.format()
        return self.key.pubkey

    def hash160(self) -> bytes:
        return hash160(self.bytes())
