"""
Check Miniscript witnesses against libbitcoinconsensus.

The Script is used as the witness script of a P2WSH output, spent by a dummy
transaction whose nSequence and nLockTime are set for the timelocks to check.
Signatures must be made for this same transaction, see sign().
"""

from bitcointx.core import (
    CMutableTxIn,
    CMutableTxOut,
    CMutableTransaction,
    COutPoint,
)
from bitcointx.core.bitcoinconsensus import (
    ConsensusVerifyScript,
    BITCOINCONSENSUS_ACCEPTED_FLAGS,
)
from bitcointx.core.script import (
    CScript as CScriptBitcoinTx,
    CScriptWitness,
    RawBitcoinSignatureHash,
    SIGVERSION_WITNESS_V0,
)
from bitcointx.core.scripteval import VerifyScriptError

from bip379.utils.hashes import sha256


AMOUNT = 10_000
TXID = bytes.fromhex("652c60ec08280356e8c78be9bf4d44276acef3189ba8223e426b757aeabd66ad")
# Not final, so nLockTime is enforced, but with the relative lock time disabled.
NO_RELATIVE_LOCK_TIME = 0xFFFFFFFE


def p2wsh(script):
    return CScriptBitcoinTx([0, sha256(bytes(script))])


def spending_tx(script, sequence=None, lock_time=None):
    txin = CMutableTxIn(
        COutPoint(TXID, 0),
        nSequence=NO_RELATIVE_LOCK_TIME if sequence is None else sequence,
    )
    txout = CMutableTxOut(AMOUNT - 1_000, p2wsh(script))
    # Version 2 for CHECKSEQUENCEVERIFY
    return CMutableTransaction([txin], [txout], nLockTime=lock_time or 0, nVersion=2)


def sign(privkey, script, sequence=None, lock_time=None):
    """Sign the spending transaction with a coincurve.PrivateKey."""
    sighash = RawBitcoinSignatureHash(
        script=CScriptBitcoinTx(bytes(script)),
        txTo=spending_tx(script, sequence, lock_time),
        inIdx=0,
        hashtype=1,  # SIGHASH_ALL
        amount=AMOUNT,
        sigversion=SIGVERSION_WITNESS_V0,
    )[0]
    return privkey.sign(sighash, hasher=None) + b"\x01"  # SIGHASH_ALL


def verify_witness(script, witness, sequence=None, lock_time=None):
    """Whether this witness spends the P2WSH output of this Script."""
    tx = spending_tx(script, sequence, lock_time)
    try:
        ConsensusVerifyScript(
            scriptSig=tx.vin[0].scriptSig,
            scriptPubKey=p2wsh(script),
            txTo=tx,
            inIdx=0,
            amount=AMOUNT,
            witness=CScriptWitness(list(witness) + [bytes(script)]),
            flags=BITCOINCONSENSUS_ACCEPTED_FLAGS,
        )
    except VerifyScriptError:
        return False
    return True
