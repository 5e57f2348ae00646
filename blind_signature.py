"""
RSA blind signatures for ballot authorization (Chaum).

    r, r_inv = generate_blinding_factor(pub)        # voter
    blinded  = blind(message_hash(msg), r, pub)     # voter → authority
    blind_sig = sign(blinded, priv)                 # authority, never sees msg
    sig      = unblind(blind_sig, r_inv, pub)       # voter
    verify(msg, sig, pub)                           # anyone

Textbook RSA on SHA-256 digests; keys come from pycryptodome.
"""
from __future__ import annotations

import logging
import math
import secrets

from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA

from config import BLIND_KEY_BITS, BLINDING_FACTOR_ATTEMPTS
from errors import BlindingError, BlindingFactorError, CryptoParameterError

logger = logging.getLogger(__name__)


# ───────────────────────────── keys ─────────────────────────────────────
def generate_signing_key(bits: int = BLIND_KEY_BITS) -> RSA.RsaKey:
    return RSA.generate(bits)


def export_public_key(key: RSA.RsaKey) -> str:
    return key.publickey().export_key().decode()


def load_public_key(pem: str) -> RSA.RsaKey:
    try:
        return RSA.import_key(pem)
    except (ValueError, IndexError, TypeError) as e:
        raise CryptoParameterError(f"malformed RSA public key: {e}") from e


# ───────────────────────────── voter side ───────────────────────────────
def message_hash(message: bytes) -> int:
    return int.from_bytes(SHA256.new(message).digest(), "big")


def generate_blinding_factor(public_key: RSA.RsaKey,
                             attempts: int = BLINDING_FACTOR_ATTEMPTS) -> tuple[int, int]:
    """Return (r, r⁻¹ mod n) for a fresh r coprime to n."""
    n = public_key.n
    for _ in range(attempts):
        r = secrets.randbelow(n)
        if r > 1 and math.gcd(r, n) == 1:
            return r, pow(r, -1, n)
    raise BlindingFactorError(f"no blinding factor coprime to n after {attempts} attempts")


def blind(h: int, r: int, public_key: RSA.RsaKey) -> int:
    n, e = public_key.n, public_key.e
    return (h % n) * pow(r, e, n) % n


def unblind(blind_signature: int, r_inv: int, public_key: RSA.RsaKey) -> int:
    n = public_key.n
    return blind_signature * r_inv % n


# ───────────────────────────── authority side ───────────────────────────
def sign(blinded: int, private_key: RSA.RsaKey) -> int:
    """blinded^d mod n; the authority learns nothing about the message."""
    if not private_key.has_private():
        raise BlindingError("blind signing needs the private key")
    n = private_key.n
    if not 0 < blinded < n:
        raise BlindingError("blinded value outside (0, n)")
    return pow(blinded, private_key.d, n)


# ───────────────────────────── verification ─────────────────────────────
def verify(message: bytes, signature: int, public_key: RSA.RsaKey) -> bool:
    n, e = public_key.n, public_key.e
    if not 0 < signature < n:
        return False
    return pow(signature, e, n) == message_hash(message) % n


def parse_signature(value) -> int:
    """Signatures and blinded values travel as decimal strings."""
    if not isinstance(value, str) or not value.isdigit():
        raise CryptoParameterError("signature must be a decimal string")
    return int(value)
