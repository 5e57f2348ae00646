"""
homomorphic.py
──────────────
Paillier layer for per-candidate vote counting.

A ballot for candidate ``k`` (1-based) out of ``K`` encrypts the single digit
``B^(k-1)`` of a base-``B`` number.  Multiplying ciphertexts mod n² adds the
plaintexts, so the product of all ballots of an election decrypts to a number
whose base-``B`` digits are the per-candidate counts:

    Σ encode_vote(p_i, K) = c_1·B^0 + c_2·B^1 + … + c_K·B^(K-1)

``B`` is the smallest power of two strictly greater than ``max_votes``, so a
digit can hold at most ``N_max = B - 1`` votes before it carries into its
neighbour.  No tally may ever be decoded when more than ``max_votes`` ballots
were summed; ``decode_vote_tally`` enforces it by checking the digit sum.

Threshold mode follows Shoup/Damgård–Jurik: the decryption exponent
``d = λ·(λ⁻¹ mod n)`` is Shamir-shared over the integers mod ``n·λ``, each
holder publishes ``c^{s_i} mod n²`` and any ``t`` partials are combined with
integer Lagrange coefficients scaled by ``Δ = l!``.
"""
from __future__ import annotations

import logging
import math
import secrets
from dataclasses import dataclass
from typing import Iterable, Optional

from phe import paillier
from phe.util import getprimeover, invert

from config import MAX_VOTES_PER_CANDIDATE, PAILLIER_KEY_BITS, PRIME_GENERATION_ATTEMPTS
from errors import CryptoParameterError, DecodeOverflowError, KeyGenerationError

logger = logging.getLogger(__name__)


# ───────────────────────────── key material ─────────────────────────────
@dataclass
class PaillierKeyPair:
    public_key: paillier.PaillierPublicKey
    private_key: Optional[paillier.PaillierPrivateKey]

    @property
    def retired(self) -> bool:
        return self.private_key is None

    def retire(self):
        """Drop the private half once the final tally has been decrypted."""
        self.private_key = None


def generate_key_pair(bits: int = PAILLIER_KEY_BITS,
                      attempts: int = PRIME_GENERATION_ATTEMPTS) -> PaillierKeyPair:
    """
    Draw p, q of bits/2 each and build a g = n + 1 Paillier key.

    Candidates are discarded when p == q or gcd(n, (p-1)(q-1)) != 1; after
    ``attempts`` discarded pairs we give up with KeyGenerationError.
    """
    if bits < 64:
        raise KeyGenerationError(f"refusing to build a {bits}-bit Paillier modulus")

    for attempt in range(1, attempts + 1):
        p = getprimeover(bits // 2)
        q = getprimeover(bits // 2)
        if p == q:
            logger.debug(f"Paillier keygen attempt {attempt}: p == q, retrying")
            continue
        n = p * q
        if math.gcd(n, (p - 1) * (q - 1)) != 1:
            logger.debug(f"Paillier keygen attempt {attempt}: gcd(n, φ) != 1, retrying")
            continue
        public_key = paillier.PaillierPublicKey(n)
        private_key = paillier.PaillierPrivateKey(public_key, p, q)
        logger.info(f"Generated {n.bit_length()}-bit Paillier key pair")
        return PaillierKeyPair(public_key, private_key)

    raise KeyGenerationError(f"no usable prime pair after {attempts} attempts")


def carmichael_lambda(private_key: paillier.PaillierPrivateKey) -> int:
    p, q = private_key.p, private_key.q
    return (p - 1) * (q - 1) // math.gcd(p - 1, q - 1)


def random_coprime(n: int) -> int:
    while True:
        r = secrets.randbelow(n)
        if 1 < r < n and math.gcd(r, n) == 1:
            return r


def public_key_to_dict(public_key: paillier.PaillierPublicKey) -> dict:
    return {"n": str(public_key.n)}


def public_key_from_dict(data: dict) -> paillier.PaillierPublicKey:
    try:
        n = int(data["n"])
    except (KeyError, TypeError, ValueError) as e:
        raise CryptoParameterError(f"malformed Paillier public key: {e}") from e
    if n < 3:
        raise CryptoParameterError("Paillier modulus too small")
    return paillier.PaillierPublicKey(n)


# ───────────────────────────── vote encoding ────────────────────────────
def vote_base(max_votes: int = MAX_VOTES_PER_CANDIDATE) -> int:
    """Smallest power of two strictly greater than ``max_votes``."""
    if max_votes < 1:
        raise CryptoParameterError("max_votes must be positive")
    return 1 << max_votes.bit_length()


def check_encoding_capacity(public_key: paillier.PaillierPublicKey,
                            total_candidates: int,
                            max_votes: int = MAX_VOTES_PER_CANDIDATE):
    """The full digit-packed range B^K - 1 has to fit below n."""
    if total_candidates < 1:
        raise CryptoParameterError("an election needs at least one candidate")
    if vote_base(max_votes) ** total_candidates >= public_key.n:
        raise CryptoParameterError(
            f"{total_candidates} candidates x {max_votes} votes do not fit "
            f"in a {public_key.n.bit_length()}-bit modulus")


def encode_vote(position: int, total_candidates: int,
                max_votes: int = MAX_VOTES_PER_CANDIDATE) -> int:
    if not 1 <= position <= total_candidates:
        raise CryptoParameterError(
            f"candidate position {position} outside 1..{total_candidates}")
    return vote_base(max_votes) ** (position - 1)


def decode_vote_tally(plaintext: int, total_candidates: int,
                      max_votes: int = MAX_VOTES_PER_CANDIDATE,
                      expected_total: Optional[int] = None) -> list[int]:
    """
    Unpack per-candidate counts, most significant digit last.

    Raises DecodeOverflowError when the plaintext does not fit K digits or
    the digits do not add up to the number of ballots that were summed.
    """
    base = vote_base(max_votes)
    if plaintext < 0 or plaintext >= base ** total_candidates:
        raise DecodeOverflowError(
            f"plaintext does not fit {total_candidates} base-{base} digits")

    counts = []
    remaining = plaintext
    for _ in range(total_candidates):
        remaining, digit = divmod(remaining, base)
        counts.append(digit)

    if expected_total is not None and sum(counts) != expected_total:
        raise DecodeOverflowError(
            f"decoded {sum(counts)} votes but {expected_total} ballots were summed")
    return counts


# ─────────────────────────── encryption & sums ──────────────────────────
def encrypt(m: int, public_key: paillier.PaillierPublicKey,
            r: Optional[int] = None) -> paillier.EncryptedNumber:
    if not 0 <= m < public_key.n:
        raise CryptoParameterError("plaintext outside [0, n)")
    ciphertext = public_key.raw_encrypt(m, r_value=r)
    return paillier.EncryptedNumber(public_key, ciphertext, 0)


def ciphertext_int(encrypted: paillier.EncryptedNumber) -> int:
    # be_secure=False: never re-randomise, proofs are bound to the exact value
    return encrypted.ciphertext(be_secure=False)


def parse_ciphertext(value, public_key: paillier.PaillierPublicKey) -> paillier.EncryptedNumber:
    """The one decoder for ciphertexts arriving as decimal strings."""
    if not isinstance(value, str) or not value.isdigit():
        raise CryptoParameterError("ciphertext must be a decimal string")
    c = int(value)
    if not 0 < c < public_key.nsquare or math.gcd(c, public_key.n) != 1:
        raise CryptoParameterError("ciphertext outside Z*_{n^2}")
    return paillier.EncryptedNumber(public_key, c, 0)


def add_encrypted(c1: paillier.EncryptedNumber, c2: paillier.EncryptedNumber,
                  public_key: paillier.PaillierPublicKey) -> paillier.EncryptedNumber:
    """c1 · c2 mod n², i.e. E(m1 + m2)."""
    if c1.public_key != public_key or c2.public_key != public_key:
        raise CryptoParameterError("ciphertexts were produced under a different key")
    return c1 + c2


def decrypt(c: paillier.EncryptedNumber, private_key: paillier.PaillierPrivateKey) -> int:
    if private_key is None:
        raise CryptoParameterError("private key has been retired")
    if c.public_key != private_key.public_key:
        raise CryptoParameterError("ciphertext was produced under a different key")
    return private_key.raw_decrypt(ciphertext_int(c))


class EncryptedTally:
    """Running homomorphic sum for one election; frozen after finalize()."""

    def __init__(self, election_id: str, public_key: paillier.PaillierPublicKey):
        self.election_id = election_id
        self.public_key = public_key
        self.ballot_count = 0
        self.finalized = False
        # c = 1 encrypts 0 with r = 1, the neutral element
        self._sum = paillier.EncryptedNumber(public_key, 1, 0)

    def add(self, ciphertext: paillier.EncryptedNumber):
        if self.finalized:
            raise CryptoParameterError(f"tally for {self.election_id} is already finalized")
        self._sum = add_encrypted(self._sum, ciphertext, self.public_key)
        self.ballot_count += 1

    def add_all(self, ciphertexts: Iterable[paillier.EncryptedNumber]):
        for ciphertext in ciphertexts:
            self.add(ciphertext)
        return self

    @property
    def ciphertext(self) -> paillier.EncryptedNumber:
        return self._sum

    def finalize(self) -> paillier.EncryptedNumber:
        self.finalized = True
        return self._sum

    def to_dict(self) -> dict:
        return {
            "electionId": self.election_id,
            "ciphertext": str(ciphertext_int(self._sum)),
            "ballotCount": self.ballot_count,
            "finalized": self.finalized,
        }


# ───────────────────────── threshold decryption ─────────────────────────
@dataclass(frozen=True)
class KeyShare:
    index: int
    value: int
    threshold: int
    share_count: int


@dataclass(frozen=True)
class PartialDecryption:
    index: int
    value: int


def generate_key_shares(private_key: paillier.PaillierPrivateKey,
                        share_count: int, threshold: int) -> list[KeyShare]:
    if not 1 <= threshold <= share_count:
        raise CryptoParameterError(f"invalid {threshold}-of-{share_count} sharing")

    n = private_key.public_key.n
    lam = carmichael_lambda(private_key)
    d = lam * invert(lam, n)  # d ≡ 0 (mod λ), d ≡ 1 (mod n)
    modulus = n * lam

    coefficients = [d] + [secrets.randbelow(modulus) for _ in range(threshold - 1)]
    shares = []
    for index in range(1, share_count + 1):
        value = 0
        for coefficient in reversed(coefficients):
            value = (value * index + coefficient) % modulus
        shares.append(KeyShare(index, value, threshold, share_count))
    logger.info(f"Split Paillier key into {threshold}-of-{share_count} shares")
    return shares


def partial_decrypt(c: paillier.EncryptedNumber, share: KeyShare) -> PartialDecryption:
    nsquare = c.public_key.nsquare
    return PartialDecryption(share.index, pow(ciphertext_int(c), share.value, nsquare))


def _lagrange_coefficient(index: int, indices: list[int], delta: int) -> int:
    numerator, denominator = delta, 1
    for j in indices:
        if j == index:
            continue
        numerator *= j
        denominator *= j - index
    # Δ = l! makes the quotient exact
    return numerator // denominator


def combine_partial_decryptions(partials: Iterable[PartialDecryption], threshold: int,
                                share_count: int,
                                public_key: paillier.PaillierPublicKey) -> int:
    unique = {}
    for partial in partials:
        if not 1 <= partial.index <= share_count:
            raise CryptoParameterError(f"share index {partial.index} out of range")
        unique.setdefault(partial.index, partial)
    if len(unique) < threshold:
        raise CryptoParameterError(
            f"need {threshold} partial decryptions, got {len(unique)}")

    chosen = sorted(unique.values(), key=lambda p: p.index)[:threshold]
    indices = [p.index for p in chosen]
    n, nsquare = public_key.n, public_key.nsquare
    delta = math.factorial(share_count)

    combined = 1
    for partial in chosen:
        mu = _lagrange_coefficient(partial.index, indices, delta)
        combined = combined * pow(partial.value, mu, nsquare) % nsquare

    if (combined - 1) % n != 0:
        raise CryptoParameterError("partial decryptions do not combine to a valid plaintext")
    return (combined - 1) // n * invert(delta, n) % n
