"""
ballot_proof.py
───────────────
Non-interactive OR-proof that a Paillier ciphertext encrypts **exactly one**
candidate digit ``B^k`` for some ``k < K`` (see homomorphic.encode_vote).

For every admissible value ``v_k`` set ``u_k = C · g^{-v_k} mod n²``.  The
prover knows ``r`` with ``u_real = r^n``; all other branches are simulated:

    real branch        a = s^n                         z = s · r^e
    simulated branch   a_j = z_j^n · u_j^{-e_j}         (e_j, z_j random)

The challenges must add up to the Fiat–Shamir hash of the transcript, which
binds the proof to the modulus, the ciphertext and the election id.

    proof  = generate_ballot_proof(pk, C, position, r, K, election_id)
    ok     = verify_ballot_proof(pk, C, proof, K, election_id)
"""
from __future__ import annotations

import hashlib
from random import SystemRandom

from phe import paillier

from config import CHALLENGE_BITS, MAX_VOTES_PER_CANDIDATE
from errors import CryptoParameterError
from homomorphic import ciphertext_int, random_coprime, vote_base

sysrand = SystemRandom()
MOD_MASK = (1 << CHALLENGE_BITS) - 1  # 2^t - 1


# ──────────────────────────── small helpers ─────────────────────────────
def candidate_values(total_candidates: int, max_votes: int = MAX_VOTES_PER_CANDIDATE) -> list[int]:
    base = vote_base(max_votes)
    return [base ** k for k in range(total_candidates)]


def _shifted(pk, C: int, values: list[int]) -> list[int]:
    """u_k = C · g^{-v_k} mod n² for every admissible v_k."""
    n2, g = pk.nsquare, pk.g
    return [(C * pow(g, -v, n2)) % n2 for v in values]


def _challenge(pk, C: int, election_id: str, commitments: list[int]) -> int:
    transcript = "|".join([str(pk.n), str(C), election_id] + [str(a) for a in commitments])
    return int(hashlib.sha256(transcript.encode()).hexdigest(), 16) & MOD_MASK


# ─────────────────────────────── prover ─────────────────────────────────
def generate_ballot_proof(pk: paillier.PaillierPublicKey, ciphertext: paillier.EncryptedNumber,
                          position: int, r: int, total_candidates: int, election_id: str,
                          max_votes: int = MAX_VOTES_PER_CANDIDATE) -> dict:
    """
    ``ciphertext`` must be E(B^(position-1)) built with randomness ``r``.
    Returns a JSON-ready dict of decimal strings.
    """
    if not 1 <= position <= total_candidates:
        raise CryptoParameterError(f"candidate position {position} outside 1..{total_candidates}")

    n, n2 = pk.n, pk.nsquare
    C = ciphertext_int(ciphertext)
    real = position - 1
    u = _shifted(pk, C, candidate_values(total_candidates, max_votes))

    a, e, z = [0] * total_candidates, [0] * total_candidates, [0] * total_candidates
    s_real = random_coprime(n)
    for k in range(total_candidates):
        if k == real:
            a[k] = pow(s_real, n, n2)
        else:
            e[k] = sysrand.getrandbits(CHALLENGE_BITS)
            z[k] = random_coprime(n)
            a[k] = (pow(z[k], n, n2) * pow(u[k], -e[k], n2)) % n2

    challenge = _challenge(pk, C, election_id, a)
    e[real] = (challenge - sum(e)) & MOD_MASK
    z[real] = (s_real * pow(r, e[real], n)) % n

    return {
        "a": [str(v) for v in a],
        "e": [str(v) for v in e],
        "z": [str(v) for v in z],
    }


# ─────────────────────────────── verifier ───────────────────────────────
def parse_ballot_proof(proof, total_candidates: int) -> tuple[list[int], list[int], list[int]]:
    if not isinstance(proof, dict):
        raise CryptoParameterError("validity proof must be an object")
    fields = []
    for name in ("a", "e", "z"):
        values = proof.get(name)
        if not isinstance(values, list) or len(values) != total_candidates:
            raise CryptoParameterError(f"validity proof field {name!r} has the wrong shape")
        if not all(isinstance(v, str) and v.isdigit() for v in values):
            raise CryptoParameterError(f"validity proof field {name!r} is not decimal")
        fields.append([int(v) for v in values])
    return fields[0], fields[1], fields[2]


def verify_ballot_proof(pk: paillier.PaillierPublicKey, ciphertext: paillier.EncryptedNumber,
                        proof: dict, total_candidates: int, election_id: str,
                        max_votes: int = MAX_VOTES_PER_CANDIDATE) -> bool:
    """
    Rejects any ciphertext that does not encrypt one of B^0 … B^(K-1).
    Malformed proofs raise CryptoParameterError, wrong ones return False.
    """
    a, e, z = parse_ballot_proof(proof, total_candidates)
    n, n2 = pk.n, pk.nsquare
    C = ciphertext_int(ciphertext)

    # ① Fiat–Shamir challenge must match
    if (sum(e) & MOD_MASK) != _challenge(pk, C, election_id, a):
        return False

    # ② every branch equation must hold
    u = _shifted(pk, C, candidate_values(total_candidates, max_votes))
    for k in range(total_candidates):
        if not 0 < a[k] < n2 or not 0 < z[k] < n:
            return False
        if pow(z[k], n, n2) != (a[k] * pow(u[k], e[k], n2)) % n2:
            return False
    return True
