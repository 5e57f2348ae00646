"""
ring_signature.py
─────────────────
Linkable spontaneous anonymous group (LSAG) signatures on NIST P-256.

A voter signs as "one of the ring" and publishes a key image

    I = x · H_p(P, election_id)

which is the same for every signature made with ``x`` in that election and
unrelated across elections.  Two ballots carrying the same key image were
signed by the same key: the second one is a double vote.

Signing, with the signer at index s and H_p(·) the per-member hash point:

    L_s = α·G                 R_s = α·H_p(P_s)
    c_{i+1} = H(prefix, L_i, R_i)
    L_i = r_i·G + c_i·P_i     R_i = r_i·H_p(P_i) + c_i·I     (i ≠ s)
    r_s = α − c_s·x  (mod q)

A single-member signature is not anonymous.  It only exists as
DegradedSignature, which carries an audit reason, is logged on creation and
acceptance, and is refused unless the caller explicitly allows it.
"""
from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from random import SystemRandom
from typing import Optional

from Crypto.PublicKey import ECC

from config import RING_SIZE
from errors import CryptoParameterError

logger = logging.getLogger(__name__)
sysrand = SystemRandom()

# ───────────────────────────── curve constants ──────────────────────────
CURVE = "P-256"
P = 0xffffffff00000001000000000000000000000000ffffffffffffffffffffffff
A = P - 3
B = 0x5ac635d8aa3a93e7b3ebbd55769886bc651d06b0cc53b0f63bce3c3e27d2604b
ORDER = 0xffffffff00000000ffffffffffffffffbce6faada7179e84f3b9cac2fc632551
GX = 0x6b17d1f2e12c4247f8bce6e563a440f277037d812deb33a0f4a13945d898c296
GY = 0x4fe342e2fe1a7f9b8ee7eb4a7c0f9e162bce33576b315ececbb6406837bf51f5
G = ECC.EccPoint(GX, GY, curve=CURVE)

KEY_IMAGE_DOMAIN = b"ballot-key-image"
SIGNATURE_DOMAIN = b"ballot-ring-signature"


# ───────────────────────────── point helpers ────────────────────────────
def _lift_x(x: int, odd: bool) -> Optional[ECC.EccPoint]:
    """Return the curve point with abscissa x and the requested y parity."""
    rhs = (pow(x, 3, P) + A * x + B) % P
    y = pow(rhs, (P + 1) // 4, P)  # p ≡ 3 (mod 4)
    if y * y % P != rhs:
        return None
    if (y & 1) != odd:
        y = P - y
    return ECC.EccPoint(x, y, curve=CURVE)


def encode_point(point: ECC.EccPoint) -> str:
    """Compressed SEC1 hex."""
    if point.is_point_at_infinity():
        raise CryptoParameterError("cannot encode the point at infinity")
    x, y = int(point.x), int(point.y)
    return ("03" if y & 1 else "02") + f"{x:064x}"


def decode_point(value) -> ECC.EccPoint:
    if not isinstance(value, str) or len(value) != 66 or value[:2] not in ("02", "03"):
        raise CryptoParameterError("curve point must be 33-byte compressed hex")
    try:
        x = int(value[2:], 16)
    except ValueError as e:
        raise CryptoParameterError(f"curve point is not hex: {e}") from e
    point = _lift_x(x, value[:2] == "03") if x < P else None
    if point is None:
        raise CryptoParameterError("value is not a P-256 point")
    return point


def _point_bytes(point: ECC.EccPoint) -> bytes:
    if point.is_point_at_infinity():
        return b"\x00"
    return bytes.fromhex(encode_point(point))


def hash_to_point(public_key: ECC.EccPoint, election_id: str) -> ECC.EccPoint:
    """Try-and-increment map to a curve point nobody knows the log of."""
    counter = 0
    while True:
        digest = hashlib.sha256(b"|".join([
            KEY_IMAGE_DOMAIN, _point_bytes(public_key),
            election_id.encode(), str(counter).encode(),
        ])).digest()
        x = int.from_bytes(digest, "big")
        if x < P:
            point = _lift_x(x, odd=False)
            if point is not None:
                return point
        counter += 1


def _hash_to_scalar(*parts: bytes) -> int:
    return int.from_bytes(hashlib.sha256(b"|".join(parts)).digest(), "big") % ORDER


def _scalar(value: int) -> str:
    return f"{value:064x}"


def _parse_scalar(value) -> int:
    if not isinstance(value, str) or len(value) != 64:
        raise CryptoParameterError("scalar must be 32-byte hex")
    try:
        number = int(value, 16)
    except ValueError as e:
        raise CryptoParameterError(f"scalar is not hex: {e}") from e
    if number >= ORDER:
        raise CryptoParameterError("scalar outside the group order")
    return number


# ───────────────────────────── keys ─────────────────────────────────────
@dataclass
class VoterKeyPair:
    private_key: int = field(repr=False)
    public_key: ECC.EccPoint

    @property
    def public_hex(self) -> str:
        return encode_point(self.public_key)

    def key_image(self, election_id: str) -> ECC.EccPoint:
        return hash_to_point(self.public_key, election_id) * self.private_key


def generate_ecc_key_pair() -> VoterKeyPair:
    key = ECC.generate(curve=CURVE)
    return VoterKeyPair(int(key.d), key.pointQ)


# ───────────────────────────── signatures ───────────────────────────────
@dataclass
class RingSignature:
    election_id: str
    message_digest: str
    ring: list[str]
    key_image: str
    challenges: list[str]
    responses: list[str]

    mode = "ring"

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "electionId": self.election_id,
            "messageDigest": self.message_digest,
            "ring": list(self.ring),
            "keyImage": self.key_image,
            "challenges": list(self.challenges),
            "responses": list(self.responses),
        }

    @staticmethod
    def from_dict(data) -> "RingSignature":
        if not isinstance(data, dict):
            raise CryptoParameterError("ring signature must be an object")
        try:
            fields = dict(
                election_id=data["electionId"],
                message_digest=data["messageDigest"],
                ring=list(data["ring"]),
                key_image=data["keyImage"],
                challenges=list(data["challenges"]),
                responses=list(data["responses"]),
            )
        except (KeyError, TypeError) as e:
            raise CryptoParameterError(f"malformed ring signature: {e}") from e
        strings = [fields["election_id"], fields["message_digest"], fields["key_image"]]
        strings += fields["ring"] + fields["challenges"] + fields["responses"]
        if not all(isinstance(value, str) for value in strings):
            raise CryptoParameterError("ring signature fields must be strings")
        mode = data.get("mode", RingSignature.mode)
        if mode == RingSignature.mode:
            return RingSignature(**fields)
        if mode == DegradedSignature.mode:
            return DegradedSignature(audit_reason=str(data.get("auditReason", "")), **fields)
        raise CryptoParameterError(f"unknown signature mode {mode!r}")


@dataclass
class DegradedSignature(RingSignature):
    """One-member ring: proves key ownership but reveals the signer."""
    audit_reason: str = ""

    mode = "degraded"

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["auditReason"] = self.audit_reason
        return data


def _prefix(message_digest: str, election_id: str, ring_hex: list[str], key_image_hex: str) -> bytes:
    return hashlib.sha256(b"|".join(
        [SIGNATURE_DOMAIN, message_digest.encode(), election_id.encode(), key_image_hex.encode()]
        + [member.encode() for member in ring_hex]
    )).digest()


def _check_ring(ring_hex: list[str], minimum: int):
    if len(ring_hex) < minimum:
        raise CryptoParameterError(f"ring needs at least {minimum} members, got {len(ring_hex)}")
    if len(set(ring_hex)) != len(ring_hex):
        raise CryptoParameterError("ring contains duplicate public keys")


def _lsag_sign(message: bytes, keys: VoterKeyPair, ring: list[ECC.EccPoint],
               election_id: str) -> tuple[list[str], str, list[str], list[str]]:
    ring_hex = [encode_point(member) for member in ring]
    signer_hex = keys.public_hex
    if signer_hex not in ring_hex:
        raise CryptoParameterError("signer's public key is not in the ring")
    size, s = len(ring), ring_hex.index(signer_hex)

    hashed = [hash_to_point(member, election_id) for member in ring]
    key_image = hashed[s] * keys.private_key
    image_hex = encode_point(key_image)
    prefix = _prefix(hashlib.sha256(message).hexdigest(), election_id, ring_hex, image_hex)

    challenges, responses = [0] * size, [0] * size
    alpha = secrets.randbelow(ORDER - 1) + 1
    L, R = G * alpha, hashed[s] * alpha
    i = (s + 1) % size
    challenges[i] = _hash_to_scalar(prefix, _point_bytes(L), _point_bytes(R))
    while i != s:
        responses[i] = secrets.randbelow(ORDER)
        L = G * responses[i] + ring[i] * challenges[i]
        R = hashed[i] * responses[i] + key_image * challenges[i]
        nxt = (i + 1) % size
        challenges[nxt] = _hash_to_scalar(prefix, _point_bytes(L), _point_bytes(R))
        i = nxt
    responses[s] = (alpha - challenges[s] * keys.private_key) % ORDER

    return ring_hex, image_hex, [_scalar(c) for c in challenges], [_scalar(r) for r in responses]


def generate_signature(message: bytes, keys: VoterKeyPair, ring: list[ECC.EccPoint],
                       election_id: str) -> RingSignature:
    _check_ring([encode_point(member) for member in ring], 2)
    ring_hex, image, challenges, responses = _lsag_sign(message, keys, ring, election_id)
    return RingSignature(election_id, hashlib.sha256(message).hexdigest(),
                         ring_hex, image, challenges, responses)


def generate_degraded_signature(message: bytes, keys: VoterKeyPair, election_id: str,
                                reason: str) -> DegradedSignature:
    if not reason:
        raise CryptoParameterError("a degraded signature needs an audit reason")
    ring_hex, image, challenges, responses = _lsag_sign(message, keys, [keys.public_key], election_id)
    logger.warning(f"AUDIT degraded (non-anonymous) signature created for election "
                   f"{election_id}: {reason}")
    return DegradedSignature(election_id, hashlib.sha256(message).hexdigest(),
                             ring_hex, image, challenges, responses, audit_reason=reason)


def verify_signature(signature: RingSignature, message: Optional[bytes] = None,
                     allow_degraded: bool = False) -> bool:
    """
    Check the LSAG equations against exactly ``signature.ring``.

    Malformed fields raise CryptoParameterError; a signature that parses but
    does not verify returns False.
    """
    degraded = isinstance(signature, DegradedSignature)
    if degraded:
        if not allow_degraded:
            logger.warning(f"AUDIT degraded signature refused for election {signature.election_id}")
            return False
        if len(signature.ring) != 1:
            raise CryptoParameterError("degraded signatures carry exactly one key")
    else:
        _check_ring(signature.ring, 2)

    size = len(signature.ring)
    if len(signature.challenges) != size or len(signature.responses) != size:
        raise CryptoParameterError("ring signature length mismatch")
    if message is not None and hashlib.sha256(message).hexdigest() != signature.message_digest:
        return False

    ring = [decode_point(member) for member in signature.ring]
    key_image = decode_point(signature.key_image)
    challenges = [_parse_scalar(c) for c in signature.challenges]
    responses = [_parse_scalar(r) for r in signature.responses]
    prefix = _prefix(signature.message_digest, signature.election_id,
                     signature.ring, signature.key_image)

    for i in range(size):
        hashed = hash_to_point(ring[i], signature.election_id)
        L = G * responses[i] + ring[i] * challenges[i]
        R = hashed * responses[i] + key_image * challenges[i]
        if _hash_to_scalar(prefix, _point_bytes(L), _point_bytes(R)) != challenges[(i + 1) % size]:
            return False

    if degraded:
        logger.warning(f"AUDIT degraded signature accepted for election {signature.election_id}: "
                       f"{signature.audit_reason}")
    return True


# ───────────────────────────── rings & images ───────────────────────────
def select_ring(voter_id: str, size: int, registry) -> list[ECC.EccPoint]:
    """
    ``size - 1`` random decoys from the voter registry plus the signer, at a
    random position.  Missing members are padded with fresh synthetic keys
    whose private halves are thrown away.
    """
    if size < 2:
        raise CryptoParameterError("a ring needs at least two members")
    signer = registry.get(voter_id)
    others = [key for vid, key in registry.public_keys().items()
              if vid != voter_id and encode_point(key) != encode_point(signer)]

    decoys = sysrand.sample(others, min(size - 1, len(others)))
    missing = size - 1 - len(decoys)
    if missing:
        logger.warning(f"Voter pool too small for ring size {size}: "
                       f"padding with {missing} synthetic keys")
        decoys.extend(generate_ecc_key_pair().public_key for _ in range(missing))

    decoys.insert(sysrand.randrange(len(decoys) + 1), signer)
    return decoys


def is_key_image_used(key_image: str, election_id: str, chain) -> bool:
    """Ledger lookup: has a ballot with this key image already been published?"""
    for tx in chain.iter_transactions():
        if tx.get("electionId") != election_id:
            continue
        if tx.get("ringSignature", {}).get("keyImage") == key_image:
            return True
    return False
