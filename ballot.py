"""
The one ballot shape that travels through the mixnet and onto the chain.

    {
      "kind": "encrypted-ballot",
      "electionId": …,
      "encryptedChoice": "<Paillier ciphertext, decimal>",
      "validityProof": {a, e, z},
      "blindAuthorization": "<unblinded RSA signature, decimal>",
      "ringSignature": {mode, keyImage, ring, challenges, responses, …},
      "timestamp": "<UTC, truncated to the hour>"
    }

There is no plaintext choice field, and from_dict refuses any field not
listed above.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from errors import CryptoParameterError
from ledger import canonical_json
from ring_signature import RingSignature

BALLOT_KIND = "encrypted-ballot"
BALLOT_FIELDS = {"kind", "electionId", "encryptedChoice", "validityProof",
                 "blindAuthorization", "ringSignature", "timestamp"}


def hour_timestamp() -> str:
    # coarse timestamps so publication time says little about cast time
    now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
    return now.strftime("%Y-%m-%dT%H:00:00Z")


def authorization_message(election_id: str, encrypted_choice: str) -> bytes:
    """What the blind signature certifies: this ciphertext, in this election."""
    return canonical_json({"electionId": election_id, "encryptedChoice": encrypted_choice}).encode()


@dataclass
class Ballot:
    election_id: str
    encrypted_choice: str
    validity_proof: dict
    blind_authorization: str
    ring_signature: Optional[RingSignature] = None
    timestamp: str = field(default_factory=hour_timestamp)

    kind = BALLOT_KIND

    def authorization_message(self) -> bytes:
        return authorization_message(self.election_id, self.encrypted_choice)

    def body(self) -> dict:
        return {
            "kind": self.kind,
            "electionId": self.election_id,
            "encryptedChoice": self.encrypted_choice,
            "validityProof": self.validity_proof,
            "blindAuthorization": self.blind_authorization,
            "timestamp": self.timestamp,
        }

    def signing_message(self) -> bytes:
        """Everything except the ring signature itself."""
        return canonical_json(self.body()).encode()

    @property
    def key_image(self) -> Optional[str]:
        return self.ring_signature.key_image if self.ring_signature else None

    def to_dict(self) -> dict:
        data = self.body()
        data["ringSignature"] = self.ring_signature.to_dict() if self.ring_signature else None
        return data

    @property
    def ballot_hash(self) -> str:
        return hashlib.sha256(canonical_json(self.to_dict()).encode()).hexdigest()

    @staticmethod
    def from_dict(data) -> "Ballot":
        if not isinstance(data, dict):
            raise CryptoParameterError("ballot must be an object")
        if data.get("kind") != BALLOT_KIND:
            raise CryptoParameterError(f"unsupported ballot kind {data.get('kind')!r}")
        unknown = set(data) - BALLOT_FIELDS
        if unknown:
            raise CryptoParameterError(f"unexpected ballot fields: {sorted(unknown)}")
        missing = BALLOT_FIELDS - set(data)
        if missing:
            raise CryptoParameterError(f"missing ballot fields: {sorted(missing)}")
        for name in ("electionId", "encryptedChoice", "blindAuthorization", "timestamp"):
            if not isinstance(data[name], str):
                raise CryptoParameterError(f"ballot field {name!r} must be a string")
        return Ballot(
            election_id=data["electionId"],
            encrypted_choice=data["encryptedChoice"],
            validity_proof=data["validityProof"],
            blind_authorization=data["blindAuthorization"],
            ring_signature=RingSignature.from_dict(data["ringSignature"]),
            timestamp=data["timestamp"],
        )

    def receipt(self) -> dict:
        return {
            "electionId": self.election_id,
            "ballotHash": self.ballot_hash,
            "timestamp": self.timestamp,
        }
