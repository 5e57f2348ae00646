"""
Election context the voting core looks things up in.

- ElectionRegistry: electionId → Election (ordered candidates, public keys)
- VoterKeyRegistry: voter id → ring-signature public key
- ElectionKeyring: per-election secrets (Paillier private key, blind-signing
  key). Only VotingService's signing and tally paths reach into it.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from Crypto.PublicKey import RSA
from phe import paillier

import blind_signature
import homomorphic
from config import BLIND_KEY_BITS, MAX_VOTES_PER_CANDIDATE, PAILLIER_KEY_BITS
from errors import CryptoParameterError, UnknownElection
from ring_signature import decode_point, encode_point

logger = logging.getLogger(__name__)


@dataclass
class Election:
    election_id: str
    candidates: list[str]
    public_key: paillier.PaillierPublicKey
    authorization_key: RSA.RsaKey
    max_votes: int = MAX_VOTES_PER_CANDIDATE
    threshold: Optional[int] = None
    share_count: Optional[int] = None

    @property
    def total_candidates(self) -> int:
        return len(self.candidates)

    @property
    def threshold_mode(self) -> bool:
        return self.threshold is not None

    def position_of(self, candidate: str) -> int:
        try:
            return self.candidates.index(candidate) + 1
        except ValueError:
            raise CryptoParameterError(f"{candidate!r} is not a candidate in {self.election_id}") from None

    def results(self, counts: list[int]) -> dict:
        return dict(zip(self.candidates, counts))

    def to_dict(self) -> dict:
        return {
            "electionId": self.election_id,
            "candidates": list(self.candidates),
            "maxVotes": self.max_votes,
            "publicKey": homomorphic.public_key_to_dict(self.public_key),
            "authorizationKey": blind_signature.export_public_key(self.authorization_key),
            "threshold": self.threshold,
            "shareCount": self.share_count,
        }

    @staticmethod
    def from_dict(data: dict) -> "Election":
        try:
            return Election(
                election_id=data["electionId"],
                candidates=list(data["candidates"]),
                public_key=homomorphic.public_key_from_dict(data["publicKey"]),
                authorization_key=blind_signature.load_public_key(data["authorizationKey"]),
                max_votes=int(data.get("maxVotes", MAX_VOTES_PER_CANDIDATE)),
                threshold=data.get("threshold"),
                share_count=data.get("shareCount"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CryptoParameterError(f"malformed election description: {e}") from e


class ElectionRegistry:
    def __init__(self):
        self._elections: dict[str, Election] = {}
        self._lock = threading.Lock()

    def add(self, election: Election):
        with self._lock:
            self._elections[election.election_id] = election

    def get(self, election_id: str) -> Election:
        with self._lock:
            election = self._elections.get(election_id)
        if election is None:
            raise UnknownElection(f"unknown election {election_id!r}")
        return election

    def __contains__(self, election_id):
        with self._lock:
            return election_id in self._elections

    def elections(self) -> list[Election]:
        with self._lock:
            return list(self._elections.values())


class VoterKeyRegistry:
    def __init__(self):
        self._keys: dict[str, str] = {}  # voter id -> compressed point hex
        self._lock = threading.Lock()

    def register(self, voter_id: str, public_key):
        encoded = public_key if isinstance(public_key, str) else encode_point(public_key)
        decode_point(encoded)
        with self._lock:
            self._keys[voter_id] = encoded
        logger.info(f"Registered ring key for voter {voter_id}")

    def is_registered(self, voter_id: str) -> bool:
        with self._lock:
            return voter_id in self._keys

    def get(self, voter_id: str):
        with self._lock:
            encoded = self._keys.get(voter_id)
        if encoded is None:
            raise CryptoParameterError(f"voter {voter_id!r} has no registered key")
        return decode_point(encoded)

    def public_keys(self) -> dict:
        with self._lock:
            keys = dict(self._keys)
        return {voter_id: decode_point(encoded) for voter_id, encoded in keys.items()}

    def to_dict(self) -> dict:
        with self._lock:
            return dict(self._keys)


@dataclass
class _ElectionSecrets:
    paillier_keys: homomorphic.PaillierKeyPair
    signing_key: RSA.RsaKey = field(repr=False)


class ElectionKeyring:
    """Per-election private material. Nothing here is ever serialised."""

    def __init__(self):
        self._secrets: dict[str, _ElectionSecrets] = {}
        self._lock = threading.Lock()

    def store(self, election_id: str, paillier_keys: homomorphic.PaillierKeyPair,
              signing_key: RSA.RsaKey):
        with self._lock:
            self._secrets[election_id] = _ElectionSecrets(paillier_keys, signing_key)

    def _get(self, election_id: str) -> _ElectionSecrets:
        with self._lock:
            found = self._secrets.get(election_id)
        if found is None:
            raise UnknownElection(f"no key material for election {election_id!r}")
        return found

    def signing_key(self, election_id: str) -> RSA.RsaKey:
        return self._get(election_id).signing_key

    def paillier_private_key(self, election_id: str) -> paillier.PaillierPrivateKey:
        keys = self._get(election_id).paillier_keys
        if keys.retired:
            raise CryptoParameterError(f"Paillier private key for {election_id} is not available")
        return keys.private_key

    def retire(self, election_id: str):
        self._get(election_id).paillier_keys.retire()
        logger.info(f"Retired Paillier private key for election {election_id}")


def initialize_election(election_id: str, candidates: list[str], registry: ElectionRegistry,
                        keyring: ElectionKeyring, key_bits: int = PAILLIER_KEY_BITS,
                        blind_key_bits: int = BLIND_KEY_BITS,
                        max_votes: int = MAX_VOTES_PER_CANDIDATE,
                        share_count: Optional[int] = None, threshold: Optional[int] = None):
    """
    Generate the election's Paillier and blind-signing keys.

    With ``share_count``/``threshold`` the Paillier key is split into key
    shares and the private key is retired at once; the shares are returned
    for distribution and the tally can only be decrypted by combining them.
    Returns (election, shares or None).
    """
    if len(candidates) < 1 or len(set(candidates)) != len(candidates):
        raise CryptoParameterError("candidates must be a non-empty list of distinct names")
    if (share_count is None) != (threshold is None):
        raise CryptoParameterError("share_count and threshold go together")

    paillier_keys = homomorphic.generate_key_pair(key_bits)
    homomorphic.check_encoding_capacity(paillier_keys.public_key, len(candidates), max_votes)
    signing_key = blind_signature.generate_signing_key(blind_key_bits)

    shares = None
    if share_count is not None:
        shares = homomorphic.generate_key_shares(paillier_keys.private_key, share_count, threshold)
        paillier_keys.retire()

    election = Election(election_id, list(candidates), paillier_keys.public_key,
                        signing_key.publickey(), max_votes, threshold, share_count)
    keyring.store(election_id, paillier_keys, signing_key)
    registry.add(election)
    logger.info(f"Initialized election {election_id} with {len(candidates)} candidates"
                f"{f' ({threshold}-of-{share_count} threshold)' if shares else ''}")
    return election, shares
