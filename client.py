"""
Voter Client - builds and submits encrypted, authorized, ring-signed ballots.

    client  = VoterClient(node_url)
    receipt = client.vote(voter_id, keys, election_id, "Alice")

Step by step:
    1. fetch the election's public keys
    2. encrypt the candidate digit and prove the ciphertext is well formed
    3. blind the authorization message and have the authority sign it
    4. unblind, ring-sign the ballot, submit it to the node
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import requests

import blind_signature
import homomorphic
from ballot import Ballot, authorization_message
from ballot_proof import generate_ballot_proof
from config import API_PREFIX, PEER_TIMEOUT, RING_SIZE
from election import Election, VoterKeyRegistry
from errors import BlindingError, VotingError
from ring_signature import (VoterKeyPair, generate_degraded_signature, generate_signature,
                            select_ring)

logger = logging.getLogger(__name__)


class ClientError(VotingError):
    """The node refused a request; ``status_code`` is the HTTP status."""

    def __init__(self, message, status_code):
        super().__init__(message, public_message=message)
        self.status_code = status_code


@dataclass
class BallotDraft:
    """Everything the voter keeps secret between authorization and casting."""
    election: Election
    position: int
    encrypted_choice: str
    validity_proof: dict
    blinded: int
    r_inv: int = field(repr=False)


def prepare_ballot(election: Election, position: int) -> BallotDraft:
    """Encrypt the vote for ``position`` (1-based) and blind its authorization."""
    pk = election.public_key
    r = homomorphic.random_coprime(pk.n)
    encoded = homomorphic.encode_vote(position, election.total_candidates, election.max_votes)
    ciphertext = homomorphic.encrypt(encoded, pk, r)
    proof = generate_ballot_proof(pk, ciphertext, position, r, election.total_candidates,
                                  election.election_id, election.max_votes)
    encrypted_choice = str(homomorphic.ciphertext_int(ciphertext))

    message = authorization_message(election.election_id, encrypted_choice)
    blinding, r_inv = blind_signature.generate_blinding_factor(election.authorization_key)
    blinded = blind_signature.blind(blind_signature.message_hash(message), blinding,
                                    election.authorization_key)
    return BallotDraft(election, position, encrypted_choice, proof, blinded, r_inv)


def finish_ballot(draft: BallotDraft, blind_sig: int, keys: VoterKeyPair, ring: list,
                  degraded_reason: Optional[str] = None) -> Ballot:
    """Unblind the authority's signature and ring-sign the completed ballot."""
    election = draft.election
    authorization = blind_signature.unblind(blind_sig, draft.r_inv, election.authorization_key)
    ballot = Ballot(
        election_id=election.election_id,
        encrypted_choice=draft.encrypted_choice,
        validity_proof=draft.validity_proof,
        blind_authorization=str(authorization),
    )
    if not blind_signature.verify(ballot.authorization_message(), authorization,
                                  election.authorization_key):
        raise BlindingError("authority returned an invalid blind signature")

    if degraded_reason is not None:
        ballot.ring_signature = generate_degraded_signature(
            ballot.signing_message(), keys, election.election_id, degraded_reason)
    else:
        ballot.ring_signature = generate_signature(
            ballot.signing_message(), keys, ring, election.election_id)
    return ballot


class VoterClient:
    def __init__(self, node_url: str, session=None, timeout: float = PEER_TIMEOUT):
        self.base_url = f"{node_url.rstrip('/')}{API_PREFIX}"
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def _call(self, method: str, path: str, json=None) -> dict:
        response = self.session.request(method, f"{self.base_url}/{path}", json=json,
                                        timeout=self.timeout)
        body = response.json()
        if response.status_code != 200:
            raise ClientError(body.get("error", f"HTTP {response.status_code}"), response.status_code)
        return body

    def register_voter(self, voter_id: str, keys: VoterKeyPair):
        self._call("POST", "voters", {"voterId": voter_id, "publicKey": keys.public_hex})

    def fetch_election(self, election_id: str) -> Election:
        return Election.from_dict(self._call("GET", f"elections/{election_id}"))

    def fetch_voter_registry(self) -> VoterKeyRegistry:
        registry = VoterKeyRegistry()
        for voter_id, public_key in self._call("GET", "voters")["voters"].items():
            registry.register(voter_id, public_key)
        return registry

    def request_authorization(self, voter_id: str, draft: BallotDraft) -> int:
        body = self._call("POST", f"elections/{draft.election.election_id}/authorize",
                          {"voterId": voter_id, "blinded": str(draft.blinded)})
        return blind_signature.parse_signature(body["blindSignature"])

    def submit(self, ballot: Ballot) -> dict:
        return self._call("POST", "blockchain/transaction", {"transaction": ballot.to_dict()})["receipt"]

    def vote(self, voter_id: str, keys: VoterKeyPair, election_id: str, candidate: str,
             ring_size: int = RING_SIZE) -> dict:
        election = self.fetch_election(election_id)
        draft = prepare_ballot(election, election.position_of(candidate))
        blind_sig = self.request_authorization(voter_id, draft)
        ring = select_ring(voter_id, ring_size, self.fetch_voter_registry())
        ballot = finish_ballot(draft, blind_sig, keys, ring)
        receipt = self.submit(ballot)
        logger.info(f"✅ Ballot accepted for {voter_id} ({receipt['ballotHash'][:16]}…)")
        return receipt
