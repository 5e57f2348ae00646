"""
Voting service: the upward-facing core of a node.

    authorize_ballot   blind-sign one ballot authorization per voter and election
    cast_ballot        verify, reject double votes, hand to the mixnet → receipt
    get_election_votes ciphertexts published on the chain for an election
    tally              homomorphic sum, single decryption, digit decoding

Rejections raise VotingError subclasses.  Their ``public_message`` does not
say which cryptographic check failed; the detailed message is only logged.
"""
from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

import blind_signature
import homomorphic
from ballot import Ballot
from ballot_proof import verify_ballot_proof
from config import ALLOW_DEGRADED_SIGNATURES
from election import Election, ElectionKeyring, ElectionRegistry, VoterKeyRegistry
from errors import (BlindingError, CryptoParameterError, DecodeOverflowError, DoubleVoteDetected,
                    SignatureInvalid, VotingError)
from ledger import Chain
from mixnet import Mixnet
from ring_signature import is_key_image_used, verify_signature

logger = logging.getLogger(__name__)


class VotingService:
    def __init__(self, elections: ElectionRegistry, keyring: ElectionKeyring,
                 voters: VoterKeyRegistry, chain: Chain, mixnet: Mixnet,
                 allow_degraded: bool = ALLOW_DEGRADED_SIGNATURES):
        self.elections = elections
        self.keyring = keyring
        self.voters = voters
        self.chain = chain
        self.mixnet = mixnet
        self.allow_degraded = allow_degraded

        self._lock = threading.Lock()
        self._authorized: dict[str, set] = {}        # election -> voter ids
        self._key_images: dict[str, set] = {}        # election -> accepted, not yet on chain
        self._authorizations: dict[str, set] = {}    # election -> accepted blind authorizations
        self._results: dict[str, list[int]] = {}

    # ───── authorization ─────
    def authorize_ballot(self, voter_id: str, election_id: str, blinded: int) -> int:
        """Blind-sign the voter's authorization request. Once per voter per election."""
        self.elections.get(election_id)
        if not self.voters.is_registered(voter_id):
            raise SignatureInvalid(f"voter {voter_id!r} is not registered")

        with self._lock:
            issued = self._authorized.setdefault(election_id, set())
            if voter_id in issued:
                logger.warning(f"Second authorization request from {voter_id} in {election_id}")
                raise DoubleVoteDetected(f"voter {voter_id} already holds an authorization")
            issued.add(voter_id)

        try:
            signed = blind_signature.sign(blinded, self.keyring.signing_key(election_id))
        except BlindingError:
            with self._lock:
                self._authorized[election_id].discard(voter_id)
            raise
        logger.info(f"Issued blind authorization to {voter_id} for {election_id}")
        return signed

    # ───── verification ─────
    def verify_ballot(self, ballot: Ballot) -> Election:
        """Blind authorization, validity proof and ring signature; raises on failure."""
        election = self.elections.get(ballot.election_id)
        if ballot.ring_signature is None:
            raise SignatureInvalid("ballot carries no ring signature")
        if ballot.ring_signature.election_id != ballot.election_id:
            raise SignatureInvalid("ring signature was made for another election")

        ciphertext = homomorphic.parse_ciphertext(ballot.encrypted_choice, election.public_key)
        authorization = blind_signature.parse_signature(ballot.blind_authorization)
        if not blind_signature.verify(ballot.authorization_message(), authorization,
                                      election.authorization_key):
            raise SignatureInvalid("blind authorization does not verify")
        if not verify_ballot_proof(election.public_key, ciphertext, ballot.validity_proof,
                                   election.total_candidates, election.election_id,
                                   election.max_votes):
            raise SignatureInvalid("validity proof does not verify")
        if not verify_signature(ballot.ring_signature, ballot.signing_message(),
                                allow_degraded=self.allow_degraded):
            raise SignatureInvalid("ring signature does not verify")
        return election

    def _published(self, election_id: str) -> tuple[set, set]:
        images, authorizations = set(), set()
        for tx in self.chain.get_votes_by_election(election_id):
            images.add((tx.get("ringSignature") or {}).get("keyImage"))
            authorizations.add(tx.get("blindAuthorization"))
        return images, authorizations

    def check_double_vote(self, ballot: Ballot):
        if is_key_image_used(ballot.key_image, ballot.election_id, self.chain):
            raise DoubleVoteDetected(f"key image {ballot.key_image[:16]}… already on chain")
        _, authorizations = self._published(ballot.election_id)
        if ballot.blind_authorization in authorizations:
            raise DoubleVoteDetected("authorization already used on chain")
        if ballot.key_image in self._key_images.get(ballot.election_id, ()):
            raise DoubleVoteDetected(f"key image {ballot.key_image[:16]}… already accepted")
        if ballot.blind_authorization in self._authorizations.get(ballot.election_id, ()):
            raise DoubleVoteDetected("authorization already accepted")

    # ───── casting ─────
    def cast_ballot(self, ballot) -> dict:
        if not isinstance(ballot, Ballot):
            ballot = Ballot.from_dict(ballot)
        try:
            self.verify_ballot(ballot)
        except (SignatureInvalid, CryptoParameterError) as e:
            logger.warning(f"Ballot for {ballot.election_id} rejected: {e}")
            raise

        with self._lock:
            try:
                self.check_double_vote(ballot)
            except DoubleVoteDetected as e:
                logger.warning(f"Double vote rejected in {ballot.election_id}: {e}")
                raise
            self._key_images.setdefault(ballot.election_id, set()).add(ballot.key_image)
            self._authorizations.setdefault(ballot.election_id, set()).add(ballot.blind_authorization)

        self.mixnet.add_vote(ballot.to_dict())
        receipt = ballot.receipt()
        receipt["status"] = "queued"
        receipt["mixnet"] = self.mixnet.info()
        logger.info(f"Accepted ballot {receipt['ballotHash'][:16]}… for {ballot.election_id}")
        return receipt

    def _check_transaction(self, tx, seen: set, published: dict):
        """One ballot of a block in the making: valid, and spending nothing spent before."""
        ballot = Ballot.from_dict(tx)
        self.verify_ballot(ballot)
        if ballot.election_id not in published:
            published[ballot.election_id] = self._published(ballot.election_id)
        images, authorizations = published[ballot.election_id]

        image = ("keyImage", ballot.election_id, ballot.key_image)
        if image in seen or ballot.key_image in images:
            raise DoubleVoteDetected(f"key image {ballot.key_image[:16]}… already spent")
        authorization = ("authorization", ballot.election_id, ballot.blind_authorization)
        if authorization in seen or ballot.blind_authorization in authorizations:
            raise DoubleVoteDetected("ballot authorization already spent")
        seen.update((image, authorization))

    def validate_transactions(self, transactions: list):
        """Payload check for every block before it is appended, local or from a peer."""
        seen, published = set(), {}
        for tx in transactions:
            self._check_transaction(tx, seen, published)

    def admissible_transactions(self, transactions: list) -> list:
        """The transactions that may still be sealed; the rest are dropped and logged."""
        seen, published, kept = set(), {}, []
        for tx in transactions:
            try:
                self._check_transaction(tx, seen, published)
            except VotingError as e:
                logger.warning(f"Dropping ballot that can no longer be sealed: {e}")
                continue
            kept.append(tx)
        return kept

    # ───── queries ─────
    def get_votes_by_election(self, election_id: str) -> list[dict]:
        return self.chain.get_votes_by_election(election_id)

    def get_election_votes(self, election_id: str) -> list[str]:
        return [tx["encryptedChoice"] for tx in self.chain.get_votes_by_election(election_id)]

    def encrypted_tally(self, election_id: str) -> homomorphic.EncryptedTally:
        election = self.elections.get(election_id)
        tally = homomorphic.EncryptedTally(election_id, election.public_key)
        return tally.add_all(homomorphic.parse_ciphertext(c, election.public_key)
                             for c in self.get_election_votes(election_id))

    def partial_decrypt_tally(self, election_id: str,
                              share: homomorphic.KeyShare) -> homomorphic.PartialDecryption:
        return homomorphic.partial_decrypt(self.encrypted_tally(election_id).ciphertext, share)

    # ───── tallying ─────
    def tally(self, election_id: str,
              partial_decryptions: Optional[Iterable[homomorphic.PartialDecryption]] = None) -> list[int]:
        if election_id in self._results:
            return list(self._results[election_id])

        election = self.elections.get(election_id)
        encrypted = self.encrypted_tally(election_id)
        count = encrypted.ballot_count
        if count > election.max_votes:
            logger.error(f"Tally for {election_id} refused: {count} ballots exceed "
                         f"the {election.max_votes} per-candidate capacity")
            raise DecodeOverflowError(f"{count} ballots exceed max_votes={election.max_votes}")

        ciphertext = encrypted.finalize()
        if partial_decryptions is not None:
            plaintext = homomorphic.combine_partial_decryptions(
                partial_decryptions, election.threshold, election.share_count, election.public_key)
        else:
            plaintext = homomorphic.decrypt(ciphertext,
                                            self.keyring.paillier_private_key(election_id))
        try:
            counts = homomorphic.decode_vote_tally(plaintext, election.total_candidates,
                                                   election.max_votes, expected_total=count)
        except DecodeOverflowError as e:
            logger.error(f"Tally for {election_id} could not be decoded: {e}")
            raise
        logger.info(f"Tallied {count} ballots for {election_id}")
        return counts

    def finalize_election(self, election_id: str,
                          partial_decryptions: Optional[Iterable[homomorphic.PartialDecryption]] = None) -> dict:
        """Decrypt once, cache the counts and retire the private key."""
        election = self.elections.get(election_id)
        counts = self.tally(election_id, partial_decryptions)
        if election_id not in self._results:
            self._results[election_id] = counts
            self.keyring.retire(election_id)
        return {
            "electionId": election_id,
            "results": election.results(counts),
            "totalVotes": sum(counts),
        }

    def close_election(self, election_id: str, coordinator=None) -> int:
        """Flush the mixnet now; optionally seal what it released."""
        self.elections.get(election_id)
        released = self.mixnet.force_process_votes()
        if coordinator is not None:
            coordinator.seal_pending()
        logger.info(f"Closed election {election_id}, {released} ballots flushed")
        return released
