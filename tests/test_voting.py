"""
End-to-end tests for the voting service: authorization, casting, double-vote
detection and tallying on a single authority node.
"""

import copy

import pytest

from ballot import BALLOT_FIELDS, Ballot
from client import finish_ballot, prepare_ballot
from conftest import CANDIDATES, ELECTION_ID, connect
from election import initialize_election
from errors import (ChainIntegrityError, CryptoParameterError, DecodeOverflowError, DoubleVoteDetected,
                    SignatureInvalid, UnknownElection)
from ledger import Block
from ring_signature import generate_signature, select_ring


@pytest.fixture
def node(make_node, election, voter_keys):
    return make_node()


def cast_all(node, ballot_factory, choices):
    """voter00{i+1} votes for choices[i] (1-based positions), then the node seals."""
    receipts = []
    for i, position in enumerate(choices):
        ballot = ballot_factory(node, f"voter{i + 1:03d}", position)
        receipts.append(node.voting.cast_ballot(ballot.to_dict()))
    node.close_election(ELECTION_ID)
    return receipts


class TestAuthorization:
    """One blind signature per voter per election."""

    def test_second_request_refused(self, node):
        draft = prepare_ballot(node.elections.get(ELECTION_ID), 1)
        node.voting.authorize_ballot("voter001", ELECTION_ID, draft.blinded)
        with pytest.raises(DoubleVoteDetected):
            node.voting.authorize_ballot("voter001", ELECTION_ID, draft.blinded)

    def test_unregistered_voter(self, node):
        draft = prepare_ballot(node.elections.get(ELECTION_ID), 1)
        with pytest.raises(SignatureInvalid):
            node.voting.authorize_ballot("nobody", ELECTION_ID, draft.blinded)

    def test_unknown_election(self, node):
        with pytest.raises(UnknownElection):
            node.voting.authorize_ballot("voter001", "no-such-election", 5)


class TestCasting:
    def test_receipt(self, node, ballot_factory):
        ballot = ballot_factory(node, "voter001", 2)
        receipt = node.voting.cast_ballot(ballot.to_dict())
        assert receipt["status"] == "queued"
        assert receipt["ballotHash"] == ballot.ballot_hash
        assert receipt["mixnet"]["buffered"] == 1

    def test_ballot_carries_no_plaintext(self, node, ballot_factory):
        data = ballot_factory(node, "voter001", 2).to_dict()
        assert set(data) == BALLOT_FIELDS
        assert "Bob" not in str(data)

    def test_timestamp_is_hour_truncated(self, node, ballot_factory):
        ballot = ballot_factory(node, "voter001", 1)
        assert ballot.timestamp.endswith(":00:00Z")

    def test_replay_refused(self, node, ballot_factory):
        ballot = ballot_factory(node, "voter001", 1)
        node.voting.cast_ballot(ballot.to_dict())
        with pytest.raises(DoubleVoteDetected):
            node.voting.cast_ballot(ballot.to_dict())

    def test_forged_authorization(self, node, ballot_factory):
        ballot = ballot_factory(node, "voter001", 1)
        ballot.blind_authorization = str(int(ballot.blind_authorization) + 1)
        with pytest.raises(SignatureInvalid):
            node.voting.cast_ballot(ballot.to_dict())

    def test_authorization_bound_to_ciphertext(self, node, ballot_factory, voter_keys, registries):
        """Swapping in another ciphertext invalidates the blind authorization."""
        honest = ballot_factory(node, "voter001", 1)
        other = prepare_ballot(node.elections.get(ELECTION_ID), 2)
        swapped = Ballot(ELECTION_ID, other.encrypted_choice, other.validity_proof,
                         honest.blind_authorization)
        _, _, voters = registries
        ring = select_ring("voter001", 3, voters)
        swapped.ring_signature = generate_signature(swapped.signing_message(),
                                                    voter_keys["voter001"], ring, ELECTION_ID)
        with pytest.raises(SignatureInvalid):
            node.voting.cast_ballot(swapped)

    def test_plaintext_shadow_field(self, node, ballot_factory):
        data = ballot_factory(node, "voter001", 1).to_dict()
        data["choice"] = "Alice"
        with pytest.raises(CryptoParameterError):
            node.voting.cast_ballot(data)

    def test_tampered_ring_signature(self, node, ballot_factory):
        data = copy.deepcopy(ballot_factory(node, "voter001", 1).to_dict())
        responses = data["ringSignature"]["responses"]
        responses[0] = f"{(int(responses[0], 16) + 1) % (1 << 255):064x}"
        with pytest.raises(SignatureInvalid):
            node.voting.cast_ballot(data)

    def test_degraded_signature_refused_by_default(self, node, election, voter_keys):
        draft = prepare_ballot(election, 1)
        blind_sig = node.voting.authorize_ballot("voter001", ELECTION_ID, draft.blinded)
        ballot = finish_ballot(draft, blind_sig, voter_keys["voter001"], [],
                               degraded_reason="registrar offline")
        with pytest.raises(SignatureInvalid):
            node.voting.cast_ballot(ballot.to_dict())

    def test_degraded_signature_when_allowed(self, make_node, election, voter_keys):
        node = make_node(allow_degraded=True)
        draft = prepare_ballot(election, 1)
        blind_sig = node.voting.authorize_ballot("voter001", ELECTION_ID, draft.blinded)
        ballot = finish_ballot(draft, blind_sig, voter_keys["voter001"], [],
                               degraded_reason="registrar offline")
        assert node.voting.cast_ballot(ballot.to_dict())["status"] == "queued"


class TestDoubleVote:
    """Linkability: the same signing key cannot vote twice in one election."""

    def test_same_key_second_identity_before_sealing(self, node, ballot_factory, voter_keys):
        node.voting.cast_ballot(ballot_factory(node, "voter001", 1).to_dict())
        node.voters.register("voter001-alias", voter_keys["voter001"].public_key)
        second = ballot_factory(node, "voter001-alias", 2, keys=voter_keys["voter001"])
        with pytest.raises(DoubleVoteDetected):
            node.voting.cast_ballot(second.to_dict())

    def test_same_key_second_identity_after_sealing(self, node, ballot_factory, voter_keys):
        node.voting.cast_ballot(ballot_factory(node, "voter001", 1).to_dict())
        node.close_election(ELECTION_ID)
        assert len(node.chain) == 2

        node.voters.register("voter001-alias", voter_keys["voter001"].public_key)
        second = ballot_factory(node, "voter001-alias", 2, keys=voter_keys["voter001"])
        with pytest.raises(DoubleVoteDetected):
            node.voting.cast_ballot(second.to_dict())
        assert node.voting.tally(ELECTION_ID) == [1, 0, 0]

    def test_block_repeating_key_image_rejected(self, node, ballot_factory, voter_keys):
        first = ballot_factory(node, "voter001", 1)
        node.voters.register("voter001-alias", voter_keys["voter001"].public_key)
        second = ballot_factory(node, "voter001-alias", 2, keys=voter_keys["voter001"])
        with pytest.raises(DoubleVoteDetected):
            node.voting.validate_transactions([first.to_dict(), second.to_dict()])

    def test_honest_block_validates(self, node, ballot_factory):
        node.voting.validate_transactions([
            ballot_factory(node, "voter001", 1).to_dict(),
            ballot_factory(node, "voter002", 3).to_dict(),
        ])


class TestDoubleVoteAcrossNodes:
    """One voting key authorized at two nodes still lands on the chain once."""

    @pytest.fixture
    def pair(self, make_node, election, voter_keys):
        a, b = make_node(), make_node()
        connect(a, b)
        return a, b

    @pytest.fixture
    def rivals(self, pair, ballot_factory):
        a, b = pair
        return ballot_factory(a, "voter001", 1), ballot_factory(b, "voter001", 2)

    def test_buffered_rival_is_evicted(self, pair, rivals):
        a, b = pair
        first, second = rivals
        assert first.key_image == second.key_image
        a.voting.cast_ballot(first.to_dict())
        b.voting.cast_ballot(second.to_dict())

        a.close_election(ELECTION_ID)
        assert len(b.chain) == 2
        assert b.mixnet.buffer_size() == 0
        b.close_election(ELECTION_ID)
        assert len(a.chain) == len(b.chain) == 2
        assert b.voting.tally(ELECTION_ID) == [1, 0, 0]

    def test_pending_rival_is_pruned(self, pair, rivals):
        a, b = pair
        first, second = rivals
        a.voting.cast_ballot(first.to_dict())
        b.voting.cast_ballot(second.to_dict())
        b.mixnet.force_process_votes()
        assert b.coordinator.pending_count() == 1

        a.close_election(ELECTION_ID)
        assert b.coordinator.pending_count() == 0
        assert b.coordinator.seal_pending() is None
        assert a.voting.tally(ELECTION_ID) == [1, 0, 0]

    def test_local_block_with_spent_key_image_refused(self, pair, rivals):
        a, b = pair
        first, second = rivals
        a.voting.cast_ballot(first.to_dict())
        a.close_election(ELECTION_ID)
        with pytest.raises(ChainIntegrityError):
            b.coordinator.add_block({"transactions": [second.to_dict()]})
        assert len(b.chain) == 2

    def test_committed_block_with_spent_key_image_refused(self, pair, rivals):
        a, b = pair
        first, second = rivals
        a.voting.cast_ballot(first.to_dict())
        a.close_election(ELECTION_ID)
        block = Block("t", {"transactions": [second.to_dict()]},
                      a.chain.latest_block().hash).mine_block(a.chain.difficulty)
        a.node.sign_block(block)
        with pytest.raises(ChainIntegrityError):
            b.coordinator.receive_block(block.to_dict(), a.node_id)
        assert b.voting.tally(ELECTION_ID) == [1, 0, 0]

    def test_sync_refuses_chain_spending_key_image_twice(self, pair, rivals):
        a, b = pair
        for ballot in rivals:
            block = Block("t", {"transactions": [ballot.to_dict()]},
                          a.chain.latest_block().hash).mine_block(a.chain.difficulty)
            a.chain.append(a.node.sign_block(block))
        assert not b.coordinator.sync_from_peer(a.url)
        assert len(b.chain) == 1


class TestTally:
    def test_end_to_end(self, node, ballot_factory):
        """Five ballots [1, 1, 1, 2, 2] tally to Alice 3, Bob 2, Carol 0."""
        cast_all(node, ballot_factory, [1, 1, 1, 2, 2])
        assert len(node.voting.get_election_votes(ELECTION_ID)) == 5
        assert node.voting.tally(ELECTION_ID) == [3, 2, 0]

        result = node.voting.finalize_election(ELECTION_ID)
        assert result == {"electionId": ELECTION_ID,
                          "results": dict(zip(CANDIDATES, [3, 2, 0])),
                          "totalVotes": 5}

    def test_finalize_retires_key_and_caches(self, node, ballot_factory):
        cast_all(node, ballot_factory, [3])
        node.voting.finalize_election(ELECTION_ID)
        with pytest.raises(CryptoParameterError):
            node.keyring.paillier_private_key(ELECTION_ID)
        assert node.voting.tally(ELECTION_ID) == [0, 0, 1]

    def test_empty_election(self, node):
        assert node.voting.tally(ELECTION_ID) == [0, 0, 0]

    def test_encrypted_tally(self, node, ballot_factory):
        cast_all(node, ballot_factory, [1, 2])
        tally = node.voting.encrypted_tally(ELECTION_ID)
        assert tally.ballot_count == 2
        assert tally.to_dict()["ciphertext"].isdigit()

    def test_more_ballots_than_capacity(self, make_node, registries, voter_keys):
        elections, keyring, voters = registries
        small, _ = initialize_election("small", CANDIDATES, elections, keyring,
                                       key_bits=512, blind_key_bits=1024, max_votes=2)
        node = make_node()
        for i in range(3):
            voter_id = f"voter{i + 1:03d}"
            draft = prepare_ballot(small, 1)
            blind_sig = node.voting.authorize_ballot(voter_id, "small", draft.blinded)
            ring = select_ring(voter_id, 3, voters)
            ballot = finish_ballot(draft, blind_sig, voter_keys[voter_id], ring)
            node.voting.cast_ballot(ballot.to_dict())
        node.close_election("small")
        with pytest.raises(DecodeOverflowError):
            node.voting.tally("small")

    def test_threshold_election(self, make_node, registries, voter_keys):
        elections, keyring, voters = registries
        election, shares = initialize_election("council", CANDIDATES, elections, keyring,
                                               key_bits=512, blind_key_bits=1024, max_votes=10,
                                               share_count=3, threshold=2)
        node = make_node()
        for i, position in enumerate([2, 2, 3]):
            voter_id = f"voter{i + 1:03d}"
            draft = prepare_ballot(election, position)
            blind_sig = node.voting.authorize_ballot(voter_id, "council", draft.blinded)
            ring = select_ring(voter_id, 3, voters)
            node.voting.cast_ballot(finish_ballot(draft, blind_sig, voter_keys[voter_id], ring))
        node.close_election("council")

        with pytest.raises(CryptoParameterError):
            node.voting.tally("council")
        partials = [node.voting.partial_decrypt_tally("council", share) for share in shares[1:]]
        assert node.voting.tally("council", partials) == [0, 2, 1]
