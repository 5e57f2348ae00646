"""
Tests for the Paillier layer: homomorphic sums, vote encoding and
threshold decryption.
"""

import pytest

import homomorphic
from errors import CryptoParameterError, DecodeOverflowError


class TestEncryption:
    """Encrypt, add and decrypt under one key."""

    def test_decrypt_inverts_encrypt(self, paillier_keys):
        """D(E(m)) == m."""
        c = homomorphic.encrypt(12345, paillier_keys.public_key)
        assert homomorphic.decrypt(c, paillier_keys.private_key) == 12345

    def test_addition_is_homomorphic(self, paillier_keys):
        """D(E(a)·E(b)) == a + b."""
        pk = paillier_keys.public_key
        total = homomorphic.add_encrypted(homomorphic.encrypt(40, pk), homomorphic.encrypt(2, pk), pk)
        assert homomorphic.decrypt(total, paillier_keys.private_key) == 42

    def test_fixed_randomness_is_deterministic(self, paillier_keys):
        pk = paillier_keys.public_key
        r = homomorphic.random_coprime(pk.n)
        first = homomorphic.ciphertext_int(homomorphic.encrypt(7, pk, r))
        second = homomorphic.ciphertext_int(homomorphic.encrypt(7, pk, r))
        assert first == second

    def test_plaintext_out_of_range(self, paillier_keys):
        with pytest.raises(CryptoParameterError):
            homomorphic.encrypt(paillier_keys.public_key.n, paillier_keys.public_key)

    def test_foreign_key_rejected(self, paillier_keys):
        other = homomorphic.generate_key_pair(512)
        c = homomorphic.encrypt(1, other.public_key)
        with pytest.raises(CryptoParameterError):
            homomorphic.add_encrypted(c, c, paillier_keys.public_key)

    def test_retired_key_cannot_decrypt(self, paillier_keys):
        c = homomorphic.encrypt(1, paillier_keys.public_key)
        with pytest.raises(CryptoParameterError):
            homomorphic.decrypt(c, None)

    def test_parse_ciphertext_rejects_garbage(self, paillier_keys):
        pk = paillier_keys.public_key
        for value in ("", "abc", "-5", "0", str(pk.nsquare), 17):
            with pytest.raises(CryptoParameterError):
                homomorphic.parse_ciphertext(value, pk)

    def test_public_key_round_trip(self, paillier_keys):
        data = homomorphic.public_key_to_dict(paillier_keys.public_key)
        assert homomorphic.public_key_from_dict(data) == paillier_keys.public_key


class TestKeyGeneration:
    def test_tiny_modulus_refused(self):
        with pytest.raises(CryptoParameterError):
            homomorphic.generate_key_pair(32)

    def test_retire_drops_private_key(self):
        keys = homomorphic.generate_key_pair(256)
        assert not keys.retired
        keys.retire()
        assert keys.retired
        assert keys.private_key is None


class TestVoteEncoding:
    """Digit-packed per-candidate counters."""

    def test_base_is_power_of_two_above_max_votes(self):
        assert homomorphic.vote_base(10) == 16
        assert homomorphic.vote_base(15) == 16
        assert homomorphic.vote_base(16) == 32

    def test_encode_positions(self):
        assert homomorphic.encode_vote(1, 3, max_votes=10) == 1
        assert homomorphic.encode_vote(2, 3, max_votes=10) == 16
        assert homomorphic.encode_vote(3, 3, max_votes=10) == 256

    @pytest.mark.parametrize("position", [0, 4, -1])
    def test_encode_rejects_out_of_range_position(self, position):
        with pytest.raises(CryptoParameterError):
            homomorphic.encode_vote(position, 3, max_votes=10)

    def test_encrypted_votes_tally_per_candidate(self, paillier_keys):
        """Five ballots [1, 1, 1, 2, 2] decode to [3, 2, 0]."""
        pk = paillier_keys.public_key
        tally = homomorphic.EncryptedTally("e", pk)
        for position in [1, 1, 1, 2, 2]:
            tally.add(homomorphic.encrypt(homomorphic.encode_vote(position, 3, 10), pk))
        plaintext = homomorphic.decrypt(tally.finalize(), paillier_keys.private_key)
        assert homomorphic.decode_vote_tally(plaintext, 3, 10, expected_total=5) == [3, 2, 0]

    def test_empty_tally_decodes_to_zeros(self, paillier_keys):
        tally = homomorphic.EncryptedTally("e", paillier_keys.public_key)
        plaintext = homomorphic.decrypt(tally.ciphertext, paillier_keys.private_key)
        assert homomorphic.decode_vote_tally(plaintext, 3, 10, expected_total=0) == [0, 0, 0]

    def test_finalized_tally_is_frozen(self, paillier_keys):
        pk = paillier_keys.public_key
        tally = homomorphic.EncryptedTally("e", pk)
        tally.finalize()
        with pytest.raises(CryptoParameterError):
            tally.add(homomorphic.encrypt(1, pk))

    def test_decode_rejects_plaintext_beyond_k_digits(self):
        with pytest.raises(DecodeOverflowError):
            homomorphic.decode_vote_tally(16 ** 3, 3, 10)

    def test_decode_detects_carry(self):
        """16 votes for candidate 1 carry into candidate 2's digit."""
        with pytest.raises(DecodeOverflowError):
            homomorphic.decode_vote_tally(16, 3, 10, expected_total=16)

    def test_capacity_check(self, paillier_keys):
        homomorphic.check_encoding_capacity(paillier_keys.public_key, 3, 10)
        with pytest.raises(CryptoParameterError):
            homomorphic.check_encoding_capacity(paillier_keys.public_key, 200, 1_000_000)


class TestThresholdDecryption:
    """Shamir-shared decryption exponent."""

    @pytest.fixture(scope="class")
    def shares(self, paillier_keys):
        return homomorphic.generate_key_shares(paillier_keys.private_key, share_count=5, threshold=3)

    def test_any_threshold_subset_decrypts(self, paillier_keys, shares):
        pk = paillier_keys.public_key
        c = homomorphic.encrypt(4242, pk)
        for subset in ([0, 1, 2], [0, 2, 4], [2, 3, 4]):
            partials = [homomorphic.partial_decrypt(c, shares[i]) for i in subset]
            assert homomorphic.combine_partial_decryptions(partials, 3, 5, pk) == 4242

    def test_extra_partials_are_ignored(self, paillier_keys, shares):
        pk = paillier_keys.public_key
        c = homomorphic.encrypt(99, pk)
        partials = [homomorphic.partial_decrypt(c, share) for share in shares]
        assert homomorphic.combine_partial_decryptions(partials, 3, 5, pk) == 99

    def test_too_few_partials(self, paillier_keys, shares):
        pk = paillier_keys.public_key
        c = homomorphic.encrypt(5, pk)
        partials = [homomorphic.partial_decrypt(c, shares[0])] * 3
        with pytest.raises(CryptoParameterError):
            homomorphic.combine_partial_decryptions(partials, 3, 5, pk)

    def test_share_index_out_of_range(self, paillier_keys):
        partial = homomorphic.PartialDecryption(index=9, value=1)
        with pytest.raises(CryptoParameterError):
            homomorphic.combine_partial_decryptions([partial], 1, 5, paillier_keys.public_key)

    def test_invalid_sharing_parameters(self, paillier_keys):
        with pytest.raises(CryptoParameterError):
            homomorphic.generate_key_shares(paillier_keys.private_key, share_count=2, threshold=3)
