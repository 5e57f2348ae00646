"""
Tests for LSAG ring signatures and key images.
"""

import pytest

from election import VoterKeyRegistry
from errors import CryptoParameterError
from ring_signature import (DegradedSignature, RingSignature, decode_point, encode_point,
                            generate_degraded_signature, generate_ecc_key_pair, generate_signature,
                            hash_to_point, is_key_image_used, select_ring, verify_signature)

MESSAGE = b"encrypted ballot body"


@pytest.fixture(scope="module")
def members():
    return [generate_ecc_key_pair() for _ in range(4)]


@pytest.fixture(scope="module")
def ring(members):
    return [m.public_key for m in members]


class TestPoints:
    def test_encode_decode(self, members):
        point = members[0].public_key
        assert encode_point(decode_point(encode_point(point))) == encode_point(point)

    @pytest.mark.parametrize("value", ["", "04" + "00" * 32, "02" + "zz" * 32, "02" + "ff" * 32, 7])
    def test_decode_rejects_non_points(self, value):
        with pytest.raises(CryptoParameterError):
            decode_point(value)

    def test_hash_to_point_is_deterministic_and_scoped(self, members):
        key = members[0].public_key
        assert encode_point(hash_to_point(key, "e1")) == encode_point(hash_to_point(key, "e1"))
        assert encode_point(hash_to_point(key, "e1")) != encode_point(hash_to_point(key, "e2"))


class TestLSAG:
    """Sign as one of the ring, link by key image."""

    def test_every_member_can_sign(self, members, ring):
        for keys in members:
            signature = generate_signature(MESSAGE, keys, ring, "e1")
            assert verify_signature(signature, MESSAGE)

    def test_message_binding(self, members, ring):
        signature = generate_signature(MESSAGE, members[0], ring, "e1")
        assert not verify_signature(signature, b"another body")

    def test_same_key_same_image(self, members, ring):
        first = generate_signature(b"ballot one", members[1], ring, "e1")
        second = generate_signature(b"ballot two", members[1], list(reversed(ring)), "e1")
        assert first.key_image == second.key_image
        assert first.key_image == encode_point(members[1].key_image("e1"))

    def test_different_keys_different_images(self, members, ring):
        images = {generate_signature(MESSAGE, keys, ring, "e1").key_image for keys in members}
        assert len(images) == len(members)

    def test_image_is_scoped_to_election(self, members, ring):
        one = generate_signature(MESSAGE, members[0], ring, "e1")
        two = generate_signature(MESSAGE, members[0], ring, "e2")
        assert one.key_image != two.key_image

    def test_signer_outside_ring(self, members, ring):
        outsider = generate_ecc_key_pair()
        with pytest.raises(CryptoParameterError):
            generate_signature(MESSAGE, outsider, ring, "e1")

    def test_ring_must_have_two_distinct_members(self, members, ring):
        with pytest.raises(CryptoParameterError):
            generate_signature(MESSAGE, members[0], [ring[0]], "e1")
        with pytest.raises(CryptoParameterError):
            generate_signature(MESSAGE, members[0], [ring[0], ring[0]], "e1")

    def test_substituted_ring_member_fails(self, members, ring):
        signature = generate_signature(MESSAGE, members[0], ring, "e1")
        signature.ring[-1] = generate_ecc_key_pair().public_hex
        assert not verify_signature(signature, MESSAGE)

    def test_forged_key_image_fails(self, members, ring):
        signature = generate_signature(MESSAGE, members[0], ring, "e1")
        signature.key_image = encode_point(members[1].key_image("e1"))
        assert not verify_signature(signature, MESSAGE)

    def test_tampered_response_fails(self, members, ring):
        signature = generate_signature(MESSAGE, members[2], ring, "e1")
        signature.responses[0] = f"{(int(signature.responses[0], 16) + 1) % (1 << 255):064x}"
        assert not verify_signature(signature, MESSAGE)

    def test_dict_round_trip(self, members, ring):
        signature = generate_signature(MESSAGE, members[0], ring, "e1")
        restored = RingSignature.from_dict(signature.to_dict())
        assert type(restored) is RingSignature
        assert verify_signature(restored, MESSAGE)

    def test_from_dict_rejects_non_strings(self, members, ring):
        data = generate_signature(MESSAGE, members[0], ring, "e1").to_dict()
        data["challenges"][0] = 1
        with pytest.raises(CryptoParameterError):
            RingSignature.from_dict(data)

    def test_unknown_mode(self, members, ring):
        data = generate_signature(MESSAGE, members[0], ring, "e1").to_dict()
        data["mode"] = "plain"
        with pytest.raises(CryptoParameterError):
            RingSignature.from_dict(data)


class TestDegradedSignature:
    """Single-member fallback: refused unless explicitly allowed."""

    def test_refused_by_default(self, members):
        signature = generate_degraded_signature(MESSAGE, members[0], "e1", "voter pool empty")
        assert isinstance(signature, DegradedSignature)
        assert not verify_signature(signature, MESSAGE)

    def test_accepted_when_allowed(self, members):
        signature = generate_degraded_signature(MESSAGE, members[0], "e1", "voter pool empty")
        assert verify_signature(signature, MESSAGE, allow_degraded=True)

    def test_needs_audit_reason(self, members):
        with pytest.raises(CryptoParameterError):
            generate_degraded_signature(MESSAGE, members[0], "e1", "")

    def test_mode_survives_serialisation(self, members):
        signature = generate_degraded_signature(MESSAGE, members[0], "e1", "offline registrar")
        data = signature.to_dict()
        assert data["mode"] == "degraded"
        restored = RingSignature.from_dict(data)
        assert isinstance(restored, DegradedSignature)
        assert restored.audit_reason == "offline registrar"

    def test_degraded_shares_key_image(self, members, ring):
        degraded = generate_degraded_signature(MESSAGE, members[0], "e1", "test")
        normal = generate_signature(MESSAGE, members[0], ring, "e1")
        assert degraded.key_image == normal.key_image


class TestRingSelection:
    def _registry(self, count):
        registry = VoterKeyRegistry()
        for i in range(count):
            registry.register(f"v{i}", generate_ecc_key_pair().public_key)
        return registry

    def test_ring_contains_signer(self):
        registry = self._registry(6)
        selected = select_ring("v0", 4, registry)
        encoded = [encode_point(p) for p in selected]
        assert len(selected) == 4
        assert encode_point(registry.get("v0")) in encoded
        assert len(set(encoded)) == 4

    def test_small_pool_is_padded(self):
        registry = self._registry(2)
        selected = select_ring("v0", 5, registry)
        assert len(selected) == 5
        assert len({encode_point(p) for p in selected}) == 5

    def test_size_below_two(self):
        with pytest.raises(CryptoParameterError):
            select_ring("v0", 1, self._registry(3))


class TestKeyImageLookup:
    def test_lookup_scans_chain_transactions(self):
        class FakeChain:
            def iter_transactions(self):
                yield {"electionId": "e1", "ringSignature": {"keyImage": "abc"}}
                yield {"electionId": "e2", "ringSignature": {"keyImage": "def"}}

        assert is_key_image_used("abc", "e1", FakeChain())
        assert not is_key_image_used("abc", "e2", FakeChain())
        assert not is_key_image_used("zzz", "e1", FakeChain())
