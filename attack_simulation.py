"""
SIMULATION WITH INTEGRATED SECURITY TESTING

Runs one in-process node, casts an honest ballot and then replays a list of
attacks against it through the HTTP API and the chain.  Every attack must be
blocked; the summary at the end counts the ones that were not.
"""
import copy
import logging
import sys
import io

import blind_signature
import homomorphic
from authority import AuthorityKeyPair
from ballot import Ballot, authorization_message
from ballot_proof import generate_ballot_proof
from client import prepare_ballot, finish_ballot
from config import API_PREFIX
from election import initialize_election
from errors import DoubleVoteDetected
from ledger import Block
from node import NodeContext
from ring_signature import generate_ecc_key_pair, generate_signature, select_ring
import server

# Fix encoding issues on Windows
if sys.platform == "win32":
    sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding='utf-8')
    sys.stderr = io.TextIOWrapper(sys.stderr.buffer, encoding='utf-8')

# Configure logging
LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
LOG_LEVEL = "INFO"          # change to "DEBUG" for deep traces
LOG_DATE = "%H:%M:%S"
logging.basicConfig(format=LOG_FORMAT, datefmt=LOG_DATE, level=getattr(logging, LOG_LEVEL))
logger = logging.getLogger("attack_simulation")

ELECTION_ID = "attack-demo"
CANDIDATES = ["Yes", "No"]


### colour shortcuts #####################################################
def green(s): return f"\033[92m{s}\033[0m"
def red(s):   return f"\033[91m{s}\033[0m"


### quick result printer #################################################
def verdict(label: str, ok: bool) -> bool:
    if ok:
        logger.info(green(f"   ✅ {label} – blocked"))
    else:
        logger.error(red(f"   ❌ {label} – accepted"))
    return ok


class AttackBench:
    """One node, its test client and a handful of registered voters."""

    def __init__(self, key_bits=1024, voter_count=4):
        self.context = NodeContext(url="http://localhost:5900", node_id="bench-authority",
                                   is_authority=True, mixnet_batch_size=1)
        self.http = server.create_app(self.context).test_client()
        self.election, _ = initialize_election(
            ELECTION_ID, CANDIDATES, self.context.elections, self.context.keyring,
            key_bits=key_bits, blind_key_bits=key_bits, max_votes=voter_count)
        self.keys = {}
        for i in range(voter_count):
            voter_id = f"voter{i + 1:03d}"
            self.keys[voter_id] = generate_ecc_key_pair()
            self.context.voters.register(voter_id, self.keys[voter_id].public_key)

    def authorized_ballot(self, voter_id, candidate, keys=None, ring_size=3):
        draft = prepare_ballot(self.election, self.election.position_of(candidate))
        blind_sig = self.context.voting.authorize_ballot(voter_id, ELECTION_ID, draft.blinded)
        ring = select_ring(voter_id, ring_size, self.context.voters)
        return finish_ballot(draft, blind_sig, keys or self.keys[voter_id], ring)

    def authorize(self, voter_id, encrypted_choice):
        """Honestly obtain an authorization for an arbitrary ciphertext."""
        key = self.election.authorization_key
        r, r_inv = blind_signature.generate_blinding_factor(key)
        h = blind_signature.message_hash(authorization_message(ELECTION_ID, encrypted_choice))
        signed = self.context.voting.authorize_ballot(voter_id, ELECTION_ID,
                                                      blind_signature.blind(h, r, key))
        return str(blind_signature.unblind(signed, r_inv, key))

    def ring_sign(self, ballot, voter_id, keys=None):
        ring = select_ring(voter_id, 3, self.context.voters)
        ballot.ring_signature = generate_signature(ballot.signing_message(),
                                                   keys or self.keys[voter_id], ring, ELECTION_ID)
        return ballot

    def cast(self, ballot_dict):
        return self.http.post(f"{API_PREFIX}/blockchain/transaction", json={"transaction": ballot_dict})


def attack_second_authorization(bench):
    try:
        bench.authorize("voter001", "42")
    except DoubleVoteDetected:
        return True
    return False


def attack_replay(bench, honest):
    return bench.cast(honest.to_dict()).status_code == 409


def attack_same_key_second_identity(bench):
    """A second registered identity that reuses voter001's signing key."""
    bench.context.voters.register("voter001-alias", bench.keys["voter001"].public_key)
    ballot = bench.authorized_ballot("voter001-alias", "No", keys=bench.keys["voter001"])
    return bench.cast(ballot.to_dict()).status_code == 409


def attack_forged_authorization(bench):
    draft = prepare_ballot(bench.election, 1)
    ballot = Ballot(ELECTION_ID, draft.encrypted_choice, draft.validity_proof, "123456789")
    return bench.cast(bench.ring_sign(ballot, "voter002").to_dict()).status_code == 400


def attack_overflow_ballot(bench):
    """Encrypt 3 votes for one candidate, reuse a proof made for a single vote."""
    pk = bench.election.public_key
    r = homomorphic.random_coprime(pk.n)
    honest = homomorphic.encrypt(1, pk, r)
    proof = generate_ballot_proof(pk, honest, 1, r, bench.election.total_candidates, ELECTION_ID,
                                  bench.election.max_votes)
    stuffed = str(homomorphic.ciphertext_int(homomorphic.encrypt(3, pk, r)))
    ballot = Ballot(ELECTION_ID, stuffed, proof, bench.authorize("voter003", stuffed))
    return bench.cast(bench.ring_sign(ballot, "voter003").to_dict()).status_code == 400


def attack_plaintext_shadow(bench, template):
    data = copy.deepcopy(template.to_dict())
    data["choice"] = "Yes"
    return bench.cast(data).status_code == 400


def attack_forged_ring(bench, template):
    data = copy.deepcopy(template.to_dict())
    responses = data["ringSignature"]["responses"]
    responses[0] = f"{(int(responses[0], 16) + 1) % (1 << 255):064x}"
    return bench.cast(data).status_code == 400


def attack_tampered_block(bench):
    chain = bench.context.chain
    forged = [Block.from_dict(b.to_dict()) for b in chain.get_blocks()]
    if len(forged) < 2:
        return False
    forged[1].data["transactions"] = forged[1].data["transactions"][:-1]
    return not chain.is_chain_valid(forged)


def attack_invalid_longer_chain(bench):
    chain = bench.context.chain
    candidate = [Block.from_dict(b.to_dict()) for b in chain.get_blocks()]
    for _ in range(3):
        forged = Block("2030-01-01T00:00:00.000Z", {"transactions": []}, candidate[-1].hash)
        forged.mine_block(chain.difficulty)
        candidate.append(forged)  # unsigned: no authority sealed it
    before = len(chain)
    return chain.replace_chain(candidate) is None and len(chain) == before


def attack_self_announced_authority(bench):
    """An outsider announces itself as an authority, then commits a block it signed."""
    rogue = AuthorityKeyPair.generate(1024)
    bench.http.post(f"{API_PREFIX}/node/peers", json={
        "url": "http://rogue.invalid", "nodeId": "rogue", "isAuthority": True,
        "publicKey": rogue.public_key_pem})
    chain = bench.context.chain
    forged = Block("2030-01-01T00:00:00.000Z", {"transactions": []}, chain.latest_block().hash)
    forged.mine_block(chain.difficulty)
    forged.set_signature(rogue.sign(forged.hash), "rogue")
    before = len(chain)
    response = bench.http.post(f"{API_PREFIX}/blockchain/block",
                               json={"block": forged.to_dict(), "sender": "rogue", "phase": "commit"})
    return response.status_code == 400 and len(chain) == before


def run_attacks(key_bits=1024) -> bool:
    bench = AttackBench(key_bits=key_bits)
    logger.info("=" * 60)
    logger.info("PHASE 1: honest ballot")
    honest = bench.authorized_ballot("voter001", "Yes")
    response = bench.cast(honest.to_dict())
    logger.info(f"   honest ballot → HTTP {response.status_code}")
    bench.context.coordinator.seal_pending()

    logger.info("PHASE 2: attacks")
    results = [
        verdict("second authorization for the same voter", attack_second_authorization(bench)),
        verdict("replayed ballot", attack_replay(bench, honest)),
        verdict("same signing key under a second identity", attack_same_key_second_identity(bench)),
        verdict("forged blind authorization", attack_forged_authorization(bench)),
        verdict("overflow ballot (3 votes in one)", attack_overflow_ballot(bench)),
        verdict("plaintext shadow field", attack_plaintext_shadow(bench, honest)),
        verdict("tampered ring signature", attack_forged_ring(bench, honest)),
        verdict("tampered historical block", attack_tampered_block(bench)),
        verdict("unsigned longer chain", attack_invalid_longer_chain(bench)),
        verdict("self-announced authority", attack_self_announced_authority(bench)),
    ]
    failed = results.count(False)
    logger.info("=" * 60)
    if failed:
        logger.error(red(f"{failed}/{len(results)} attacks were accepted"))
    else:
        logger.info(green(f"All {len(results)} attacks blocked"))
    return failed == 0


if __name__ == "__main__":
    sys.exit(0 if run_attacks() else 1)
