"""
Simple runner that starts a small node network in threads and runs an election.

Three authority nodes on consecutive ports share one election registry; five
voters cast ballots through different nodes, the mixnet batches them, the
authorities seal and gossip blocks, and the tally is decrypted once at the end.
"""

import threading
import time
import logging
import sys
import io

import requests

from config import LOG_FORMAT, LOG_LEVEL, API_PREFIX
from authority import AuthorityKeyPair
from election import ElectionRegistry, ElectionKeyring, VoterKeyRegistry, initialize_election
from node import NodeContext
from ring_signature import generate_ecc_key_pair
from client import VoterClient, ClientError
import server

# Fix encoding issues on Windows
if sys.platform == "win32":
    sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding='utf-8')
    sys.stderr = io.TextIOWrapper(sys.stderr.buffer, encoding='utf-8')

# Configure logging
logging.basicConfig(format=LOG_FORMAT, level=LOG_LEVEL)
logger = logging.getLogger("simulation")

BASE_PORT = 5000
ELECTION_ID = "board-2024"
CANDIDATES = ["Alice", "Bob", "Carol"]
VOTES = [
    ("voter001", "Alice"),
    ("voter002", "Alice"),
    ("voter003", "Alice"),
    ("voter004", "Bob"),
    ("voter005", "Bob"),
]


def build_network(node_count=3, base_port=BASE_PORT, **node_options):
    """Create node contexts sharing one election registry, keyring, voter registry and authority set."""
    elections, keyring, voters = ElectionRegistry(), ElectionKeyring(), VoterKeyRegistry()
    keys = {f"authority-{i + 1}": AuthorityKeyPair.generate() for i in range(node_count)}
    trusted = {node_id: pair.public_key_pem for node_id, pair in keys.items()}
    contexts = []
    for i, (node_id, pair) in enumerate(keys.items()):
        contexts.append(NodeContext(
            url=f"http://localhost:{base_port + i}",
            node_id=node_id,
            is_authority=True,
            authority_keys=pair,
            trusted_authorities=trusted,
            elections=elections, keyring=keyring, voters=voters,
            **node_options,
        ))
    return contexts


def run_server(context, port):
    """Run one node's Flask app in a thread."""
    logger.info(f"Starting node {context.node_id} on port {port}")
    app = server.create_app(context)
    app.run(host="0.0.0.0", port=port, debug=False, use_reloader=False)


def wait_until_healthy(urls, timeout=15.0):
    deadline = time.monotonic() + timeout
    pending = list(urls)
    while pending and time.monotonic() < deadline:
        try:
            requests.get(f"{pending[0]}/health", timeout=1)
            pending.pop(0)
        except requests.RequestException:
            time.sleep(0.2)
    return not pending


def run_simulation(key_bits=1024):
    contexts = build_network(mixnet_batch_size=2, mixnet_max_wait=5.0, mixnet_check_interval=1.0,
                             block_interval=1.0, required_signatures=2)
    for i, context in enumerate(contexts):
        threading.Thread(target=run_server, args=(context, BASE_PORT + i), daemon=True).start()
    if not wait_until_healthy([c.url for c in contexts]):
        logger.error("Nodes did not come up in time")
        return False

    logger.info("\n" + "=" * 60)
    logger.info("Starting Ledger Voting Simulation")
    logger.info("=" * 60)

    # 1. Network
    logger.info("STEP 1: Network Formation")
    logger.info("-" * 30)
    for context in contexts:
        context.start(seed_nodes=[c.url for c in contexts if c is not context])
    logger.info(f"[OK] {len(contexts)} authority nodes connected\n")

    # 2. Election
    logger.info("STEP 2: Election Initialization")
    logger.info("-" * 30)
    head = contexts[0]
    initialize_election(ELECTION_ID, CANDIDATES, head.elections, head.keyring,
                        key_bits=key_bits, blind_key_bits=key_bits, max_votes=len(VOTES))
    logger.info(f"[OK] Paillier and authorization keys generated for {ELECTION_ID}\n")

    # 3. Voting
    logger.info("STEP 3: Voting Phase")
    logger.info("-" * 30)
    voter_keys = {voter_id: generate_ecc_key_pair() for voter_id, _ in VOTES}
    registrar = VoterClient(head.url)
    for voter_id, keys in voter_keys.items():
        registrar.register_voter(voter_id, keys)

    successful_votes = 0
    for i, (voter_id, candidate) in enumerate(VOTES):
        client = VoterClient(contexts[i % len(contexts)].url)
        try:
            client.vote(voter_id, voter_keys[voter_id], ELECTION_ID, candidate, ring_size=4)
            logger.info(f"  [OK] {voter_id} cast an encrypted ballot")
            successful_votes += 1
        except ClientError as e:
            logger.error(f"  [FAIL] {voter_id}: {e.public_message}")

    logger.info(f"\nVoting complete: {successful_votes}/{len(VOTES)} ballots accepted")

    # 4. Duplicate vote (should fail)
    logger.info("\n" + "-" * 40)
    logger.info("Testing double-vote detection...")
    try:
        VoterClient(head.url).vote("voter001", voter_keys["voter001"], ELECTION_ID, "Carol", ring_size=4)
        logger.error("✗ Duplicate vote was accepted!")
    except ClientError as e:
        logger.info(f"✓ Duplicate vote correctly rejected ({e.status_code})")

    # 5. Close & tally
    logger.info("\nSTEP 4: Tallying Phase")
    logger.info("-" * 30)
    for context in contexts:
        requests.post(f"{context.url}{API_PREFIX}/elections/{ELECTION_ID}/close", timeout=30)
    for context in contexts:
        requests.post(f"{context.url}{API_PREFIX}/blockchain/sync", timeout=30)

    lengths = {c.node_id: len(c.chain) for c in contexts}
    logger.info(f"[OK] Chain lengths after sync: {lengths}")
    response = requests.post(f"{head.url}{API_PREFIX}/elections/{ELECTION_ID}/finalize", timeout=30)
    if response.status_code != 200:
        logger.error(f"Failed to finalize: {response.text}")
        return False

    result = response.json()
    logger.info("\nFINAL RESULTS:")
    logger.info(f"  Total votes counted: {result['totalVotes']}")
    for candidate, count in result["results"].items():
        logger.info(f"  {candidate}: {count}")

    for context in contexts:
        context.stop()
    return True


if __name__ == "__main__":
    ok = run_simulation()
    sys.exit(0 if ok else 1)
