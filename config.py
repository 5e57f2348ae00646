"""
Configuration file for the ledger-backed voting network.

Every value here can be overridden through an environment variable with the
same name, so several nodes can run from one checkout with different ports,
ids and authority settings.
"""

import os


def _env_str(name, default):
    return os.environ.get(name, default)


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


def _env_bool(name, default):
    value = os.environ.get(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name, default):
    value = os.environ.get(name)
    if value in (None, ""):
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


# Node configuration
NODE_ID = _env_str("NODE_ID", "")  # empty -> random hex id at start-up
NODE_HOST = _env_str("NODE_HOST", "localhost")
NODE_PORT = _env_int("NODE_PORT", 5000)
NODE_URL = _env_str("NODE_URL", f"http://{NODE_HOST}:{NODE_PORT}")
IS_AUTHORITY = _env_bool("IS_AUTHORITY", True)
AUTHORITY_KEY_PATH = _env_str("AUTHORITY_KEY_PATH", "")
AUTHORITY_KEYS_PATH = _env_str("AUTHORITY_KEYS_PATH", "")  # JSON {nodeId: public key PEM}
SEED_NODES = _env_list("SEED_NODES", [])
API_PREFIX = "/api"

# Chain configuration
NETWORK_ID = _env_str("NETWORK_ID", "secure-voting-chain")
GENESIS_TIMESTAMP = "2024-01-01T00:00:00.000Z"
MINING_DIFFICULTY = _env_int("MINING_DIFFICULTY", 2)
REQUIRED_SIGNATURES = _env_int("REQUIRED_SIGNATURES", 1)
REQUIRE_BLOCK_SIGNATURES = _env_bool("REQUIRE_BLOCK_SIGNATURES", True)
MAX_BLOCK_BYTES = _env_int("MAX_BLOCK_BYTES", 1024 * 1024)
BLOCK_STORE_PATH = _env_str("BLOCK_STORE_PATH", "")  # empty -> in-memory chain

# Timing (seconds)
BLOCK_INTERVAL = _env_float("BLOCK_INTERVAL", 2.0)
SYNC_INTERVAL = _env_float("SYNC_INTERVAL", 30.0)
QUORUM_TIMEOUT = _env_float("QUORUM_TIMEOUT", 5.0)
PEER_TIMEOUT = _env_float("PEER_TIMEOUT", 10.0)

# Security parameters
PAILLIER_KEY_BITS = _env_int("PAILLIER_KEY_BITS", 2048)
AUTHORITY_KEY_BITS = _env_int("AUTHORITY_KEY_BITS", 2048)
BLIND_KEY_BITS = _env_int("BLIND_KEY_BITS", 2048)
PRIME_GENERATION_ATTEMPTS = _env_int("PRIME_GENERATION_ATTEMPTS", 10)
BLINDING_FACTOR_ATTEMPTS = _env_int("BLINDING_FACTOR_ATTEMPTS", 10)
CHALLENGE_BITS = 128  # Fiat-Shamir challenge size for the ballot proofs
RING_SIZE = _env_int("RING_SIZE", 5)
MAX_VOTES_PER_CANDIDATE = _env_int("MAX_VOTES_PER_CANDIDATE", 1_000_000)
ALLOW_DEGRADED_SIGNATURES = _env_bool("ALLOW_DEGRADED_SIGNATURES", False)

# Mixnet
MIXNET_MIN_BATCH_SIZE = _env_int("MIXNET_MIN_BATCH_SIZE", 3)
MIXNET_MAX_WAIT = _env_float("MIXNET_MAX_WAIT", 120.0)
MIXNET_CHECK_INTERVAL = _env_float("MIXNET_CHECK_INTERVAL", 30.0)

# Logging configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVEL = _env_str("LOG_LEVEL", "INFO")
