"""
Hash-linked ledger: blocks, the chain they form and where they are stored.

    hash = SHA256(timestamp ‖ canonical_json(data) ‖ previousHash ‖ nonce)

Every node derives the same genesis block from the network id, so chains
built by different authorities can be compared and exchanged.  Blocks other
than genesis carry an authority signature over their hash (see authority.py)
plus endorsements up to the quorum size; the chain only accepts signatures
from keys in its AuthoritySet.  A valid chain never repeats a key image or a
blind authorization within one election.
"""
from __future__ import annotations

import copy
import hashlib
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional

from config import (GENESIS_TIMESTAMP, MAX_BLOCK_BYTES, MINING_DIFFICULTY, NETWORK_ID,
                    REQUIRE_BLOCK_SIGNATURES, REQUIRED_SIGNATURES)
from errors import ChainIntegrityError

logger = logging.getLogger(__name__)

GENESIS_PREVIOUS_HASH = "0"


def canonical_json(data) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ───────────────────────────── block ────────────────────────────────────
@dataclass
class Block:
    timestamp: str
    data: dict
    previous_hash: str
    nonce: int = 0
    hash: str = ""
    signature: Optional[str] = None
    validator_id: Optional[str] = None
    endorsements: list = field(default_factory=list)  # [{validatorId, signature}]

    def __post_init__(self):
        if not self.hash:
            self.hash = self.calculate_hash()

    def calculate_hash(self) -> str:
        payload = self.timestamp + canonical_json(self.data) + self.previous_hash + str(self.nonce)
        return hashlib.sha256(payload.encode()).hexdigest()

    def mine_block(self, difficulty: int = MINING_DIFFICULTY):
        """Nonce search for a leading-zero prefix. Spam resistance only."""
        target = "0" * difficulty
        self.hash = self.calculate_hash()
        while not self.hash.startswith(target):
            self.nonce += 1
            self.hash = self.calculate_hash()
        logger.debug(f"Block mined: {self.hash} (nonce={self.nonce})")
        return self

    def set_signature(self, signature: str, validator_id: str):
        self.signature = signature
        self.validator_id = validator_id

    def add_endorsement(self, validator_id: str, signature: str):
        if validator_id == self.validator_id:
            return
        if any(e["validatorId"] == validator_id for e in self.endorsements):
            return
        self.endorsements.append({"validatorId": validator_id, "signature": signature})

    @property
    def transactions(self) -> list:
        txs = self.data.get("transactions", []) if isinstance(self.data, dict) else []
        return txs if isinstance(txs, list) else []

    def size_bytes(self) -> int:
        return len(canonical_json(self.data).encode())

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "data": copy.deepcopy(self.data),
            "previousHash": self.previous_hash,
            "nonce": self.nonce,
            "hash": self.hash,
            "signature": self.signature,
            "validatorId": self.validator_id,
            "endorsements": copy.deepcopy(self.endorsements),
        }

    @staticmethod
    def from_dict(data) -> "Block":
        if not isinstance(data, dict):
            raise ChainIntegrityError("block must be an object")
        try:
            block = Block(
                timestamp=str(data["timestamp"]),
                data=data["data"],
                previous_hash=str(data["previousHash"]),
                nonce=int(data["nonce"]),
                hash=str(data["hash"]),
                signature=data.get("signature"),
                validator_id=data.get("validatorId"),
                endorsements=list(data.get("endorsements") or []),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ChainIntegrityError(f"malformed block: {e}") from e
        if not isinstance(block.data, dict):
            raise ChainIntegrityError("block data must be an object")
        return block


def spent_markers(tx) -> list[tuple]:
    """
    What a vote transaction uses up within its election: the ring-signature
    key image and the blind authorization.  Each may appear once per chain.
    """
    if not isinstance(tx, dict) or tx.get("electionId") is None:
        return []
    election_id = tx["electionId"]
    markers = []
    signature = tx.get("ringSignature")
    if isinstance(signature, dict) and signature.get("keyImage"):
        markers.append(("keyImage", election_id, signature["keyImage"]))
    if tx.get("blindAuthorization"):
        markers.append(("authorization", election_id, tx["blindAuthorization"]))
    return markers


def create_genesis_block(network_id: str = NETWORK_ID,
                         difficulty: int = MINING_DIFFICULTY) -> Block:
    block = Block(
        timestamp=GENESIS_TIMESTAMP,
        data={"message": "Genesis Block", "networkId": network_id},
        previous_hash=GENESIS_PREVIOUS_HASH,
    )
    return block.mine_block(difficulty)


# ───────────────────────────── storage ──────────────────────────────────
class MemoryBlockStore:
    def __init__(self):
        self._blocks: list[Block] = []

    def load_all(self) -> list[Block]:
        return [Block.from_dict(b.to_dict()) for b in self._blocks]

    def insert(self, block: Block):
        self._blocks.append(Block.from_dict(block.to_dict()))

    def replace_all(self, blocks: list[Block]):
        self._blocks = [Block.from_dict(b.to_dict()) for b in blocks]


class SQLiteBlockStore:
    """One row per block, append-only apart from replace_all()."""

    def __init__(self, path: str):
        self.path = path
        with self.get_db_connection() as conn:
            conn.execute('''
            CREATE TABLE IF NOT EXISTS blocks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                previous_hash TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                data TEXT NOT NULL,
                hash TEXT NOT NULL UNIQUE,
                nonce INTEGER NOT NULL,
                signature TEXT,
                validator_id TEXT,
                endorsements TEXT NOT NULL DEFAULT '[]'
            )
            ''')
            conn.commit()

    @contextmanager
    def get_db_connection(self):
        conn = sqlite3.connect(self.path)
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _row(block: Block) -> tuple:
        return (block.previous_hash, block.timestamp, canonical_json(block.data), block.hash,
                block.nonce, block.signature, block.validator_id, json.dumps(block.endorsements))

    def load_all(self) -> list[Block]:
        with self.get_db_connection() as conn:
            rows = conn.execute(
                "SELECT previous_hash, timestamp, data, hash, nonce, signature, validator_id, "
                "endorsements FROM blocks ORDER BY id").fetchall()
        return [Block(timestamp=ts, data=json.loads(data), previous_hash=prev, nonce=nonce,
                      hash=h, signature=sig, validator_id=vid, endorsements=json.loads(ends))
                for prev, ts, data, h, nonce, sig, vid, ends in rows]

    def insert(self, block: Block):
        with self.get_db_connection() as conn:
            conn.execute(
                "INSERT INTO blocks (previous_hash, timestamp, data, hash, nonce, signature, "
                "validator_id, endorsements) VALUES (?, ?, ?, ?, ?, ?, ?, ?)", self._row(block))
            conn.commit()

    def replace_all(self, blocks: list[Block]):
        with self.get_db_connection() as conn:
            conn.execute("DELETE FROM blocks")
            conn.executemany(
                "INSERT INTO blocks (previous_hash, timestamp, data, hash, nonce, signature, "
                "validator_id, endorsements) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [self._row(b) for b in blocks])
            conn.commit()


def open_block_store(path: str = ""):
    return SQLiteBlockStore(path) if path else MemoryBlockStore()


# ───────────────────────────── chain ────────────────────────────────────
class Chain:
    """
    Ordered blocks from genesis to head.  All mutation goes through append()
    or replace_chain(), both under one re-entrant lock.
    """

    def __init__(self, store=None, authorities=None,
                 difficulty: int = MINING_DIFFICULTY,
                 require_signatures: bool = REQUIRE_BLOCK_SIGNATURES,
                 network_id: str = NETWORK_ID,
                 max_block_bytes: int = MAX_BLOCK_BYTES,
                 required_signatures: int = REQUIRED_SIGNATURES):
        self._lock = threading.RLock()
        self.store = store if store is not None else MemoryBlockStore()
        self.authorities = authorities
        self.difficulty = difficulty
        self.require_signatures = require_signatures
        self.required_signatures = max(1, required_signatures)
        self.network_id = network_id
        self.max_block_bytes = max_block_bytes
        self.genesis = create_genesis_block(network_id, difficulty)

        blocks = self.store.load_all()
        if not blocks:
            self.store.insert(self.genesis)
            blocks = [self.genesis]
            logger.info(f"Created genesis block {self.genesis.hash[:16]}…")
        self.blocks: list[Block] = blocks
        if not self.is_chain_valid():
            raise ChainIntegrityError("stored chain failed validation")

    def __len__(self):
        with self._lock:
            return len(self.blocks)

    @property
    def lock(self):
        return self._lock

    def latest_block(self) -> Block:
        with self._lock:
            return self.blocks[-1]

    def get_blocks(self, start: int = 0) -> list[Block]:
        with self._lock:
            return list(self.blocks[max(start, 0):])

    def contains(self, block_hash: str) -> bool:
        with self._lock:
            return any(b.hash == block_hash for b in self.blocks)

    # ───── validation ─────
    def verify_block_signature(self, block: Block) -> bool:
        if not block.signature or not block.validator_id:
            return not self.require_signatures
        if self.authorities is None or not self.authorities.is_authority(block.validator_id):
            return not self.require_signatures
        return self.authorities.verify(block.hash, block.signature, block.validator_id)

    def quorum_size(self) -> int:
        """Signatures a sealed block needs: required_signatures, capped by the authority count."""
        known = len(self.authorities) if self.authorities is not None else 0
        return max(1, min(self.required_signatures, known))

    def count_signers(self, block: Block) -> int:
        """Distinct authorities that signed ``block``. Any bad endorsement fails the block."""
        signers = {block.validator_id}
        for endorsement in block.endorsements:
            if not isinstance(endorsement, dict):
                raise ChainIntegrityError(f"block {block.hash[:16]} has a malformed endorsement")
            validator_id = endorsement.get("validatorId")
            if not self.authorities.verify(block.hash, endorsement.get("signature"), validator_id):
                raise ChainIntegrityError(
                    f"block {block.hash[:16]} carries an invalid endorsement from {validator_id}")
            signers.add(validator_id)
        return len(signers)

    def validate_block(self, block: Block, previous: Block, check_signature: bool = True,
                       check_quorum: bool = True):
        """
        Raise ChainIntegrityError describing the first failed check.

        ``check_quorum=False`` accepts a block carrying only its proposer's
        signature; that is what a proposal looks like before endorsement.
        """
        if block.hash != block.calculate_hash():
            raise ChainIntegrityError(f"block {block.hash[:16]} hash mismatch")
        if not block.hash.startswith("0" * self.difficulty):
            raise ChainIntegrityError(f"block {block.hash[:16]} does not meet difficulty")
        if block.previous_hash != previous.hash:
            raise ChainIntegrityError(f"block {block.hash[:16]} does not link to {previous.hash[:16]}")
        if block.size_bytes() > self.max_block_bytes:
            raise ChainIntegrityError(f"block {block.hash[:16]} exceeds {self.max_block_bytes} bytes")
        if not check_signature:
            return
        if not self.verify_block_signature(block):
            raise ChainIntegrityError(f"block {block.hash[:16]} has no valid authority signature")
        if check_quorum and self.require_signatures:
            signers, needed = self.count_signers(block), self.quorum_size()
            if signers < needed:
                raise ChainIntegrityError(
                    f"block {block.hash[:16]} has {signers}/{needed} authority signatures")

    def is_chain_valid(self, blocks: Optional[list[Block]] = None) -> bool:
        with self._lock:
            blocks = self.blocks if blocks is None else blocks
            if not blocks or blocks[0].to_dict() != self.genesis.to_dict():
                return False
            spent = set()
            for previous, block in zip(blocks, blocks[1:]):
                try:
                    self.validate_block(block, previous)
                except ChainIntegrityError as e:
                    logger.debug(f"Chain validation failed: {e}")
                    return False
                for tx in block.transactions:
                    for marker in spent_markers(tx):
                        if marker in spent:
                            logger.warning(f"Chain repeats {marker[0]} in election {marker[1]} "
                                           f"(block {block.hash[:16]})")
                            return False
                        spent.add(marker)
            return True

    # ───── mutation ─────
    def append(self, block: Block, check_signature: bool = True):
        with self._lock:
            self.validate_block(block, self.blocks[-1], check_signature=check_signature)
            self.store.insert(block)
            self.blocks.append(block)
        logger.info(f"Appended block #{len(self.blocks) - 1} {block.hash[:16]}… "
                    f"({len(block.transactions)} transactions)")

    def replace_chain(self, candidate: list[Block]) -> Optional[list[Block]]:
        """
        Longest-chain rule.  Adopt ``candidate`` only if strictly longer and
        valid; returns the local blocks that were dropped, or None when the
        local chain is kept.
        """
        with self._lock:
            if len(candidate) <= len(self.blocks):
                logger.debug("Candidate chain not longer than local chain, keeping local")
                return None
            if not self.is_chain_valid(candidate):
                logger.warning(f"Rejected invalid candidate chain of length {len(candidate)}")
                return None
            candidate_hashes = {b.hash for b in candidate}
            dropped = [b for b in self.blocks if b.hash not in candidate_hashes]
            self.store.replace_all(candidate)
            self.blocks = list(candidate)
        logger.info(f"Adopted longer chain of length {len(candidate)} "
                    f"({len(dropped)} local blocks dropped)")
        return dropped

    # ───── queries ─────
    def iter_transactions(self) -> Iterator[dict]:
        for block in self.get_blocks():
            for tx in block.transactions:
                if isinstance(tx, dict):
                    yield tx

    def get_all_votes(self) -> list[dict]:
        return list(self.iter_transactions())

    def get_votes_by_election(self, election_id: str) -> list[dict]:
        return [tx for tx in self.iter_transactions() if tx.get("electionId") == election_id]
