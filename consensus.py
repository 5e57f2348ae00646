"""
Proof-of-Authority consensus.

Sealing a block (authority node):

    PROPOSED ─sign─▶ SIGNED ─propose to authorities─▶ BROADCAST ─quorum─▶ ACCEPTED
                                                             └─timeout─▶ REJECTED

A proposal is sent to every known authority with ``phase=propose``.  Each one
checks hash, linkage, proposer signature and payload and answers with an
endorsement (its own signature over the block hash) without appending.  The
QuorumRound resolves as soon as ``required_signatures`` distinct valid
signatures (the proposer's included) are held, or fails with ConsensusTimeout
after ``quorum_timeout`` seconds.  Only then is the block appended locally
and sent to all peers with ``phase=commit``.

When fewer authorities are configured than ``required_signatures`` the quorum
shrinks to the number configured and a warning is logged.  Receivers apply
the same rule: a committed block must carry that many valid signatures.
Rejected proposals give their transactions back to the pending queue.

Every block, local or received, passes ``payload_validator`` before it is
appended.  Whenever the chain grows, ``payload_filter`` prunes pending
transactions that can no longer be sealed, such as a second ballot with a key
image another node has already published.
"""
from __future__ import annotations

import concurrent.futures
import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from authority import AuthorityNode, NodeStatus
from config import BLOCK_INTERVAL, QUORUM_TIMEOUT, REQUIRED_SIGNATURES, SYNC_INTERVAL
from errors import ChainIntegrityError, ConsensusTimeout, PeerUnreachable, VotingError
from ledger import Block, Chain, canonical_json, utc_timestamp

logger = logging.getLogger(__name__)

PHASE_PROPOSE = "propose"
PHASE_COMMIT = "commit"


class BlockState(enum.Enum):
    PROPOSED = "proposed"
    SIGNED = "signed"
    BROADCAST = "broadcast"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class QuorumState(enum.Enum):
    COLLECTING = "collecting"
    REACHED = "reached"
    TIMED_OUT = "timed_out"


class QuorumRound:
    """Distinct, verified authority signatures over one block hash."""

    def __init__(self, block: Block, required: int, authorities):
        self.block = block
        self.required = required
        self.authorities = authorities
        self.signatures: dict[str, str] = {}
        self.state = QuorumState.COLLECTING
        if block.signature and block.validator_id:
            self.offer(block.validator_id, block.signature)

    @property
    def reached(self) -> bool:
        return self.state is QuorumState.REACHED

    def offer(self, validator_id, signature) -> bool:
        if self.state is not QuorumState.COLLECTING:
            return False
        if not validator_id or validator_id in self.signatures:
            return False
        if not self.authorities.verify(self.block.hash, signature, validator_id):
            logger.warning(f"Discarding invalid endorsement from {validator_id}")
            return False
        self.signatures[validator_id] = signature
        if len(self.signatures) >= self.required:
            self.state = QuorumState.REACHED
        return True

    def time_out(self):
        if self.state is QuorumState.COLLECTING:
            self.state = QuorumState.TIMED_OUT

    def endorsements(self) -> list[tuple[str, str]]:
        return [(vid, sig) for vid, sig in self.signatures.items()
                if vid != self.block.validator_id]


def _tx_key(tx) -> str:
    return canonical_json(tx)


class ConsensusCoordinator:
    """
    Owns the pending-transaction queue and every chain mutation of one node.

    ``payload_validator`` is called with the transaction list of every block
    before it is appended and raises VotingError to reject it.
    ``payload_filter`` returns the subset of a transaction list that may
    still be sealed.  ``on_chain_update`` runs after the chain has grown.
    """

    def __init__(self, chain: Chain, node: AuthorityNode,
                 required_signatures: int = REQUIRED_SIGNATURES,
                 quorum_timeout: float = QUORUM_TIMEOUT,
                 block_interval: float = BLOCK_INTERVAL,
                 sync_interval: float = SYNC_INTERVAL,
                 payload_validator: Optional[Callable[[list], None]] = None,
                 payload_filter: Optional[Callable[[list], list]] = None):
        self.chain = chain
        self.node = node
        self.required_signatures = max(1, required_signatures)
        self.quorum_timeout = quorum_timeout
        self.block_interval = block_interval
        self.sync_interval = sync_interval
        self.payload_validator = payload_validator
        self.payload_filter = payload_filter
        self.on_chain_update: Optional[Callable[[], None]] = None

        self.pending: list[dict] = []
        self._pending_lock = threading.Lock()
        self._seal_lock = threading.Lock()
        self.block_states: dict[str, BlockState] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    # ───── pending queue ─────
    def submit_transactions(self, transactions: list[dict]):
        fresh = []
        with self._pending_lock:
            known = {_tx_key(tx) for tx in self.pending}
            for tx in transactions:
                key = _tx_key(tx)
                if key not in known:
                    known.add(key)
                    fresh.append(tx)
            self.pending.extend(fresh)
        logger.info(f"Queued {len(fresh)} transactions ({len(self.pending)} pending)")

    def submit_transaction(self, transaction: dict):
        self.submit_transactions([transaction])

    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self.pending)

    def _take_pending(self) -> list[dict]:
        with self._pending_lock:
            taken, self.pending = self.pending, []
            return taken

    def _requeue(self, transactions: list[dict]):
        on_chain = {_tx_key(tx) for tx in self.chain.iter_transactions()}
        missing = [tx for tx in transactions if _tx_key(tx) not in on_chain]
        if not missing:
            return
        with self._pending_lock:
            self.pending[:0] = missing
        logger.info(f"Requeued {len(missing)} transactions")

    def _forget_pending(self, transactions: list[dict]):
        sealed = {_tx_key(tx) for tx in transactions}
        with self._pending_lock:
            self.pending = [tx for tx in self.pending if _tx_key(tx) not in sealed]

    def _prune_pending(self):
        if self.payload_filter is None:
            return
        with self._pending_lock:
            snapshot = list(self.pending)
        if not snapshot:
            return
        kept = {_tx_key(tx) for tx in self.payload_filter(snapshot)}
        checked = {_tx_key(tx) for tx in snapshot}
        with self._pending_lock:
            before = len(self.pending)
            self.pending = [tx for tx in self.pending
                            if _tx_key(tx) not in checked or _tx_key(tx) in kept]
            dropped = before - len(self.pending)
        if dropped:
            logger.warning(f"Dropped {dropped} pending transactions that conflict with the chain")

    def _after_chain_update(self, sealed: list[dict]):
        self._forget_pending(sealed)
        self._prune_pending()
        if self.on_chain_update is not None:
            self.on_chain_update()

    def _set_state(self, block: Block, state: BlockState):
        self.block_states[block.hash] = state
        logger.debug(f"Block {block.hash[:16]}… → {state.value}")

    # ───── sealing ─────
    def seal_pending(self) -> Optional[Block]:
        """Turn the pending queue into one block; availability errors requeue."""
        transactions = self._take_pending()
        if self.payload_filter is not None and transactions:
            transactions = self.payload_filter(transactions)
        if not transactions:
            return None
        try:
            return self.add_block({"transactions": transactions})
        except (ConsensusTimeout, ChainIntegrityError) as e:
            logger.warning(f"Block not sealed, requeueing {len(transactions)} transactions: {e}")
            self._requeue(transactions)
            return None

    def add_block(self, data: dict) -> Block:
        with self._seal_lock:
            head = self.chain.latest_block()
            block = Block(timestamp=utc_timestamp(), data=data, previous_hash=head.hash)
            block.mine_block(self.chain.difficulty)
            self._set_state(block, BlockState.PROPOSED)
            try:
                self._validate_payload(block)
            except ChainIntegrityError:
                self._set_state(block, BlockState.REJECTED)
                raise

            if not self.node.is_authority:
                return self._add_unsigned_block(block)

            self.node.sign_block(block)
            self._set_state(block, BlockState.SIGNED)
            self._seal(block)

        self._broadcast_commit(block)
        return block

    def _seal(self, block: Block):
        """Collect the quorum for a signed block and append it. Caller holds the seal lock."""
        known = len(self.node.authorities)
        needed = min(self.required_signatures, known)
        if known < self.required_signatures:
            logger.warning(f"Only {known} authorities configured, {self.required_signatures} "
                           f"required: sealing with {needed} signatures")
        if needed > 1:
            self.node.status = NodeStatus.VALIDATING
            try:
                quorum = self._collect_quorum(block, needed)
            except ConsensusTimeout:
                self._set_state(block, BlockState.REJECTED)
                raise
            finally:
                self.node.status = NodeStatus.ACTIVE
            for validator_id, signature in quorum.endorsements():
                block.add_endorsement(validator_id, signature)

        try:
            self.chain.append(block)
        except ChainIntegrityError:
            # head moved while the quorum was being collected
            self._set_state(block, BlockState.REJECTED)
            raise
        self._set_state(block, BlockState.ACCEPTED)

    def _add_unsigned_block(self, block: Block) -> Block:
        """Non-authority: hand the block to the authorities to counter-sign."""
        if not self.chain.require_signatures:
            self.chain.append(block, check_signature=False)
            self._set_state(block, BlockState.ACCEPTED)
        responses = self._broadcast_commit(block)
        if not self.chain.require_signatures:
            return block
        self._set_state(block, BlockState.BROADCAST)
        if not any(body.get("accepted") for body in responses.values()):
            self._set_state(block, BlockState.REJECTED)
            raise ConsensusTimeout(f"no authority accepted block {block.hash[:16]}")
        return block

    def _quorum_pool(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="quorum")
            return self._executor

    def _collect_quorum(self, block: Block, needed: int) -> QuorumRound:
        quorum = QuorumRound(block, needed, self.node.authorities)
        if quorum.reached:
            return quorum

        peers = [peer["url"] for peer in self.node.authority_peers()]
        payload = {"block": block.to_dict(), "sender": self.node.node_id, "phase": PHASE_PROPOSE}
        self._set_state(block, BlockState.BROADCAST)

        pool = self._quorum_pool()
        futures = [pool.submit(self.node.request, "POST", url, "blockchain/block", payload)
                   for url in peers]
        try:
            for future in concurrent.futures.as_completed(futures, timeout=self.quorum_timeout):
                try:
                    body = future.result()
                except PeerUnreachable as e:
                    logger.warning(f"Authority unreachable during quorum: {e}")
                    continue
                if "_status" in body:
                    logger.warning(f"Proposal {block.hash[:16]}… refused: {body.get('error')}")
                    continue
                endorsement = body.get("endorsement") or {}
                quorum.offer(endorsement.get("validatorId"), endorsement.get("signature"))
                if quorum.reached:
                    logger.info(f"Quorum reached for {block.hash[:16]}… "
                                f"({len(quorum.signatures)}/{needed})")
                    return quorum
        except concurrent.futures.TimeoutError:
            pass
        finally:
            for future in futures:
                future.cancel()

        quorum.time_out()
        raise ConsensusTimeout(
            f"block {block.hash[:16]} collected {len(quorum.signatures)}/"
            f"{needed} signatures within {self.quorum_timeout}s")

    def _broadcast_commit(self, block: Block) -> dict:
        return self.node.broadcast("blockchain/block", {
            "block": block.to_dict(),
            "sender": self.node.node_id,
            "phase": PHASE_COMMIT,
        })

    # ───── receiving ─────
    def _validate_payload(self, block: Block):
        if self.payload_validator is None:
            return
        try:
            self.payload_validator(block.transactions)
        except VotingError as e:
            raise ChainIntegrityError(f"block {block.hash[:16]} payload rejected: {e}") from e

    def endorse_block(self, block_data, sender_id: Optional[str] = None) -> dict:
        """``phase=propose``: validate against our head and sign, never append."""
        if not self.node.is_authority:
            raise ChainIntegrityError("this node does not endorse blocks")
        block = Block.from_dict(block_data)
        try:
            self.chain.validate_block(block, self.chain.latest_block(), check_quorum=False)
            self._validate_payload(block)
        except ChainIntegrityError as e:
            logger.warning(f"Refusing to endorse block from {sender_id}: {e}")
            raise
        logger.info(f"Endorsed block {block.hash[:16]}… proposed by {sender_id}")
        return self.node.endorse(block.hash)

    def receive_block(self, block_data, sender_id: Optional[str] = None) -> dict:
        """``phase=commit``: validate and append; unsigned blocks are counter-signed first."""
        block = Block.from_dict(block_data)
        if self.node.is_authority and not block.signature:
            return self._countersign(block, sender_id)

        with self.chain.lock:
            if self.chain.contains(block.hash):
                return {"accepted": True, "duplicate": True}
            try:
                self.chain.validate_block(block, self.chain.latest_block())
                self._validate_payload(block)
                self.chain.append(block)
            except ChainIntegrityError as e:
                self._set_state(block, BlockState.REJECTED)
                logger.warning(f"Rejected block from {sender_id}: {e}")
                raise
            self._set_state(block, BlockState.ACCEPTED)

        self._after_chain_update(block.transactions)
        return {"accepted": True, "countersigned": False}

    def _countersign(self, block: Block, sender_id: Optional[str]) -> dict:
        with self._seal_lock:
            if self.chain.contains(block.hash):
                return {"accepted": True, "duplicate": True}
            try:
                self.chain.validate_block(block, self.chain.latest_block(), check_signature=False)
                self._validate_payload(block)
            except ChainIntegrityError as e:
                self._set_state(block, BlockState.REJECTED)
                logger.warning(f"Rejected block from {sender_id}: {e}")
                raise
            self.node.sign_block(block)
            self._set_state(block, BlockState.SIGNED)
            self._seal(block)

        logger.info(f"Counter-signed block {block.hash[:16]}… from {sender_id}")
        self._after_chain_update(block.transactions)
        self._broadcast_commit(block)
        return {"accepted": True, "countersigned": True}

    # ───── synchronisation ─────
    def sync_from_peer(self, peer_url: str) -> bool:
        try:
            body = self.node.request("GET", peer_url, "blockchain/chain", params={"startBlock": 0})
            candidate = [Block.from_dict(b) for b in body.get("chain", [])]
        except (PeerUnreachable, ChainIntegrityError) as e:
            logger.warning(f"Could not fetch chain from {peer_url}: {e}")
            return False

        dropped = self.chain.replace_chain(candidate)
        if dropped is None:
            return False
        orphaned = [tx for block in dropped for tx in block.transactions]
        self._requeue(orphaned)
        self._after_chain_update([tx for block in candidate for tx in block.transactions])
        logger.info(f"Synchronised chain from {peer_url} (length {len(candidate)})")
        return True

    def sync_with_network(self) -> bool:
        """Longest-chain rule over all reachable peers."""
        self.node.status = NodeStatus.SYNCING
        try:
            lengths = []
            for peer in self.node.get_peers():
                try:
                    latest = self.node.request("GET", peer["url"], "blockchain/latestBlock")
                    lengths.append((int(latest["blockNumber"]) + 1, peer["url"]))
                except PeerUnreachable as e:
                    logger.warning(f"Skipping peer during sync: {e}")
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Peer {peer['url']} sent a malformed head: {e}")

            for length, url in sorted(lengths, reverse=True):
                if length <= len(self.chain):
                    break
                if self.sync_from_peer(url):
                    return True
            return False
        finally:
            self.node.status = NodeStatus.ACTIVE

    # ───── periodic loop ─────
    def _run(self):
        since_sync = 0.0
        while not self._stop_event.wait(self.block_interval):
            since_sync += self.block_interval
            try:
                if since_sync >= self.sync_interval:
                    since_sync = 0.0
                    self.sync_with_network()
                self.seal_pending()
            except VotingError as e:
                logger.error(f"Consensus loop iteration failed: {e}")

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="consensus", daemon=True)
        self._thread.start()
        logger.info(f"Consensus loop started (block every {self.block_interval}s, "
                    f"sync every {self.sync_interval}s)")

    def stop(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self.block_interval + 1)
            self._thread = None
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True, cancel_futures=True)
        logger.info("Consensus loop stopped")
