"""
NodeContext: everything one node owns, wired together explicitly.

    Mixnet ──batch──▶ ConsensusCoordinator.submit_transactions
    ConsensusCoordinator ──payload check──▶ VotingService.validate_transactions
    ConsensusCoordinator ──chain grew──▶ Mixnet.retain(VotingService.admissible_transactions)

Several contexts can live in one process (tests, simulation); nothing here is
module-global.
"""
from __future__ import annotations

import logging
from typing import Optional

import config
from authority import AuthorityKeyPair, AuthorityNode, AuthoritySet, NodeStatus, load_authority_keys
from consensus import ConsensusCoordinator
from election import ElectionKeyring, ElectionRegistry, VoterKeyRegistry
from ledger import Chain, open_block_store
from mixnet import Mixnet
from voting import VotingService

logger = logging.getLogger(__name__)


class NodeContext:
    def __init__(self, url: str = config.NODE_URL, node_id: Optional[str] = None,
                 is_authority: bool = config.IS_AUTHORITY,
                 authority_keys: Optional[AuthorityKeyPair] = None,
                 store=None, session=None,
                 elections: Optional[ElectionRegistry] = None,
                 keyring: Optional[ElectionKeyring] = None,
                 voters: Optional[VoterKeyRegistry] = None,
                 difficulty: int = config.MINING_DIFFICULTY,
                 require_signatures: bool = config.REQUIRE_BLOCK_SIGNATURES,
                 required_signatures: int = config.REQUIRED_SIGNATURES,
                 quorum_timeout: float = config.QUORUM_TIMEOUT,
                 peer_timeout: float = config.PEER_TIMEOUT,
                 block_interval: float = config.BLOCK_INTERVAL,
                 sync_interval: float = config.SYNC_INTERVAL,
                 mixnet_batch_size: int = config.MIXNET_MIN_BATCH_SIZE,
                 mixnet_max_wait: float = config.MIXNET_MAX_WAIT,
                 mixnet_check_interval: float = config.MIXNET_CHECK_INTERVAL,
                 allow_degraded: bool = config.ALLOW_DEGRADED_SIGNATURES,
                 ring_size: int = config.RING_SIZE,
                 trusted_authorities: Optional[dict[str, str]] = None):
        if is_authority and authority_keys is None:
            authority_keys = AuthorityKeyPair.load_or_generate(config.AUTHORITY_KEY_PATH,
                                                               config.AUTHORITY_KEY_BITS)
        if trusted_authorities is None:
            trusted_authorities = load_authority_keys(config.AUTHORITY_KEYS_PATH)
        self.ring_size = ring_size
        self.authorities = AuthoritySet(trusted_authorities)
        self.node = AuthorityNode(url, node_id or config.NODE_ID or None, is_authority,
                                  authority_keys, self.authorities, session, peer_timeout)
        self.chain = Chain(store if store is not None else open_block_store(config.BLOCK_STORE_PATH),
                           self.authorities, difficulty, require_signatures,
                           required_signatures=required_signatures)
        self.coordinator = ConsensusCoordinator(self.chain, self.node, required_signatures,
                                                quorum_timeout, block_interval, sync_interval)
        self.mixnet = Mixnet(self.coordinator.submit_transactions, mixnet_batch_size,
                             mixnet_max_wait, mixnet_check_interval)

        self.elections = elections if elections is not None else ElectionRegistry()
        self.keyring = keyring if keyring is not None else ElectionKeyring()
        self.voters = voters if voters is not None else VoterKeyRegistry()
        self.voting = VotingService(self.elections, self.keyring, self.voters, self.chain,
                                    self.mixnet, allow_degraded)
        self.coordinator.payload_validator = self.voting.validate_transactions
        self.coordinator.payload_filter = self.voting.admissible_transactions
        self.coordinator.on_chain_update = self._evict_buffered_conflicts

    def _evict_buffered_conflicts(self):
        if self.coordinator.payload_filter is not None:
            self.mixnet.retain(self.coordinator.payload_filter)

    @property
    def node_id(self) -> str:
        return self.node.node_id

    @property
    def url(self) -> str:
        return self.node.url

    def start(self, seed_nodes: Optional[list[str]] = None, background: bool = True):
        """Join the network, catch up with the longest chain, start timers."""
        seeds = config.SEED_NODES if seed_nodes is None else seed_nodes
        if seeds:
            self.node.connect_to_network(seeds)
            self.coordinator.sync_with_network()
        self.node.status = NodeStatus.ACTIVE
        if background:
            self.mixnet.start()
            self.coordinator.start()
        logger.info(f"Node {self.node_id} active at {self.url} "
                    f"({'authority' if self.node.is_authority else 'observer'}, "
                    f"chain length {len(self.chain)})")

    def stop(self):
        self.mixnet.stop()
        self.coordinator.stop()
        self.node.status = NodeStatus.INACTIVE

    def close_election(self, election_id: str) -> int:
        return self.voting.close_election(election_id, self.coordinator)

    def info(self) -> dict:
        info = self.node.info()
        info.update({
            "chainLength": len(self.chain),
            "pendingTransactions": self.coordinator.pending_count(),
            "mixnet": self.mixnet.info(),
        })
        return info
