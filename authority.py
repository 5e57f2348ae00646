"""
Authority identity and peer networking.

An authority signs block hashes with RSA (PKCS#1 v1.5 over SHA-256).  The
AuthoritySet is the list of validator public keys every node checks block
signatures against.  AuthorityNode is the network face of a node: it keeps
the peer registry and talks to peers over HTTP with ``requests``.
"""
from __future__ import annotations

import base64
import enum
import json
import logging
import os
import secrets
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import requests
from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15

from config import API_PREFIX, AUTHORITY_KEY_BITS, PEER_TIMEOUT
from errors import PeerUnreachable

logger = logging.getLogger(__name__)


class NodeStatus(enum.Enum):
    INACTIVE = "inactive"
    SYNCING = "syncing"
    ACTIVE = "active"
    VALIDATING = "validating"


# ───────────────────────────── keys ─────────────────────────────────────
class AuthorityKeyPair:
    """Signing identity of a validator. The private key never leaves this object."""

    def __init__(self, key: RSA.RsaKey):
        if not key.has_private():
            raise ValueError("an authority key pair needs the private key")
        self._key = key

    @classmethod
    def generate(cls, bits: int = AUTHORITY_KEY_BITS) -> "AuthorityKeyPair":
        return cls(RSA.generate(bits))

    @classmethod
    def load_or_generate(cls, path: str, bits: int = AUTHORITY_KEY_BITS) -> "AuthorityKeyPair":
        if path and os.path.exists(path):
            with open(path, "rb") as f:
                keys = cls(RSA.import_key(f.read()))
            logger.info(f"Loaded authority key from {path}")
            return keys
        keys = cls.generate(bits)
        if path:
            with open(path, "wb") as f:
                f.write(keys._key.export_key())
            logger.info(f"Authority key saved to {path}")
        return keys

    @property
    def public_key_pem(self) -> str:
        return self._key.publickey().export_key().decode()

    def sign(self, block_hash: str) -> str:
        signature = pkcs1_15.new(self._key).sign(SHA256.new(block_hash.encode()))
        return base64.b64encode(signature).decode()


def load_authority_keys(path: str) -> dict[str, str]:
    """Read the configured validator set: a JSON object of node id → public key PEM."""
    if not path:
        return {}
    with open(path) as f:
        keys = json.load(f)
    if not isinstance(keys, dict) or not all(isinstance(v, str) for v in keys.values()):
        raise ValueError(f"{path} must map node ids to PEM public keys")
    logger.info(f"Loaded {len(keys)} authority keys from {path}")
    return keys


class AuthoritySet:
    """
    node_id → authority public key.

    The set is fixed by configuration; peers cannot join it by announcing
    themselves.  A peer's claim only counts when its key matches.
    """

    def __init__(self, trusted: Optional[dict[str, str]] = None):
        self._keys: dict[str, RSA.RsaKey] = {}
        self._lock = threading.Lock()
        for node_id, public_key_pem in (trusted or {}).items():
            self.add(node_id, public_key_pem)

    def add(self, node_id: str, public_key_pem: str):
        key = RSA.import_key(public_key_pem)
        with self._lock:
            self._keys[node_id] = key

    def matches(self, node_id: Optional[str], public_key_pem: str) -> bool:
        """Does an announced key equal the configured key for ``node_id``?"""
        announced = RSA.import_key(public_key_pem)
        with self._lock:
            known = self._keys.get(node_id)
        return known is not None and (known.n, known.e) == (announced.n, announced.e)

    def remove(self, node_id: str):
        with self._lock:
            self._keys.pop(node_id, None)

    def is_authority(self, node_id: Optional[str]) -> bool:
        with self._lock:
            return node_id in self._keys

    def node_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._keys)

    def __len__(self):
        with self._lock:
            return len(self._keys)

    def verify(self, block_hash: str, signature: str, node_id: str) -> bool:
        with self._lock:
            key = self._keys.get(node_id)
        if key is None or not isinstance(signature, str):
            return False
        try:
            pkcs1_15.new(key).verify(SHA256.new(block_hash.encode()), base64.b64decode(signature))
            return True
        except (ValueError, TypeError):
            return False


# ───────────────────────────── node ─────────────────────────────────────
class AuthorityNode:
    """
    Peer registry plus HTTP client for the peer protocol.

    ``session`` is anything with a requests-compatible ``request`` method;
    tests pass a router that dispatches to in-process Flask apps.
    """

    def __init__(self, url: str, node_id: Optional[str] = None, is_authority: bool = False,
                 keys: Optional[AuthorityKeyPair] = None, authorities: Optional[AuthoritySet] = None,
                 session=None, timeout: float = PEER_TIMEOUT):
        self.url = url.rstrip("/")
        self.node_id = node_id or secrets.token_hex(16)
        self.is_authority = is_authority
        self.authorities = authorities if authorities is not None else AuthoritySet()
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.status = NodeStatus.INACTIVE
        self.peers: dict[str, dict] = {}  # url -> {nodeId, isAuthority, lastSeen}
        self._peers_lock = threading.Lock()

        self._keys = keys
        if is_authority:
            if self._keys is None:
                self._keys = AuthorityKeyPair.generate()
            self.authorities.add(self.node_id, self._keys.public_key_pem)

    # ───── signing ─────
    @property
    def public_key_pem(self) -> Optional[str]:
        return self._keys.public_key_pem if self._keys is not None else None

    def sign_block(self, block):
        if not self.is_authority:
            raise PermissionError(f"node {self.node_id} is not an authority")
        block.set_signature(self._keys.sign(block.hash), self.node_id)
        return block

    def endorse(self, block_hash: str) -> dict:
        if not self.is_authority:
            raise PermissionError(f"node {self.node_id} is not an authority")
        return {"validatorId": self.node_id, "signature": self._keys.sign(block_hash)}

    # ───── peers ─────
    def add_peer(self, url: str, node_id: Optional[str] = None, is_authority: bool = False,
                 public_key: Optional[str] = None) -> bool:
        url = url.rstrip("/")
        if url == self.url:
            return False
        recognized = False
        if is_authority and node_id:
            if public_key:
                recognized = self.authorities.matches(node_id, public_key)
            else:
                recognized = self.authorities.is_authority(node_id)
            if not recognized:
                logger.warning(f"Peer {url} claims to be authority {node_id} "
                               f"but is not in the configured authority set")
        with self._peers_lock:
            known = url in self.peers
            previous = self.peers.get(url, {})
            self.peers[url] = {
                "nodeId": node_id or previous.get("nodeId") or "unknown",
                "isAuthority": recognized,
                "publicKey": public_key or previous.get("publicKey"),
                "lastSeen": time.time(),
            }
        if not known:
            logger.info(f"Added peer: {url} (Authority: {'Yes' if recognized else 'No'})")
        return True

    def remove_peer(self, url: str) -> bool:
        with self._peers_lock:
            return self.peers.pop(url.rstrip("/"), None) is not None

    def get_peers(self) -> list[dict]:
        with self._peers_lock:
            return [{"url": url, **info} for url, info in self.peers.items()]

    def authority_peers(self) -> list[dict]:
        return [peer for peer in self.get_peers() if peer["isAuthority"]]

    def _touch(self, url: str):
        with self._peers_lock:
            if url in self.peers:
                self.peers[url]["lastSeen"] = time.time()

    def info(self) -> dict:
        return {
            "nodeId": self.node_id,
            "url": self.url,
            "isAuthority": self.is_authority,
            "publicKey": self.public_key_pem,
            "status": self.status.value,
            "peerCount": len(self.peers),
        }

    # ───── HTTP ─────
    def request(self, method: str, peer_url: str, path: str, json=None, params=None) -> dict:
        """One call to a peer; every failure mode becomes PeerUnreachable."""
        url = f"{peer_url.rstrip('/')}{API_PREFIX}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, json=json, params=params,
                                            timeout=self.timeout)
        except requests.RequestException as e:
            raise PeerUnreachable(peer_url, e) from e
        if response.status_code >= 500:
            raise PeerUnreachable(peer_url, f"HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as e:
            raise PeerUnreachable(peer_url, f"invalid JSON: {e}") from e
        self._touch(peer_url.rstrip("/"))
        if response.status_code >= 400:
            body = dict(body or {})
            body.setdefault("error", f"HTTP {response.status_code}")
            body["_status"] = response.status_code
        return body

    def broadcast(self, path: str, payload: dict, peers: Optional[list[str]] = None) -> dict:
        """Best effort fan-out. Returns url -> response body for peers that answered."""
        targets = peers if peers is not None else [p["url"] for p in self.get_peers()]
        if not targets:
            return {}

        def _send(url):
            try:
                return url, self.request("POST", url, path, json=payload)
            except PeerUnreachable as e:
                logger.warning(f"Failed to broadcast to {url}{API_PREFIX}/{path}: {e}")
                return url, None

        with ThreadPoolExecutor(max_workers=min(8, len(targets))) as pool:
            results = dict(pool.map(_send, targets))
        return {url: body for url, body in results.items() if body is not None}

    def announce(self) -> dict:
        return {
            "url": self.url,
            "nodeId": self.node_id,
            "isAuthority": self.is_authority,
            "publicKey": self.public_key_pem,
        }

    def connect_to_network(self, seed_nodes: list[str]) -> int:
        """Register with every seed and learn the peers it knows about."""
        connected = 0
        for seed in seed_nodes:
            seed = seed.rstrip("/")
            if seed == self.url:
                continue
            try:
                info = self.request("GET", seed, "node/info")
                self.add_peer(seed, info.get("nodeId"), info.get("isAuthority", False),
                              info.get("publicKey"))
                self.request("POST", seed, "node/peers", json=self.announce())
                listing = self.request("GET", seed, "node/peers")
            except PeerUnreachable as e:
                logger.warning(f"Seed node {seed} unreachable: {e}")
                continue
            connected += 1
            for peer in listing.get("peers", []):
                if peer.get("url") and peer["url"].rstrip("/") not in (self.url, seed):
                    self.add_peer(peer["url"], peer.get("nodeId"), peer.get("isAuthority", False),
                                  peer.get("publicKey"))
        logger.info(f"Connected to {connected}/{len(seed_nodes)} seed nodes, {len(self.peers)} peers known")
        return connected

    def check_peers_status(self) -> dict:
        """Ping every peer; drop the ones that do not answer."""
        alive, dropped = 0, 0
        for peer in self.get_peers():
            try:
                self.request("GET", peer["url"], "node/info")
                alive += 1
            except PeerUnreachable as e:
                logger.warning(f"Removing unreachable peer {peer['url']}: {e}")
                self.remove_peer(peer["url"])
                dropped += 1
        return {"alive": alive, "removed": dropped}
