"""
Ledger voting test fixtures.

Keys are deliberately small (512-bit Paillier, 1024-bit RSA) so the suite
runs quickly; nothing in the code under test depends on the key size.
"""

import itertools
import json
from urllib.parse import urlsplit

import pytest
import requests

import homomorphic
import server
from authority import AuthorityKeyPair
from client import finish_ballot, prepare_ballot
from election import ElectionKeyring, ElectionRegistry, VoterKeyRegistry, initialize_election
from node import NodeContext
from ring_signature import generate_ecc_key_pair, select_ring

ELECTION_ID = "test-election"
CANDIDATES = ["Alice", "Bob", "Carol"]
MAX_VOTES = 10


class RoutedResponse:
    """The subset of requests.Response the node code relies on."""

    def __init__(self, flask_response):
        self.status_code = flask_response.status_code
        self.text = flask_response.get_data(as_text=True)

    def json(self):
        return json.loads(self.text)


class FlaskRouterSession:
    """
    Stand-in for requests.Session that dispatches by base URL to in-process
    Flask apps. Unknown or offline hosts raise requests.ConnectionError.
    """

    def __init__(self):
        self.clients = {}
        self.offline = set()

    def mount(self, base_url, app):
        self.clients[base_url.rstrip("/")] = app.test_client(use_cookies=False)

    def request(self, method, url, json=None, params=None, timeout=None):
        parts = urlsplit(url)
        base = f"{parts.scheme}://{parts.netloc}"
        client = self.clients.get(base)
        if client is None or base in self.offline:
            raise requests.ConnectionError(f"cannot reach {base}")
        response = client.open(parts.path, method=method, json=json, query_string=params)
        return RoutedResponse(response)


@pytest.fixture(scope="session")
def paillier_keys():
    """A 512-bit Paillier key pair shared by the pure crypto tests."""
    return homomorphic.generate_key_pair(512)


@pytest.fixture(scope="session")
def authority_keys():
    """Three authority identities reused across node fixtures."""
    return [AuthorityKeyPair.generate(1024) for _ in range(3)]


@pytest.fixture
def router():
    return FlaskRouterSession()


@pytest.fixture
def registries():
    return ElectionRegistry(), ElectionKeyring(), VoterKeyRegistry()


@pytest.fixture
def election(registries):
    elections, keyring, _ = registries
    created, _ = initialize_election(ELECTION_ID, CANDIDATES, elections, keyring,
                                     key_bits=512, blind_key_bits=1024, max_votes=MAX_VOTES)
    return created


@pytest.fixture
def voter_keys(registries):
    """Six registered voters with their ring-signature key pairs."""
    _, _, voters = registries
    keys = {}
    for i in range(6):
        voter_id = f"voter{i + 1:03d}"
        keys[voter_id] = generate_ecc_key_pair()
        voters.register(voter_id, keys[voter_id].public_key)
    return keys


@pytest.fixture
def trusted_authorities(authority_keys):
    """The configured validator set: authority-0..2 and their public keys."""
    return {f"authority-{k}": keys.public_key_pem for k, keys in enumerate(authority_keys)}


@pytest.fixture
def make_node(router, registries, authority_keys, trusted_authorities):
    """
    Factory for nodes mounted on the router.  Authorities take keys in order
    and are named after them, so every node trusts the same validator set.
    """
    counter = itertools.count()
    authority_index = itertools.count()
    created = []

    def _make(is_authority=True, **options):
        i = next(counter)
        url = f"http://node{i}.test"
        if is_authority:
            k = next(authority_index)
            node_id, keys = f"authority-{k}", authority_keys[k]
        else:
            node_id, keys = f"observer-{i}", None
        elections, keyring, voters = registries
        settings = dict(difficulty=1, quorum_timeout=2.0, peer_timeout=2.0,
                        mixnet_batch_size=3, mixnet_max_wait=60.0, mixnet_check_interval=60.0,
                        block_interval=60.0, sync_interval=60.0,
                        trusted_authorities=trusted_authorities)
        settings.update(options)
        context = NodeContext(url=url, node_id=node_id, is_authority=is_authority,
                              authority_keys=keys, session=router, elections=elections,
                              keyring=keyring, voters=voters, **settings)
        router.mount(url, server.create_app(context))
        created.append(context)
        return context

    yield _make
    for context in created:
        context.stop()


@pytest.fixture
def ballot_factory(election, voter_keys, registries):
    """Build a fully authorized, ring-signed ballot through a node's service."""
    _, _, voters = registries

    def _build(context, voter_id, position, ring_size=3, keys=None):
        draft = prepare_ballot(election, position)
        blind_sig = context.voting.authorize_ballot(voter_id, election.election_id, draft.blinded)
        ring = select_ring(voter_id, ring_size, voters)
        return finish_ballot(draft, blind_sig, keys or voter_keys[voter_id], ring)

    return _build


def connect(*contexts):
    """Register every node with every other one."""
    for context in contexts:
        for other in contexts:
            if other is not context:
                context.node.add_peer(other.url, other.node_id, other.node.is_authority,
                                      other.node.public_key_pem)
