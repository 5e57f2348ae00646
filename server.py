"""
Node Server - peer protocol and voting API for one ledger node.

Peers use the /api/node/* and /api/blockchain/* routes to gossip blocks and
synchronise chains; voters use /api/elections/* to get a blind authorization
and /api/blockchain/transaction to cast an encrypted, ring-signed ballot.
Private key material is only used inside the service calls, never returned.
"""

import logging
from flask import Flask, request, jsonify

from config import API_PREFIX, LOG_FORMAT, LOG_LEVEL, NODE_PORT
from errors import (VotingError, ChainIntegrityError, ConsensusTimeout, DoubleVoteDetected,
                    UnknownElection, DecodeOverflowError, CryptoParameterError)
from consensus import PHASE_COMMIT, PHASE_PROPOSE
from node import NodeContext
import blind_signature

# Configure logging
logging.basicConfig(format=LOG_FORMAT, level=LOG_LEVEL)
logger = logging.getLogger(__name__)


def _status_for(error: VotingError) -> int:
    if isinstance(error, DoubleVoteDetected):
        return 409
    if isinstance(error, UnknownElection):
        return 404
    if isinstance(error, ConsensusTimeout):
        return 503
    if isinstance(error, DecodeOverflowError):
        return 500
    return 400


def _reject(error: VotingError):
    return jsonify({"error": error.public_message}), _status_for(error)


def create_app(context: NodeContext) -> Flask:
    """Build the Flask app for one node; all state lives in ``context``."""
    app = Flask(__name__)
    app.config["NODE_CONTEXT"] = context
    chain, coordinator, node, voting = context.chain, context.coordinator, context.node, context.voting

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint."""
        return jsonify({
            "status": "healthy",
            "nodeId": node.node_id,
            "chainLength": len(chain),
        }), 200

    # ───── node ─────
    @app.route(f"{API_PREFIX}/node/info", methods=["GET"])
    def node_info():
        return jsonify(context.info()), 200

    @app.route(f"{API_PREFIX}/node/status", methods=["GET"])
    def node_status():
        return jsonify({
            "nodeId": node.node_id,
            "status": node.status.value,
            "peerCount": len(node.peers),
            "chainLength": len(chain),
        }), 200

    @app.route(f"{API_PREFIX}/node/peers", methods=["GET"])
    def list_peers():
        return jsonify({"peers": node.get_peers()}), 200

    @app.route(f"{API_PREFIX}/node/peers", methods=["POST"])
    def register_peer():
        """
        Register a peer.

        Expected JSON: {"url": "...", "nodeId": "...", "isAuthority": bool, "publicKey": "<pem>"}
        """
        data = request.get_json(silent=True)
        if not data or not data.get("url"):
            return jsonify({"error": "Missing 'url' parameter"}), 400
        try:
            added = node.add_peer(data["url"], data.get("nodeId"), data.get("isAuthority", False),
                                  data.get("publicKey"))
        except ValueError as e:
            logger.warning(f"Peer {data['url']} sent an unusable public key: {e}")
            return jsonify({"error": "Invalid public key"}), 400
        return jsonify({"status": "success", "added": added, "peerCount": len(node.peers)}), 200

    # ───── blockchain ─────
    @app.route(f"{API_PREFIX}/blockchain/latestBlock", methods=["GET"])
    def latest_block():
        block = chain.latest_block()
        return jsonify({
            "hash": block.hash,
            "previousHash": block.previous_hash,
            "timestamp": block.timestamp,
            "blockNumber": len(chain) - 1,
        }), 200

    @app.route(f"{API_PREFIX}/blockchain/chain", methods=["GET"])
    def get_chain():
        start = request.args.get("startBlock", default=0, type=int)
        blocks = chain.get_blocks(start)
        return jsonify({
            "startBlock": start,
            "length": len(chain),
            "chain": [b.to_dict() for b in blocks],
        }), 200

    @app.route(f"{API_PREFIX}/blockchain/block", methods=["POST"])
    def receive_block():
        """
        Receive a block from a peer.

        Expected JSON: {"block": {...}, "sender": "<nodeId>", "phase": "propose" | "commit"}
        """
        data = request.get_json(silent=True)
        if not data or "block" not in data:
            return jsonify({"error": "Missing 'block' parameter"}), 400
        phase = data.get("phase", PHASE_COMMIT)
        try:
            if phase == PHASE_PROPOSE:
                endorsement = coordinator.endorse_block(data["block"], data.get("sender"))
                return jsonify({"status": "endorsed", "endorsement": endorsement}), 200
            if phase != PHASE_COMMIT:
                return jsonify({"error": f"Unknown phase {phase!r}"}), 400
            result = coordinator.receive_block(data["block"], data.get("sender"))
        except (ChainIntegrityError, ConsensusTimeout) as e:
            return _reject(e)
        return jsonify(result), 200

    @app.route(f"{API_PREFIX}/blockchain/transaction", methods=["POST"])
    def submit_transaction():
        """
        Cast a ballot.

        Expected JSON: {"transaction": {"kind": "encrypted-ballot", ...}}
        """
        data = request.get_json(silent=True)
        if not data or "transaction" not in data:
            return jsonify({"error": "Missing 'transaction' parameter"}), 400
        try:
            receipt = voting.cast_ballot(data["transaction"])
        except VotingError as e:
            return _reject(e)
        return jsonify({"status": "success", "receipt": receipt}), 200

    @app.route(f"{API_PREFIX}/blockchain/sync", methods=["POST"])
    def sync_chain():
        adopted = coordinator.sync_with_network()
        return jsonify({"status": "success", "adopted": adopted, "chainLength": len(chain)}), 200

    # ───── voters & elections ─────
    @app.route(f"{API_PREFIX}/voters", methods=["GET"])
    def list_voters():
        return jsonify({"voters": context.voters.to_dict()}), 200

    @app.route(f"{API_PREFIX}/voters", methods=["POST"])
    def register_voter():
        """Expected JSON: {"voterId": "...", "publicKey": "<compressed P-256 hex>"}"""
        data = request.get_json(silent=True)
        if not data or not data.get("voterId") or not data.get("publicKey"):
            return jsonify({"error": "Missing 'voterId' or 'publicKey'"}), 400
        try:
            context.voters.register(data["voterId"], data["publicKey"])
        except CryptoParameterError as e:
            return _reject(e)
        return jsonify({"status": "success"}), 200

    @app.route(f"{API_PREFIX}/elections", methods=["GET"])
    def list_elections():
        return jsonify({"elections": [e.to_dict() for e in context.elections.elections()]}), 200

    @app.route(f"{API_PREFIX}/elections/<election_id>", methods=["GET"])
    def get_election(election_id):
        try:
            return jsonify(context.elections.get(election_id).to_dict()), 200
        except UnknownElection as e:
            return _reject(e)

    @app.route(f"{API_PREFIX}/elections/<election_id>/authorize", methods=["POST"])
    def authorize(election_id):
        """
        Blind-sign a ballot authorization.

        Expected JSON: {"voterId": "...", "blinded": "<decimal>"}
        """
        data = request.get_json(silent=True)
        if not data or "voterId" not in data or "blinded" not in data:
            return jsonify({"error": "Missing 'voterId' or 'blinded'"}), 400
        try:
            blinded = blind_signature.parse_signature(data["blinded"])
            signed = voting.authorize_ballot(data["voterId"], election_id, blinded)
        except VotingError as e:
            return _reject(e)
        return jsonify({"blindSignature": str(signed)}), 200

    @app.route(f"{API_PREFIX}/elections/<election_id>/votes", methods=["GET"])
    def election_votes(election_id):
        try:
            context.elections.get(election_id)
        except UnknownElection as e:
            return _reject(e)
        votes = voting.get_election_votes(election_id)
        return jsonify({"electionId": election_id, "votes": votes, "count": len(votes)}), 200

    @app.route(f"{API_PREFIX}/elections/<election_id>/tally", methods=["GET"])
    def encrypted_tally(election_id):
        """Return the homomorphically computed encrypted sum of all ballots."""
        try:
            tally = voting.encrypted_tally(election_id)
        except VotingError as e:
            return _reject(e)
        logger.info(f"Encrypted tally requested - {tally.ballot_count} ballots in {election_id}")
        return jsonify(tally.to_dict()), 200

    @app.route(f"{API_PREFIX}/elections/<election_id>/close", methods=["POST"])
    def close_election(election_id):
        try:
            released = context.close_election(election_id)
        except VotingError as e:
            return _reject(e)
        return jsonify({"status": "success", "released": released}), 200

    @app.route(f"{API_PREFIX}/elections/<election_id>/finalize", methods=["POST"])
    def finalize_election(election_id):
        try:
            result = voting.finalize_election(election_id)
        except VotingError as e:
            logger.error(f"Finalizing {election_id} failed: {e}")
            return _reject(e)
        return jsonify(result), 200

    return app


def main():
    context = NodeContext()
    app = create_app(context)
    context.start()
    logger.info(f"Starting node {context.node_id} on port {NODE_PORT}")
    try:
        app.run(host="0.0.0.0", port=NODE_PORT, debug=False, use_reloader=False)
    finally:
        context.stop()


if __name__ == "__main__":
    main()
