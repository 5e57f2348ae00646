"""
Error taxonomy shared by the crypto pipeline, the ledger and the HTTP layer.

Each error carries a ``public_message``: the only text that may be returned to
a voter or a peer.  The exception message itself can be detailed and goes to
the logs.
"""

BALLOT_REJECTED = "Ballot rejected"


class VotingError(Exception):
    """Base class for every error raised by the voting core."""

    public_message = "Request failed"

    def __init__(self, message=None, public_message=None):
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class CryptoParameterError(VotingError):
    """Malformed or out-of-range cryptographic input."""
    public_message = BALLOT_REJECTED


class KeyGenerationError(CryptoParameterError):
    public_message = "Key generation failed"


class BlindingError(VotingError):
    public_message = "Authorization failed"


class BlindingFactorError(BlindingError):
    """No usable blinding factor could be drawn within the retry budget."""


class SignatureInvalid(VotingError):
    public_message = BALLOT_REJECTED


class DoubleVoteDetected(VotingError):
    public_message = "A ballot has already been cast for this election"


class ChainIntegrityError(VotingError):
    public_message = "Block rejected"


class ConsensusTimeout(VotingError):
    public_message = "Block not confirmed"


class DecodeOverflowError(VotingError):
    public_message = "Tally could not be decoded"


class PeerUnreachable(VotingError):
    public_message = "Peer unreachable"

    def __init__(self, url, reason=None):
        self.url = url
        super().__init__(f"peer {url} unreachable: {reason}" if reason else f"peer {url} unreachable")


class UnknownElection(VotingError):
    public_message = "Unknown election"
