"""
Ephemeral ECDH Key Exchange

Each local session owns one ephemeral P-256 keypair. A shared key is derived
per remote peer from our private key and the peer's published public key; the
peer does the same with ours, and both arrive at the same 32-byte key without
it ever crossing the wire.
"""

import logging
from enum import Enum
from typing import Dict, Optional, Set
from dataclasses import dataclass
from cryptography.hazmat.primitives.asymmetric import ec

from .primitives import (
    generate_ecdh_keypair,
    ecdh_exchange,
    encode_public_key,
    decode_public_key,
    deserialize_public_key,
)

logger = logging.getLogger(__name__)


class PeerState(Enum):
    """Key establishment progress for one remote peer"""
    UNKNOWN = "unknown"
    KEY_REQUESTED = "key_requested"
    ESTABLISHED = "established"


@dataclass(frozen=True)
class Peer:
    """
    A remote session we hold a shared key with.

    Attributes:
        peer_id: The remote session identifier
        public_key: The remote's imported public key
        shared_key: 32-byte symmetric key derived for this peer
    """
    peer_id: str
    public_key: ec.EllipticCurvePublicKey
    shared_key: bytes


class KeyExchangeEngine:
    """
    Tracks our keypair and the peers we have established keys with.
    """

    def __init__(self):
        """Generate a fresh ephemeral keypair"""
        self._private_key: Optional[ec.EllipticCurvePrivateKey] = None
        self._public_key: Optional[ec.EllipticCurvePublicKey] = None
        self._peers: Dict[str, Peer] = {}
        self._requested: Set[str] = set()
        self.reset()

    @property
    def public_key_b64(self) -> str:
        """Our public key as sent in a publicKey frame"""
        return encode_public_key(self._public_key)

    def reset(self):
        """
        Tear down all key state and start over with a new keypair.

        Every peer falls back to UNKNOWN.
        """
        self._private_key, self._public_key = generate_ecdh_keypair()
        self._peers.clear()
        self._requested.clear()

    def derive_for_peer(self, public_key_bytes: bytes) -> bytes:
        """
        Derive the shared key for a peer's raw public key.

        Args:
            public_key_bytes: Uncompressed P-256 point

        Returns:
            32-byte shared key

        Raises:
            KeyImportError: If the bytes are not a valid public key
        """
        public_key = deserialize_public_key(public_key_bytes)
        return ecdh_exchange(self._private_key, public_key)

    def state(self, peer_id: str) -> PeerState:
        if peer_id in self._peers:
            return PeerState.ESTABLISHED
        if peer_id in self._requested:
            return PeerState.KEY_REQUESTED
        return PeerState.UNKNOWN

    def mark_requested(self, peer_id: str) -> bool:
        """
        Record that we asked the relay for a peer's key.

        Returns:
            True if the peer moved from UNKNOWN to KEY_REQUESTED
        """
        if self.state(peer_id) is not PeerState.UNKNOWN:
            return False
        self._requested.add(peer_id)
        return True

    def forget_request(self, peer_id: str):
        """Return a KEY_REQUESTED peer to UNKNOWN"""
        self._requested.discard(peer_id)

    def establish(self, peer_id: str, public_key_b64: str) -> Peer:
        """
        Create the Peer entry for a remote session.

        An already established peer is returned unchanged; the first key wins
        for the lifetime of this keypair.

        Args:
            peer_id: Remote session identifier
            public_key_b64: Remote public key as transported

        Returns:
            The Peer entry

        Raises:
            KeyImportError: If the key cannot be decoded or imported
        """
        existing = self._peers.get(peer_id)
        if existing is not None:
            return existing

        key_bytes = decode_public_key(public_key_b64)
        public_key = deserialize_public_key(key_bytes)
        peer = Peer(
            peer_id=peer_id,
            public_key=public_key,
            shared_key=ecdh_exchange(self._private_key, public_key),
        )
        self._peers[peer_id] = peer
        self._requested.discard(peer_id)
        logger.debug("Established shared key with %s", peer_id)
        return peer

    def get(self, peer_id: str) -> Optional[Peer]:
        return self._peers.get(peer_id)

    def peer_ids(self) -> list[str]:
        return list(self._peers.keys())
