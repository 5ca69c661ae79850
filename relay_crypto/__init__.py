"""
Cryptographic module for the relay chat client.

Implements the client side of the key bootstrap:
- Ephemeral ECDH (P-256) key agreement per peer
- AES-256-GCM envelopes for message bodies
"""

from .primitives import (
    CryptoError,
    KeyImportError,
    DecryptionError,
    EnvelopeFormatError,
)
from .key_exchange import KeyExchangeEngine, Peer, PeerState
from .envelope import CipherEnvelope, seal, open_envelope

__all__ = [
    'CryptoError',
    'KeyImportError',
    'DecryptionError',
    'EnvelopeFormatError',
    'KeyExchangeEngine',
    'Peer',
    'PeerState',
    'CipherEnvelope',
    'seal',
    'open_envelope'
]
