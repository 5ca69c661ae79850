"""
Cipher Envelope Codec

Seals UTF-8 text under a peer's shared key and converts the result to the
wire shape the relay forwards: explicit arrays of byte values for the
initialization vector and the ciphertext.
"""

from typing import Any, Dict, List
from dataclasses import dataclass

from .primitives import (
    encrypt_message,
    decrypt_message,
    DecryptionError,
    EnvelopeFormatError,
)


@dataclass(frozen=True)
class CipherEnvelope:
    """
    One encrypted message.

    Attributes:
        iv: 12-byte AES-GCM nonce, unique per message
        ciphertext: Encrypted body followed by the 16-byte tag
    """
    iv: bytes
    ciphertext: bytes

    def to_wire(self) -> Dict[str, List[int]]:
        """Convert to the JSON-ready {"iv": [...], "data": [...]} form"""
        return {
            'iv': list(self.iv),
            'data': list(self.ciphertext),
        }

    @classmethod
    def from_wire(cls, data: Any) -> 'CipherEnvelope':
        """
        Create from the wire form.

        Raises:
            EnvelopeFormatError: If either field is not a list of byte values
        """
        if not isinstance(data, dict):
            raise EnvelopeFormatError("Envelope must be an object")
        return cls(
            iv=_to_bytes(data.get('iv'), 'iv'),
            ciphertext=_to_bytes(data.get('data'), 'data'),
        )


def _to_bytes(values: Any, field: str) -> bytes:
    if not isinstance(values, list):
        raise EnvelopeFormatError(f"Envelope field '{field}' must be a list of byte values")
    for value in values:
        # bool is an int subclass; true/false are not byte values
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 255:
            raise EnvelopeFormatError(f"Envelope field '{field}' contains a non-byte value: {value!r}")
    return bytes(values)


def seal(shared_key: bytes, plaintext: str) -> CipherEnvelope:
    """
    Encrypt a text message for a peer.

    Args:
        shared_key: 32-byte key shared with the recipient
        plaintext: Message text

    Returns:
        CipherEnvelope with a freshly generated iv
    """
    iv, ciphertext = encrypt_message(shared_key, plaintext.encode("utf-8"))
    return CipherEnvelope(iv=iv, ciphertext=ciphertext)


def open_envelope(shared_key: bytes, envelope: CipherEnvelope) -> str:
    """
    Decrypt a message from a peer.

    Args:
        shared_key: 32-byte key shared with the sender
        envelope: Received envelope

    Returns:
        Message text

    Raises:
        DecryptionError: On wrong key, corruption or tampering
    """
    plaintext = decrypt_message(shared_key, envelope.iv, envelope.ciphertext)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted payload is not valid UTF-8") from e
