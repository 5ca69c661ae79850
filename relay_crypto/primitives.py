"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational operations used by the relay chat
client: ECDH key agreement on P-256 and AES-256-GCM message encryption.

Keys are exchanged as the raw uncompressed EC point, base64 encoded, and the
raw ECDH output is used directly as the AES key. This is exactly what a
browser WebCrypto client gets from deriveKey(ECDH -> AES-GCM 256), so Python
and browser peers derive identical keys.
"""

import os
import base64
import binascii
from typing import Tuple
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


CURVE = ec.SECP256R1()
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class KeyImportError(CryptoError):
    """A peer public key could not be decoded or is not a valid curve point"""
    pass


class DecryptionError(CryptoError):
    """Ciphertext failed authentication or did not decode to text"""
    pass


class EnvelopeFormatError(CryptoError):
    """A wire envelope did not contain well-formed byte arrays"""
    pass


def generate_ecdh_keypair() -> Tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    """
    Generate an ephemeral P-256 keypair for key agreement.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = ec.generate_private_key(CURVE)
    public_key = private_key.public_key()
    return private_key, public_key


def ecdh_exchange(private_key: ec.EllipticCurvePrivateKey, public_key: ec.EllipticCurvePublicKey) -> bytes:
    """
    Perform ECDH key agreement.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret
    """
    return private_key.exchange(ec.ECDH(), public_key)


def serialize_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Serialize a P-256 public key to its 65-byte uncompressed point"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint
    )


def deserialize_public_key(key_bytes: bytes) -> ec.EllipticCurvePublicKey:
    """
    Deserialize a raw EC point to a P-256 public key.

    Raises:
        KeyImportError: If the bytes are not a point on the curve
    """
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, key_bytes)
    except (ValueError, TypeError) as e:
        raise KeyImportError(f"Invalid public key: {e}") from e


def encode_public_key(public_key: ec.EllipticCurvePublicKey) -> str:
    """Base64 encode a public key for transport"""
    return base64.b64encode(serialize_public_key(public_key)).decode("ascii")


def decode_public_key(encoded: str) -> bytes:
    """
    Decode a base64 transported public key to raw point bytes.

    Raises:
        KeyImportError: If the value is not valid base64
    """
    if not isinstance(encoded, str) or not encoded:
        raise KeyImportError("Public key is missing")
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise KeyImportError(f"Public key is not valid base64: {e}") from e


def encrypt_message(key: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
    """
    Encrypt a message using AES-256-GCM.

    A fresh random nonce is drawn for every call.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt

    Returns:
        Tuple of (nonce, ciphertext + tag)
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, None)
    return nonce, ciphertext


def decrypt_message(key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        nonce: Nonce used at encryption time
        ciphertext: Encrypted message + tag

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionError: If authentication fails
    """
    if len(nonce) != NONCE_SIZE:
        raise DecryptionError(f"Nonce must be {NONCE_SIZE} bytes")
    if len(ciphertext) < TAG_SIZE:
        raise DecryptionError("Ciphertext too short")

    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("Decryption failed: authentication tag mismatch") from e
