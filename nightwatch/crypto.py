"""
Hashing and Ed25519 signature helpers.
Publishers sign manifests with a raw Ed25519 key; clients verify the detached signature.
"""
import base64
import binascii
import hashlib
import hmac
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import SignatureError

PUBLIC_KEY_LEN = 32

def compute_sha256(data: bytes) -> str:
    """Compute the SHA-256 hash of raw bytes."""
    hasher = hashlib.sha256()
    hasher.update(data)
    return hasher.hexdigest()

def generate_signing_keypair() -> Tuple[bytes, bytes]:
    """
    Generate an Ed25519 keypair.
    Returns (private_key_bytes, public_key_bytes).
    """
    priv_key = ed25519.Ed25519PrivateKey.generate()
    pub_key = priv_key.public_key()

    priv_bytes = priv_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )
    pub_bytes = pub_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    return priv_bytes, pub_bytes

def sign(data: bytes, private_key_raw: bytes) -> bytes:
    """Sign data using an Ed25519 private key (raw bytes)."""
    try:
        priv_key = ed25519.Ed25519PrivateKey.from_private_bytes(private_key_raw)
        return priv_key.sign(data)
    except (ValueError, TypeError) as e:
        raise SignatureError(f"Signing failed: {e}") from e

def verify(data: bytes, signature: bytes, public_key_raw: bytes) -> bool:
    """Verify an Ed25519 signature."""
    try:
        pub_key = ed25519.Ed25519PublicKey.from_public_bytes(public_key_raw)
        pub_key.verify(signature, data)
        return True
    except (InvalidSignature, ValueError):
        return False

def decode_b64(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise SignatureError(f"Invalid base64 {what}: {e}") from e

def verify_detached(data: bytes, signature_b64: str, public_key_b64: str) -> None:
    """Raise SignatureError unless signature_b64 is a valid signature of data."""
    public_key = decode_b64(public_key_b64, "public key")
    if len(public_key) != PUBLIC_KEY_LEN:
        raise SignatureError("Public key must be 32 raw Ed25519 bytes.")
    signature = decode_b64(signature_b64, "signature")
    if not verify(data, signature, public_key):
        raise SignatureError("Manifest signature verification failed. The manifest may have been tampered with.")

def secure_compare(a: str, b: str) -> bool:
    """Constant-time, case-insensitive comparison of hex digests."""
    return hmac.compare_digest(a.lower().encode("ascii"), b.lower().encode("ascii"))
