# envelope.py
"""
Envelope codec: seals message bodies for one recipient's public key.

Bodies are encrypted directly with RSA-OAEP (MGF1/SHA-256). That suits short
chat payloads only: a 2048-bit key takes at most 190 bytes of plaintext.
There is no session key, so a sender cannot open its own envelopes later.

On the ledger an envelope is the base64 text of the ciphertext. File and
voice messages carry a blob reference `scheme://cid/name` instead, in
cleartext unless `encrypt_file_references` is set.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from typing import Tuple, Union

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from config import settings
from exceptions import DecryptionError, EncryptionError

KeyInput = Union[bytes, str]


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def max_plaintext_len(key_size_bits: int) -> int:
    return key_size_bits // 8 - 2 * hashes.SHA256.digest_size - 2


def public_key_to_text(public_key: bytes) -> str:
    return base64.b64encode(public_key).decode()


def public_key_from_text(text: str) -> bytes:
    if not text:
        return b""
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return b""


def _load_public_key(key: KeyInput) -> rsa.RSAPublicKey:
    if isinstance(key, str):
        text, key = key, public_key_from_text(key)
        if text and not key:
            raise EncryptionError("malformed recipient public key: not base64")
    if not key:
        raise EncryptionError("recipient public key is empty; resolve the contact first")
    try:
        if key.lstrip().startswith(b"-----BEGIN"):
            loaded = serialization.load_pem_public_key(key)
        else:
            loaded = serialization.load_der_public_key(key)
    except (ValueError, TypeError) as e:
        raise EncryptionError(f"malformed recipient public key: {e}") from e
    if not isinstance(loaded, rsa.RSAPublicKey):
        raise EncryptionError("recipient public key is not an RSA key")
    return loaded


def _load_private_key(key: bytes) -> rsa.RSAPrivateKey:
    if not key:
        raise DecryptionError("no local private key")
    try:
        if key.lstrip().startswith(b"-----BEGIN"):
            loaded = serialization.load_pem_private_key(key, password=None)
        else:
            loaded = serialization.load_der_private_key(key, password=None)
    except (ValueError, TypeError) as e:
        raise DecryptionError(f"malformed private key: {e}") from e
    if not isinstance(loaded, rsa.RSAPrivateKey):
        raise DecryptionError("private key is not an RSA key")
    return loaded


def encrypt(plaintext: bytes, recipient_public_key: KeyInput) -> bytes:
    pub = _load_public_key(recipient_public_key)
    limit = max_plaintext_len(pub.key_size)
    if len(plaintext) > limit:
        raise EncryptionError(f"payload of {len(plaintext)} bytes exceeds the {limit}-byte envelope limit")
    try:
        return pub.encrypt(plaintext, _oaep())
    except ValueError as e:
        raise EncryptionError(str(e)) from e


def decrypt(ciphertext: bytes, local_private_key: bytes) -> bytes:
    priv = _load_private_key(local_private_key)
    try:
        return priv.decrypt(ciphertext, _oaep())
    except ValueError as e:
        # wrong key, corrupted or tampered ciphertext all look the same here
        raise DecryptionError("ciphertext was not sealed for this key or has been altered") from e


def encode_envelope(ciphertext: bytes) -> str:
    return base64.b64encode(ciphertext).decode()


def decode_envelope(envelope: str) -> bytes:
    try:
        return base64.b64decode(envelope, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"envelope is not valid base64: {e}") from e


async def seal(text: str, recipient_public_key: KeyInput) -> str:
    ciphertext = await asyncio.to_thread(encrypt, text.encode("utf-8"), recipient_public_key)
    return encode_envelope(ciphertext)


async def unseal(envelope: str, local_private_key: bytes) -> str:
    plaintext = await asyncio.to_thread(decrypt, decode_envelope(envelope), local_private_key)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("envelope payload is not UTF-8 text") from e


# --- blob references ---

def file_reference(cid: str, name: str, scheme: str = None) -> str:
    scheme = scheme or settings.get("blob_scheme", "ipfs")
    return f"{scheme}://{cid}/{name}"


def parse_file_reference(reference: str) -> Tuple[str, str, str]:
    """Split `scheme://cid/name` into (scheme, cid, name)."""
    scheme, sep, rest = reference.partition("://")
    if not sep or not scheme:
        raise ValueError(f"not a blob reference: {reference!r}")
    cid, _, name = rest.partition("/")
    if not cid:
        raise ValueError(f"blob reference has no content id: {reference!r}")
    return scheme, cid, name
