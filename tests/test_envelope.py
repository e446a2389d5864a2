from __future__ import annotations

import base64

import pytest

from envelope import (
    decode_envelope,
    decrypt,
    encode_envelope,
    encrypt,
    file_reference,
    max_plaintext_len,
    parse_file_reference,
    public_key_from_text,
    public_key_to_text,
    seal,
    unseal,
)
from exceptions import DecryptionError, EncryptionError
from keyvault import generate_key_pair


@pytest.fixture(scope="module")
def alice():
    return generate_key_pair()


@pytest.fixture(scope="module")
def bob():
    return generate_key_pair()


def test_encrypt_decrypt_roundtrip(alice) -> None:
    for plaintext in (b"hi", "héllo 👋".encode(), b"\x00" * 190):
        ct = encrypt(plaintext, alice.publicKey)
        assert ct != plaintext
        assert decrypt(ct, alice.privateKey) == plaintext


def test_encryption_is_randomized(alice) -> None:
    assert encrypt(b"same", alice.publicKey) != encrypt(b"same", alice.publicKey)


def test_decrypt_with_other_key_fails(alice, bob) -> None:
    ct = encrypt(b"for alice only", alice.publicKey)
    with pytest.raises(DecryptionError):
        decrypt(ct, bob.privateKey)


def test_tampered_ciphertext_fails(alice) -> None:
    ct = bytearray(encrypt(b"hi", alice.publicKey))
    ct[10] ^= 0x01
    with pytest.raises(DecryptionError):
        decrypt(bytes(ct), alice.privateKey)
    with pytest.raises(DecryptionError):
        decrypt(bytes(ct[:-1]), alice.privateKey)


def test_empty_or_malformed_recipient_key_is_rejected() -> None:
    with pytest.raises(EncryptionError, match="empty"):
        encrypt(b"hi", b"")
    with pytest.raises(EncryptionError, match="empty"):
        encrypt(b"hi", "")
    with pytest.raises(EncryptionError, match="malformed"):
        encrypt(b"hi", b"not a key")
    with pytest.raises(EncryptionError, match="malformed"):
        encrypt(b"hi", "%%% not base64 %%%")


def test_oversized_payload_is_rejected(alice) -> None:
    assert max_plaintext_len(2048) == 190
    with pytest.raises(EncryptionError, match="exceeds"):
        encrypt(b"x" * 191, alice.publicKey)


def test_key_text_roundtrip_and_pem_input(alice) -> None:
    text = public_key_to_text(alice.publicKey)
    assert public_key_from_text(text) == alice.publicKey
    assert public_key_from_text("") == b""

    from cryptography.hazmat.primitives import serialization

    pem = serialization.load_der_public_key(alice.publicKey).public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    assert decrypt(encrypt(b"pem", pem), alice.privateKey) == b"pem"


def test_envelope_wire_encoding_is_base64(alice) -> None:
    ct = encrypt(b"hi", alice.publicKey)
    env = encode_envelope(ct)
    assert base64.b64decode(env) == ct
    assert decode_envelope(env) == ct
    with pytest.raises(DecryptionError):
        decode_envelope("not*base64")


@pytest.mark.asyncio
async def test_seal_unseal_text(alice, bob) -> None:
    env = await seal("hi", alice.publicKey)
    assert isinstance(env, str)
    assert await unseal(env, alice.privateKey) == "hi"
    with pytest.raises(DecryptionError):
        await unseal(env, bob.privateKey)


def test_file_reference_format() -> None:
    ref = file_reference("bafy123", "photo.jpg", scheme="ipfs")
    assert ref == "ipfs://bafy123/photo.jpg"
    assert parse_file_reference(ref) == ("ipfs", "bafy123", "photo.jpg")
    with pytest.raises(ValueError):
        parse_file_reference("no-scheme-here")
    with pytest.raises(ValueError):
        parse_file_reference("ipfs:///name")
