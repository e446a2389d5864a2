# keyvault.py
from __future__ import annotations

import asyncio
import weakref
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from config import settings
from crypto_utils import normalize_address
from exceptions import KeyGenerationError
from models import KeyPair
from storage import LocalStore

PUBLIC_EXPONENT = 65537
MIN_KEY_BITS = 2048


def generate_key_pair(bits: int = MIN_KEY_BITS) -> KeyPair:
    """Generate an RSA key pair for OAEP/SHA-256 envelopes.

    Returns SPKI DER public key and PKCS#8 DER private key.
    """
    if bits < MIN_KEY_BITS:
        raise KeyGenerationError(f"refusing to generate a {bits}-bit key (minimum {MIN_KEY_BITS})")
    try:
        priv = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=bits)
    except Exception as e:
        raise KeyGenerationError(f"RSA key generation failed: {e}") from e
    private_der = priv.private_bytes(
        serialization.Encoding.DER,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_der = priv.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return KeyPair(publicKey=public_der, privateKey=private_der)


class KeyVault:
    """
    Per-account key pair lifecycle.

    The pair is created once per account on first connect and kept for the
    account's lifetime. The private key never leaves the local store; callers
    publish `publicKey` to the ledger themselves.
    """

    def __init__(self, store: LocalStore, *, key_bits: Optional[int] = None) -> None:
        self.store = store
        self.key_bits = int(key_bits or settings.get("rsa_key_bits", MIN_KEY_BITS))
        # a lock lives only while some caller holds or awaits it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, account: str) -> asyncio.Lock:
        lock = self._locks.get(account)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account] = lock
        return lock

    async def load_key_pair(self, account: str) -> Optional[KeyPair]:
        return await self.store.get_key_pair(account)

    async def ensure_key_pair(self, account: str) -> KeyPair:
        account = normalize_address(account)
        async with self._lock_for(account):
            existing = await self.store.get_key_pair(account)
            if existing is not None:
                return existing
            pair = await asyncio.to_thread(generate_key_pair, self.key_bits)
            # another process may have won the race; the stored pair is authoritative
            stored = await self.store.put_key_pair_if_absent(account, pair)
            print(f"🔑 Generated {self.key_bits}-bit key pair for {account}")
            return stored
