# exceptions.py
from __future__ import annotations


class BlockNetError(Exception):
    """Base error for the chat protocol layer."""


class KeyGenerationError(BlockNetError):
    """The key pair could not be generated (crypto primitive or randomness unavailable)."""


class EncryptionError(BlockNetError):
    """Plaintext could not be sealed for the recipient (bad/unknown key or oversized payload)."""


class DecryptionError(BlockNetError):
    """Ciphertext was not produced for this key pair, or was corrupted in transit."""


class LedgerUnavailable(BlockNetError):
    """A ledger read, write or subscribe failed. The ledger stays authoritative."""


class UnknownRecipient(BlockNetError):
    """The recipient has no published public key yet."""

    def __init__(self, address: str) -> None:
        super().__init__(f"no public key published for {address}; resolve the contact first")
        self.address = address


class InvalidSignature(LedgerUnavailable):
    """The ledger rejected an append because its signature did not match the author."""


class BlobStoreError(BlockNetError):
    """Attachment upload or download failed."""
