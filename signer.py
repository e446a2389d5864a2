# signer.py
"""
Signer capability: yields the account address and authorizes ledger writes.

`EthSigner` keeps an Ethereum account key (eth-account) on disk and signs the
canonical text of each record, which the ledger verifies against `author`.
"""

from __future__ import annotations

import os
from typing import Optional

from eth_account import Account

from config import settings
from crypto_utils import normalize_address, record_signing_text, sign_message_hex
from models import LedgerRecord


class Signer:
    def current_account(self) -> str:
        raise NotImplementedError

    def authorize(self, record: LedgerRecord) -> LedgerRecord:
        raise NotImplementedError


def ensure_account_key(path: str) -> str:
    if os.path.exists(path):
        with open(path, "r") as f:
            key = f.read().strip()
    else:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        acct = Account.create()
        key = acct.key.hex()
        with open(path, "w") as f:
            f.write(key)
        print(f"🆕 Created new account key at {path}")
    return key


class EthSigner(Signer):
    def __init__(self, private_key_hex: str) -> None:
        self._key = private_key_hex
        self.address = normalize_address(Account.from_key(private_key_hex).address)

    @classmethod
    def create(cls) -> "EthSigner":
        return cls(Account.create().key.hex())

    @classmethod
    def from_key_file(cls, path: Optional[str] = None) -> "EthSigner":
        return cls(ensure_account_key(path or settings.get("signer_key_path")))

    def current_account(self) -> str:
        return self.address

    def authorize(self, record: LedgerRecord) -> LedgerRecord:
        if not normalize_address(record.author) == self.address:
            raise ValueError(f"cannot sign a record authored by {record.author}")
        text = record_signing_text(record.kind, record.author, record.data)
        return record.model_copy(update={"signature": sign_message_hex(self._key, text)})
