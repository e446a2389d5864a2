# storage.py
"""
Account-scoped local persistence for the chat client.

Holds what must never touch the ledger (the account's key pair), the client
local membership index (the ledger has no "list contacts by owner" query) and
the plaintext of messages this device sent, since those are sealed for the
recipient only.
"""

from __future__ import annotations

import asyncio
import base64
import json
import time
from typing import Dict, List, Optional

from config import settings
from crypto_utils import normalize_address
from database import get_conn
from models import KeyPair


def init_local_store(path: str) -> None:
    conn = get_conn(path)
    cur = conn.cursor()
    cur.execute("""
    CREATE TABLE IF NOT EXISTS keypairs (
        account TEXT PRIMARY KEY,
        public_key TEXT NOT NULL,
        private_key TEXT NOT NULL,
        created_at INTEGER
    );
    """)
    cur.execute("""
    CREATE TABLE IF NOT EXISTS memberships (
        account TEXT PRIMARY KEY,
        addresses TEXT NOT NULL
    );
    """)
    cur.execute("""
    CREATE TABLE IF NOT EXISTS sent_plaintexts (
        account TEXT NOT NULL,
        envelope_id TEXT NOT NULL,
        content TEXT NOT NULL,
        PRIMARY KEY (account, envelope_id)
    );
    """)
    conn.commit()
    conn.close()


class LocalStore:
    """sqlite-backed key-value store scoped by account.

    Every call opens its own connection and runs in a worker thread so the
    event loop never blocks on disk.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = str(path or settings.get("local_store_path"))
        init_local_store(self.path)

    # --- key pair ---

    def _get_key_pair(self, account: str) -> Optional[KeyPair]:
        conn = get_conn(self.path)
        try:
            row = conn.execute(
                "SELECT public_key, private_key FROM keypairs WHERE account = ?",
                (normalize_address(account),),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return KeyPair(publicKey=base64.b64decode(row[0]), privateKey=base64.b64decode(row[1]))

    def _put_key_pair_if_absent(self, account: str, pair: KeyPair) -> KeyPair:
        conn = get_conn(self.path)
        try:
            # first writer wins; everyone reads back the stored pair
            conn.execute(
                "INSERT OR IGNORE INTO keypairs (account, public_key, private_key, created_at) VALUES (?,?,?,?)",
                (
                    normalize_address(account),
                    base64.b64encode(pair.publicKey).decode(),
                    base64.b64encode(pair.privateKey).decode(),
                    int(time.time()),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return self._get_key_pair(account)

    async def get_key_pair(self, account: str) -> Optional[KeyPair]:
        return await asyncio.to_thread(self._get_key_pair, account)

    async def put_key_pair_if_absent(self, account: str, pair: KeyPair) -> KeyPair:
        return await asyncio.to_thread(self._put_key_pair_if_absent, account, pair)

    # --- membership list ---

    def _get_membership(self, account: str) -> List[str]:
        conn = get_conn(self.path)
        try:
            row = conn.execute(
                "SELECT addresses FROM memberships WHERE account = ?", (normalize_address(account),)
            ).fetchone()
        finally:
            conn.close()
        return json.loads(row[0]) if row else []

    def _update_membership(self, account: str, address: str, present: bool) -> List[str]:
        """Add or drop one address in a single write transaction; returns the new list."""
        account, address = normalize_address(account), normalize_address(address)
        conn = get_conn(self.path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT addresses FROM memberships WHERE account = ?", (account,)).fetchone()
            addresses = json.loads(row[0]) if row else []
            if present and address not in addresses:
                addresses.append(address)
            elif not present and address in addresses:
                addresses.remove(address)
            conn.execute(
                "INSERT OR REPLACE INTO memberships (account, addresses) VALUES (?, ?)",
                (account, json.dumps(addresses)),
            )
            conn.commit()
        finally:
            conn.close()
        return addresses

    async def get_membership(self, account: str) -> List[str]:
        return await asyncio.to_thread(self._get_membership, account)

    async def add_member(self, account: str, address: str) -> List[str]:
        return await asyncio.to_thread(self._update_membership, account, address, True)

    async def remove_member(self, account: str, address: str) -> List[str]:
        return await asyncio.to_thread(self._update_membership, account, address, False)

    # --- retained plaintext of sent messages ---

    def _remember_sent(self, account: str, envelope_id: str, content: str) -> None:
        conn = get_conn(self.path)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO sent_plaintexts (account, envelope_id, content) VALUES (?,?,?)",
                (normalize_address(account), envelope_id, content),
            )
            conn.commit()
        finally:
            conn.close()

    def _sent_plaintexts(self, account: str) -> Dict[str, str]:
        conn = get_conn(self.path)
        try:
            rows = conn.execute(
                "SELECT envelope_id, content FROM sent_plaintexts WHERE account = ?",
                (normalize_address(account),),
            ).fetchall()
        finally:
            conn.close()
        return {r[0]: r[1] for r in rows}

    async def remember_sent(self, account: str, envelope_id: str, content: str) -> None:
        await asyncio.to_thread(self._remember_sent, account, envelope_id, content)

    async def sent_plaintexts(self, account: str) -> Dict[str, str]:
        return await asyncio.to_thread(self._sent_plaintexts, account)
