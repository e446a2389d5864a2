# contacts.py
"""
Contact directory: the account's address book.

Contact metadata (name, key, blocked flag) lives on the ledger under the
owner's namespace. The ledger cannot list contacts by owner, so the client
keeps its own membership list in the local store. The two may diverge (e.g. a
second device with an empty list); the ledger is the source of truth and the
membership list is reconciled against it on every read.
"""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

from crypto_utils import normalize_address
from envelope import public_key_from_text
from exceptions import UnknownRecipient
from ledger import LedgerGateway
from models import CONTACT, PUBLIC_KEY, Contact, ContactRecord, LedgerRecord
from presence import is_online
from signer import Signer
from storage import LocalStore


class ContactDirectory:
    def __init__(
        self,
        ledger: LedgerGateway,
        store: LocalStore,
        signer: Optional[Signer] = None,
        *,
        now_func: Optional[Callable[[], float]] = None,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.signer = signer
        self._now = now_func

    # --- ledger lookups ---

    async def published_key(self, address: str) -> str:
        """Latest base64 public key published by `address` itself, or ''."""
        rec = await self.ledger.latest(PUBLIC_KEY, author=address, address=address)
        return rec.data.get("publicKey", "") if rec else ""

    async def resolve_public_key(self, address: str) -> bytes:
        key = public_key_from_text(await self.published_key(address))
        if not key:
            raise UnknownRecipient(address)
        return key

    async def last_seen(self, address: str) -> int:
        records = await self.ledger.query(author=address)
        return max((r.timestamp or 0 for r in records), default=0)

    async def _contact_record(self, account: str, address: str) -> Optional[ContactRecord]:
        rec = await self.ledger.latest(CONTACT, author=account, owner=account, address=address)
        return ContactRecord(**rec.data) if rec else None

    async def _build(self, address: str, record: Optional[ContactRecord]) -> Contact:
        key, seen = await asyncio.gather(self.published_key(address), self.last_seen(address))
        contact = Contact(
            address=normalize_address(address),
            name=record.name if record else normalize_address(address),
            publicKey=key,
            blocked=record.blocked if record else False,
            lastSeen=seen,
        )
        contact.online = is_online(contact, now=self._now() if self._now else None)
        return contact

    # --- directory operations ---

    async def get_contact(self, account: str, address: str) -> Optional[Contact]:
        """Resolve a contact from ledger metadata alone, whether or not it is in the membership list."""
        record = await self._contact_record(account, address)
        if record is None:
            return None
        return await self._build(address, record)

    async def load_contacts(self, account: str) -> List[Contact]:
        addresses = await self.store.get_membership(account)

        async def one(address: str) -> Contact:
            return await self._build(address, await self._contact_record(account, address))

        return list(await asyncio.gather(*(one(a) for a in addresses)))

    async def _write(self, account: str, record: ContactRecord) -> LedgerRecord:
        if self.signer is None:
            raise RuntimeError("contact directory has no signer; it is read-only")
        rec = LedgerRecord(kind=CONTACT, author=normalize_address(account), data=record.model_dump())
        return await self.ledger.append(self.signer.authorize(rec))

    async def add_contact(self, account: str, address: str, name: str) -> Contact:
        account, address = normalize_address(account), normalize_address(address)
        key = await self.published_key(address)
        record = ContactRecord(owner=account, address=address, name=name, publicKey=key, blocked=False)
        await self._write(account, record)

        await self.store.add_member(account, address)
        return await self._build(address, record)

    async def toggle_block(self, account: str, contact: Contact) -> Contact:
        record = ContactRecord(
            owner=normalize_address(account),
            address=contact.address,
            name=contact.name,
            publicKey=contact.publicKey,
            blocked=not contact.blocked,
        )
        await self._write(account, record)
        return contact.model_copy(update={"blocked": record.blocked})

    async def remove_contact(self, account: str, address: str) -> None:
        """Drop `address` from the local membership list. Ledger metadata stays."""
        await self.store.remove_member(account, address)
