# messenger.py
"""
Send path: everything that writes to the ledger on behalf of the local account.

Each operation prepares the record, has the signer authorize it and appends
it. An append either returns the stored record or raises; nothing is queued
or dropped silently.
"""

from __future__ import annotations

from typing import Iterable, Optional

from pydantic import BaseModel

from blobstore import BlobStore
from config import settings
from contacts import ContactDirectory
from conversation import DELETE, EDIT
from crypto_utils import conversation_id, envelope_id, new_message_id, normalize_address
from envelope import public_key_to_text, seal
from keyvault import KeyVault
from ledger import LedgerGateway
from models import (
    MESSAGE,
    PUBLIC_KEY,
    REACTION,
    STATUS,
    SUPERSEDE,
    KeyPair,
    LedgerRecord,
    MessageRecord,
    MessageStatus,
    PublicKeyRecord,
    ReactionRecord,
    StatusRecord,
    SupersedeRecord,
)
from signer import Signer
from storage import LocalStore


class Messenger:
    def __init__(
        self,
        signer: Signer,
        ledger: LedgerGateway,
        vault: KeyVault,
        directory: ContactDirectory,
        store: LocalStore,
        blobs: Optional[BlobStore] = None,
        *,
        encrypt_file_references: Optional[bool] = None,
    ) -> None:
        self.signer = signer
        self.ledger = ledger
        self.vault = vault
        self.directory = directory
        self.store = store
        self.blobs = blobs
        if encrypt_file_references is None:
            encrypt_file_references = bool(settings.get("encrypt_file_references", False))
        self.encrypt_file_references = encrypt_file_references

    @property
    def account(self) -> str:
        return normalize_address(self.signer.current_account())

    async def _append(self, kind: str, body: BaseModel) -> LedgerRecord:
        rec = LedgerRecord(kind=kind, author=self.account, data=body.model_dump(mode="json"))
        return await self.ledger.append(self.signer.authorize(rec))

    async def connect(self) -> KeyPair:
        """Ensure the account's key pair and publish its public key if the ledger has a different one."""
        pair = await self.vault.ensure_key_pair(self.account)
        key_text = public_key_to_text(pair.publicKey)
        if await self.directory.published_key(self.account) != key_text:
            await self._append(PUBLIC_KEY, PublicKeyRecord(address=self.account, publicKey=key_text))
            print(f"📣 Published public key for {self.account}")
        return pair

    async def _seal_for(self, address: str, text: str) -> str:
        key = await self.directory.resolve_public_key(address)
        envelope = await seal(text, key)
        # the envelope is sealed for the recipient only; keep our own copy
        await self.store.remember_sent(self.account, envelope_id(envelope), text)
        return envelope

    async def _send(self, address: str, body: str, is_file: bool) -> LedgerRecord:
        address = normalize_address(address)
        record = MessageRecord(
            conversationId=conversation_id(self.account, address),
            sender=self.account,
            recipient=address,
            ciphertext=body,
            isFile=is_file,
        )
        record.messageId = new_message_id(record.model_dump(exclude={"messageId", "index"}))
        return await self._append(MESSAGE, record)

    async def send_text(self, address: str, text: str) -> LedgerRecord:
        if not text.strip():
            raise ValueError("refusing to send an empty message")
        envelope = await self._seal_for(address, text)
        return await self._send(address, envelope, is_file=False)

    async def send_file(self, address: str, data: bytes, name: str) -> LedgerRecord:
        if self.blobs is None:
            raise RuntimeError("no blob store configured for attachments")
        if self.encrypt_file_references:
            # fail on an unknown recipient before uploading anything
            await self.directory.resolve_public_key(address)
        reference = await self.blobs.put(data, name)
        if self.encrypt_file_references:
            body = await self._seal_for(address, reference)
        else:
            body = reference
        return await self._send(address, body, is_file=True)

    async def send_voice(self, address: str, audio: bytes, name: str = "voice-message.webm") -> LedgerRecord:
        return await self.send_file(address, audio, name)

    async def react(self, address: str, message_index: int, emoji: str) -> LedgerRecord:
        return await self._append(
            REACTION,
            ReactionRecord(
                conversationId=conversation_id(self.account, address),
                messageIndex=message_index,
                emoji=emoji,
                user=self.account,
            ),
        )

    async def acknowledge(self, address: str, message_ids: Iterable[str], status: MessageStatus) -> list:
        """Record receipt/read acknowledgments for messages `address` sent us."""
        conv = conversation_id(self.account, address)
        out = []
        for message_id in message_ids:
            out.append(
                await self._append(
                    STATUS,
                    StatusRecord(conversationId=conv, messageId=message_id, status=status, user=self.account),
                )
            )
        return out

    async def mark_delivered(self, address: str, message_ids: Iterable[str]) -> list:
        return await self.acknowledge(address, message_ids, MessageStatus.DELIVERED)

    async def mark_read(self, address: str, message_ids: Iterable[str]) -> list:
        return await self.acknowledge(address, message_ids, MessageStatus.READ)

    async def edit_message(self, address: str, message_id: str, new_text: str) -> LedgerRecord:
        if not new_text.strip():
            raise ValueError("refusing to edit a message to empty text")
        envelope = await self._seal_for(address, new_text)
        return await self._append(
            SUPERSEDE,
            SupersedeRecord(
                conversationId=conversation_id(self.account, address),
                messageId=message_id,
                action=EDIT,
                ciphertext=envelope,
                user=self.account,
            ),
        )

    async def delete_message(self, address: str, message_id: str) -> LedgerRecord:
        return await self._append(
            SUPERSEDE,
            SupersedeRecord(
                conversationId=conversation_id(self.account, address),
                messageId=message_id,
                action=DELETE,
                user=self.account,
            ),
        )
