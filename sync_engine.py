# sync_engine.py
"""
Reconciles local conversation/contact state with the ledger.

The ledger is authoritative and its insertion order is the only ordering the
system guarantees. Any relevant ledger event triggers a full reload of the
conversation rather than an incremental patch, so a view is never half-applied.
"""

from __future__ import annotations

import asyncio
import weakref
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from contacts import ContactDirectory
from conversation import EDIT, ConversationState, Conversations
from crypto_utils import conversation_id, envelope_id, normalize_address, same_address
from envelope import unseal
from exceptions import BlockNetError, DecryptionError
from keyvault import KeyVault
from ledger import LedgerGateway, LedgerSubscription, record_matches
from models import (
    CONTACT,
    MESSAGE,
    PUBLIC_KEY,
    REACTION,
    STATUS,
    SUPERSEDE,
    Contact,
    KeyPair,
    LedgerRecord,
    Message,
    MessageRecord,
    ReactionRecord,
    StatusRecord,
    SupersedeRecord,
)
from presence import is_online
from storage import LocalStore

ChangeCallback = Callable[[list], Union[Awaitable[None], None]]
ErrorCallback = Callable[[Exception], None]

CONVERSATION_KINDS = (MESSAGE, STATUS, REACTION, SUPERSEDE)
RecordModel = TypeVar("RecordModel", bound=BaseModel)


def _report(error: Exception) -> None:
    print(f"⚠️ Sync refresh failed: {error}")


def _parse(model: Type[RecordModel], record: LedgerRecord) -> Optional[RecordModel]:
    try:
        return model(**record.data)
    except ValidationError as e:
        print(f"⚠️ Skipping malformed {record.kind} #{record.seq}: {e.error_count()} field error(s)")
        return None


class Subscription:
    """
    Caller-owned registration for ledger-driven refreshes.

    Events only mark the view dirty; one worker task reloads, so refreshes
    never interleave and a burst of events costs at most one extra reload.
    After `cancel()` no callback fires, including for a reload already in
    flight (its result is dropped).
    """

    def __init__(
        self,
        loader: Callable[[], Awaitable[list]],
        is_relevant: Callable[[LedgerRecord], bool],
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._loader = loader
        self._is_relevant = is_relevant
        self._on_change = on_change
        self._on_error = on_error or _report
        self._handles: List[LedgerSubscription] = []
        self._task: Optional[asyncio.Task] = None
        self._pending = False
        self.active = True

    def _attach(self, handle: LedgerSubscription) -> None:
        self._handles.append(handle)

    def handle_record(self, record: LedgerRecord) -> None:
        if self.active and self._is_relevant(record):
            self.request_refresh()

    def request_refresh(self) -> None:
        if not self.active:
            return
        self._pending = True
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while self._pending and self.active:
            self._pending = False
            try:
                result = await self._loader()
            except Exception as e:
                # no retry here: the caller's error policy decides
                if self.active:
                    self._on_error(e)
                continue
            if not self.active:
                return
            res = self._on_change(result)
            if asyncio.iscoroutine(res):
                await res

    async def drain(self) -> None:
        """Wait until no refresh is running or pending."""
        while self._task is not None and not self._task.done():
            await self._task

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._pending = False
        for handle in self._handles:
            handle.unsubscribe()
        self._handles.clear()


class SyncEngine:
    def __init__(
        self,
        ledger: LedgerGateway,
        vault: KeyVault,
        store: LocalStore,
        directory: ContactDirectory,
        conversations: Optional[Conversations] = None,
    ) -> None:
        self.ledger = ledger
        self.vault = vault
        self.store = store
        self.directory = directory
        self.conversations = conversations or Conversations()
        # a lock lives only while some load holds or awaits it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, conv_id: str) -> asyncio.Lock:
        lock = self._locks.get(conv_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conv_id] = lock
        return lock

    # --- decryption ---

    async def _open_body(
        self,
        account: str,
        sender: str,
        body: str,
        is_file: bool,
        key_pair: Optional[KeyPair],
        retained: Dict[str, str],
    ) -> Tuple[Optional[str], bool]:
        """Return (content, undecryptable) for one body. Never raises for crypto failures."""
        if is_file and "://" in body:
            # cleartext blob reference
            return body, False
        if same_address(sender, account):
            content = retained.get(envelope_id(body))
            return content, content is None
        if key_pair is None:
            return None, True
        try:
            return await unseal(body, key_pair.privateKey), False
        except DecryptionError as e:
            print(f"⚠️ Decrypt failed for message from {sender}: {e}")
            return None, True

    async def _open_message(
        self,
        account: str,
        position: int,
        record: LedgerRecord,
        key_pair: Optional[KeyPair],
        retained: Dict[str, str],
    ) -> Message:
        data = _parse(MessageRecord, record)
        if data is None:
            return self._placeholder(position, record)
        content, undecryptable = await self._open_body(
            account, data.sender, data.ciphertext, data.isFile, key_pair, retained
        )
        return Message(
            id=data.messageId or str(record.seq),
            index=data.index if data.index is not None else position,
            conversationId=data.conversationId,
            sender=normalize_address(data.sender),
            recipient=normalize_address(data.recipient),
            ciphertext=data.ciphertext,
            content=content,
            timestamp=record.timestamp or 0,
            isFile=data.isFile,
            undecryptable=undecryptable,
        )

    @staticmethod
    def _placeholder(position: int, record: LedgerRecord) -> Message:
        """Stand-in for a message record that does not parse; it renders as undecryptable."""
        data = record.data
        index = data.get("index")
        return Message(
            id=str(data.get("messageId") or record.seq),
            index=index if isinstance(index, int) else position,
            conversationId=str(data.get("conversationId") or ""),
            sender=normalize_address(str(data.get("sender") or record.author)),
            recipient=normalize_address(str(data.get("recipient") or "")),
            ciphertext=str(data.get("ciphertext") or ""),
            timestamp=record.timestamp or 0,
            undecryptable=True,
        )

    # --- conversations ---

    async def load_conversation(self, account: str, contact_address: str) -> List[Message]:
        """Rebuild one conversation from the ledger, in ledger insertion order."""
        conv = conversation_id(account, contact_address)
        async with self._lock_for(conv):
            records, statuses, supersedes = await asyncio.gather(
                self.ledger.query(MESSAGE, participants=(account, contact_address)),
                self.ledger.query(STATUS, conversationId=conv),
                self.ledger.query(SUPERSEDE, conversationId=conv),
            )
            records.sort(key=lambda r: r.seq or 0)
            key_pair = await self.vault.load_key_pair(account)
            retained = await self.store.sent_plaintexts(account)

            state = ConversationState(conv)
            opened = await asyncio.gather(
                *(self._open_message(account, i, r, key_pair, retained) for i, r in enumerate(records))
            )
            for message in opened:
                state.add_message(message)

            per_message = await asyncio.gather(
                *(self.ledger.query(REACTION, conversationId=conv, messageIndex=m.index) for m in opened)
            )
            for message, reactions in zip(opened, per_message):
                for r in reactions:
                    reaction = _parse(ReactionRecord, r)
                    # a reaction only counts for the account that signed it
                    if reaction is not None and same_address(r.author, reaction.user):
                        state.add_reaction(message.index, reaction.emoji, r.author)

            for r in sorted(statuses, key=lambda r: r.seq or 0):
                ack = _parse(StatusRecord, r)
                if ack is not None and same_address(r.author, ack.user):
                    state.apply_status(ack.messageId, ack.status, ack.user)

            for r in sorted(supersedes, key=lambda r: r.seq or 0):
                marker = _parse(SupersedeRecord, r)
                if marker is None or not same_address(r.author, marker.user):
                    continue
                content = None
                if marker.action == EDIT:
                    content, _ = await self._open_body(
                        account, marker.user, marker.ciphertext, False, key_pair, retained
                    )
                state.apply_supersede(marker.messageId, marker.action, marker.user, content)

            # also runs for a refresh whose subscription was cancelled meanwhile; the rebuild is idempotent
            self.conversations.replace(state)
            return state.messages

    async def subscribe(
        self,
        account: str,
        contact_address: str,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Reload the conversation whenever the ledger records something for this pair."""
        pair = (account, contact_address)

        def relevant(record: LedgerRecord) -> bool:
            return record.kind in CONVERSATION_KINDS and record_matches(record, participants=pair)

        sub = Subscription(lambda: self.load_conversation(*pair), relevant, on_change, on_error)
        await self._register(sub, CONVERSATION_KINDS)
        return sub

    async def _register(self, sub: Subscription, kinds: Sequence[str]) -> None:
        try:
            for kind in kinds:
                sub._attach(await self.ledger.subscribe(kind, sub.handle_record))
        except BlockNetError:
            sub.cancel()
            raise

    # --- contacts & presence ---

    async def load_contacts(self, account: str) -> List[Contact]:
        return await self.directory.load_contacts(account)

    async def subscribe_contacts(
        self,
        account: str,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        def relevant(record: LedgerRecord) -> bool:
            if record.kind == CONTACT:
                data = record.data
                return same_address(data.get("owner", ""), account) or same_address(data.get("address", ""), account)
            return record.kind == PUBLIC_KEY

        sub = Subscription(lambda: self.load_contacts(account), relevant, on_change, on_error)
        await self._register(sub, (CONTACT, PUBLIC_KEY))
        return sub

    @staticmethod
    def is_online(contact: Contact, now: Optional[float] = None) -> bool:
        return is_online(contact, now=now)
