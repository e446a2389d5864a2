# ledger.py
"""
Ledger gateway: the append-only record log the chat layer reads and writes.

`LedgerGateway` is the interface the protocol code consumes. `InMemoryLedger`
implements it in-process (tests, single-process demos); `ledger_client.py`
implements it against the HTTP ledger node in `main.py`. Both share the
record filtering and validation helpers below so they agree on semantics.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Type, Union

from pydantic import BaseModel, ValidationError

from crypto_utils import conversation_id, normalize_address, record_signing_text, same_address, verify_signature
from exceptions import InvalidSignature, LedgerUnavailable
from models import (
    CONTACT,
    MESSAGE,
    PUBLIC_KEY,
    REACTION,
    RECORD_KINDS,
    STATUS,
    SUPERSEDE,
    ContactRecord,
    LedgerRecord,
    MessageRecord,
    PublicKeyRecord,
    ReactionRecord,
    StatusRecord,
    SupersedeRecord,
)

Callback = Callable[[LedgerRecord], Union[Awaitable[None], None]]

ANY_KIND = "*"

# data fields holding account addresses; compared case-insensitively
ADDRESS_FIELDS = ("owner", "address", "user", "sender", "recipient")

OWNER_FIELDS = {
    MESSAGE: "sender",
    CONTACT: "owner",
    REACTION: "user",
    PUBLIC_KEY: "address",
    STATUS: "user",
    SUPERSEDE: "user",
}

RECORD_MODELS: Dict[str, Type[BaseModel]] = {
    MESSAGE: MessageRecord,
    CONTACT: ContactRecord,
    REACTION: ReactionRecord,
    PUBLIC_KEY: PublicKeyRecord,
    STATUS: StatusRecord,
    SUPERSEDE: SupersedeRecord,
}


def normalize_match(match: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in match.items():
        if key in ADDRESS_FIELDS and isinstance(value, str):
            value = normalize_address(value)
        out[key] = value
    return out


def record_conversation(record: LedgerRecord) -> Optional[str]:
    data = record.data
    if data.get("conversationId"):
        return data["conversationId"]
    if data.get("sender") and data.get("recipient"):
        return conversation_id(data["sender"], data["recipient"])
    return None


def record_matches(
    record: LedgerRecord,
    kind: Optional[str] = None,
    *,
    participants: Optional[Sequence[str]] = None,
    author: Optional[str] = None,
    match: Optional[Dict[str, Any]] = None,
) -> bool:
    if kind not in (None, ANY_KIND) and record.kind != kind:
        return False
    if author is not None and not same_address(record.author, author):
        return False
    if participants:
        a, b = participants
        data = record.data
        if data.get("sender") and data.get("recipient"):
            pair = {normalize_address(data["sender"]), normalize_address(data["recipient"])}
            if pair != {normalize_address(a), normalize_address(b)}:
                return False
        elif record_conversation(record) != conversation_id(a, b):
            return False
    for key, value in normalize_match(match or {}).items():
        have = record.data.get(key)
        if key in ADDRESS_FIELDS and isinstance(have, str):
            have = normalize_address(have)
        if have != value:
            return False
    return True


def check_record(record: LedgerRecord, require_signatures: bool) -> None:
    """Reject records the ledger must not accept. Raises InvalidSignature."""
    if record.kind not in RECORD_KINDS:
        raise InvalidSignature(f"unknown record kind {record.kind!r}")
    if not record.author:
        raise InvalidSignature("record has no author")
    try:
        RECORD_MODELS[record.kind](**record.data)
    except ValidationError as e:
        raise InvalidSignature(f"malformed {record.kind} record: {e}") from e
    # who may write what: the acting account named in the data must be the author
    actor = OWNER_FIELDS.get(record.kind)
    if actor and not same_address(record.data.get(actor, ""), record.author):
        raise InvalidSignature(f"{record.kind} record must be authored by its {actor}")
    if record.kind == MESSAGE:
        data = record.data
        if data.get("conversationId") != conversation_id(data.get("recipient", ""), record.author):
            raise InvalidSignature("conversationId does not match sender and recipient")
    if not require_signatures:
        return
    if not record.signature:
        raise InvalidSignature("record is not signed")
    text = record_signing_text(record.kind, record.author, record.data)
    if not verify_signature(record.author, text, record.signature):
        raise InvalidSignature("signature does not match author")


class LedgerSubscription:
    """Handle returned by `subscribe`. `unsubscribe()` is idempotent."""

    def __init__(self, kind: str, callback: Callback, on_cancel: Callable[["LedgerSubscription"], None]) -> None:
        self.kind = kind
        self.callback = callback
        self._on_cancel = on_cancel
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._on_cancel(self)


class LedgerGateway:
    """Interface of the append-only ledger."""

    async def append(self, record: LedgerRecord) -> LedgerRecord:
        raise NotImplementedError

    async def query(
        self,
        kind: Optional[str] = None,
        *,
        participants: Optional[Sequence[str]] = None,
        author: Optional[str] = None,
        **match: Any,
    ) -> List[LedgerRecord]:
        raise NotImplementedError

    async def subscribe(self, kind: str, callback: Callback) -> LedgerSubscription:
        raise NotImplementedError

    async def latest(self, kind: str, **match: Any) -> Optional[LedgerRecord]:
        records = await self.query(kind, **match)
        return records[-1] if records else None


async def dispatch(subscriptions: Iterable[LedgerSubscription], record: LedgerRecord) -> None:
    """Deliver one record to every live subscription interested in its kind."""
    for sub in list(subscriptions):
        if not sub.active or sub.kind not in (ANY_KIND, record.kind):
            continue
        try:
            res = sub.callback(record)
            if asyncio.iscoroutine(res):
                await res
        except Exception as e:
            # the append already happened; a broken listener must not undo it
            print(f"⚠️ Ledger listener failed on {record.kind} #{record.seq}: {e}")


class InMemoryLedger(LedgerGateway):
    """Process-local ledger with the same append/query/subscribe semantics as the node."""

    def __init__(self, *, require_signatures: bool = True, now_func: Callable[[], int] = None) -> None:
        self.require_signatures = require_signatures
        self._now = now_func or (lambda: int(time.time()))
        self._records: List[LedgerRecord] = []
        self._subscriptions: List[LedgerSubscription] = []
        self._lock = asyncio.Lock()
        self.available = True

    def _ensure_available(self) -> None:
        if not self.available:
            raise LedgerUnavailable("ledger is unreachable")

    async def append(self, record: LedgerRecord) -> LedgerRecord:
        self._ensure_available()
        check_record(record, self.require_signatures)
        async with self._lock:
            data = dict(record.data)
            if record.kind == MESSAGE:
                conv = record_conversation(record)
                data["index"] = sum(
                    1 for r in self._records if r.kind == MESSAGE and record_conversation(r) == conv
                )
            stored = record.model_copy(
                update={"data": data, "seq": len(self._records) + 1, "timestamp": self._now()}
            )
            self._records.append(stored)
        await dispatch(self._subscriptions, stored)
        return stored

    async def query(
        self,
        kind: Optional[str] = None,
        *,
        participants: Optional[Sequence[str]] = None,
        author: Optional[str] = None,
        **match: Any,
    ) -> List[LedgerRecord]:
        self._ensure_available()
        return [
            r.model_copy(deep=True)
            for r in self._records
            if record_matches(r, kind, participants=participants, author=author, match=match)
        ]

    async def subscribe(self, kind: str, callback: Callback) -> LedgerSubscription:
        self._ensure_available()
        sub = LedgerSubscription(kind, callback, self._subscriptions.remove)
        self._subscriptions.append(sub)
        return sub

    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def tamper(self, seq: int, **data: Any) -> None:
        """Overwrite fields of a stored record, simulating corruption in transit."""
        for i, r in enumerate(self._records):
            if r.seq == seq:
                self._records[i] = r.model_copy(update={"data": {**r.data, **data}})
                return
        raise KeyError(seq)
