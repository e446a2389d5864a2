# models.py
from __future__ import annotations

from enum import IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# Ledger record kinds
MESSAGE = "message"
CONTACT = "contact"
REACTION = "reaction"
PUBLIC_KEY = "public_key"
STATUS = "status"
SUPERSEDE = "supersede"

RECORD_KINDS = (MESSAGE, CONTACT, REACTION, PUBLIC_KEY, STATUS, SUPERSEDE)


class MessageStatus(IntEnum):
    """Delivery status. Ordered so that a later state compares greater."""

    SENT = 0
    DELIVERED = 1
    READ = 2


class KeyPair(BaseModel):
    publicKey: bytes   # SPKI DER
    privateKey: bytes  # PKCS#8 DER


# --- ledger wire records ---

class LedgerRecord(BaseModel):
    """One append-only ledger entry. `seq` and `timestamp` are assigned by the ledger."""

    kind: str
    author: str
    data: Dict[str, Any]
    seq: Optional[int] = None
    timestamp: Optional[int] = None
    signature: Optional[str] = None


class MessageRecord(BaseModel):
    conversationId: str
    sender: str
    recipient: str
    ciphertext: str  # base64 envelope, or a blob reference when isFile
    isFile: bool = False
    messageId: str = ""
    index: Optional[int] = None  # insertion position within the conversation


class ContactRecord(BaseModel):
    owner: str
    address: str
    name: str
    publicKey: str = ""
    blocked: bool = False


class ReactionRecord(BaseModel):
    conversationId: str
    messageIndex: int
    emoji: str
    user: str


class PublicKeyRecord(BaseModel):
    address: str
    publicKey: str  # base64 SPKI


class StatusRecord(BaseModel):
    conversationId: str
    messageId: str
    status: MessageStatus
    user: str


class SupersedeRecord(BaseModel):
    conversationId: str
    messageId: str
    action: str  # "edit" | "delete"
    ciphertext: str = ""
    user: str


class QueryRequest(BaseModel):
    kind: Optional[str] = None
    author: Optional[str] = None
    participants: Optional[List[str]] = None
    match: Dict[str, Any] = Field(default_factory=dict)


# --- client-side view state ---

class Reaction(BaseModel):
    emoji: str
    user: str


class Message(BaseModel):
    id: str
    index: int
    conversationId: str
    sender: str
    recipient: str
    ciphertext: str
    content: Optional[str] = None
    timestamp: int = 0
    isFile: bool = False
    status: MessageStatus = MessageStatus.SENT
    reactions: List[Reaction] = Field(default_factory=list)
    undecryptable: bool = False
    edited: bool = False
    deleted: bool = False


class Contact(BaseModel):
    address: str
    name: str = ""
    publicKey: str = ""
    blocked: bool = False
    lastSeen: int = 0
    online: bool = False
