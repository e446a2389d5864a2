from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from blobstore import HttpBlobStore
from client import build_client
from envelope import parse_file_reference
from exceptions import BlobStoreError, InvalidSignature
from ledger_client import HttpLedgerGateway
from main import create_app
from models import PUBLIC_KEY, LedgerRecord, MessageStatus, PublicKeyRecord
from signer import EthSigner
from storage import LocalStore

BASE = "http://node.test"


@pytest.fixture
def app(tmp_path):
    return create_app(db_path=str(tmp_path / "ledger.db"), blob_path=str(tmp_path / "node-blobs"))


@pytest.fixture
def http(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=BASE)


def _key_record(signer: EthSigner, key: str = "AAAA") -> LedgerRecord:
    account = signer.current_account()
    rec = LedgerRecord(
        kind=PUBLIC_KEY,
        author=account,
        data=PublicKeyRecord(address=account, publicKey=key).model_dump(),
    )
    return signer.authorize(rec)


def test_health(app) -> None:
    with TestClient(app) as tc:
        r = tc.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


@pytest.mark.asyncio
async def test_append_and_query_over_http(http) -> None:
    ledger = HttpLedgerGateway(BASE, client=http)
    signer = EthSigner.create()
    stored = await ledger.append(_key_record(signer))
    assert stored.seq == 1
    assert stored.timestamp

    [found] = await ledger.query(PUBLIC_KEY, author=signer.current_account().upper().replace("0X", "0x"))
    assert found.data["publicKey"] == "AAAA"
    assert await ledger.query(PUBLIC_KEY, address="0x0000000000000000000000000000000000000000") == []
    await ledger.append(_key_record(signer, "BBBB"))
    latest = await ledger.latest(PUBLIC_KEY, address=signer.current_account())
    assert latest.data["publicKey"] == "BBBB"
    await ledger.aclose()


@pytest.mark.asyncio
async def test_bad_signature_is_rejected_with_401(http) -> None:
    ledger = HttpLedgerGateway(BASE, client=http)
    signer = EthSigner.create()
    rec = _key_record(signer).model_copy(update={"signature": None})
    with pytest.raises(InvalidSignature):
        await ledger.append(rec)
    assert await ledger.query() == []


def test_query_requires_exactly_two_participants(app) -> None:
    with TestClient(app) as tc:
        r = tc.post("/api/query", json={"kind": "message", "participants": ["0x1", "0x2", "0x3"]})
        assert r.status_code == 400
        r = tc.post("/api/query", json={"kind": "message", "participants": ["0x1", "0x2"]})
        assert r.status_code == 200
        assert r.json()["records"] == []


@pytest.mark.asyncio
async def test_blob_upload_and_download(http, tmp_path) -> None:
    blobs = HttpBlobStore(BASE, client=http)
    ref = await blobs.put(b"attachment bytes", "notes.txt")
    scheme, cid, name = parse_file_reference(ref)
    assert name == "notes.txt"
    assert await blobs.get(cid) == b"attachment bytes"
    assert await blobs.get("0" * 64) is None

    # corrupt the stored copy on the node
    (tmp_path / "node-blobs" / cid).write_bytes(b"rotten")
    with pytest.raises(BlobStoreError):
        await blobs.get(cid)


@pytest.mark.asyncio
async def test_two_clients_chat_through_the_node(http, tmp_path) -> None:
    ledger = HttpLedgerGateway(BASE, client=http)
    blobs = HttpBlobStore(BASE, client=http)
    alice = build_client(EthSigner.create(), ledger, LocalStore(str(tmp_path / "alice.db")), blobs)
    bob = build_client(EthSigner.create(), ledger, LocalStore(str(tmp_path / "bob.db")), blobs)
    await alice.messenger.connect()
    await bob.messenger.connect()
    await alice.directory.add_contact(alice.account, bob.account, "Bob")

    sent = await alice.messenger.send_text(bob.account, "hi")
    assert sent.data["index"] == 0
    await alice.messenger.send_file(bob.account, b"file", "f.bin")
    await bob.messenger.mark_read(alice.account, [sent.data["messageId"]])
    await bob.messenger.react(alice.account, 0, "🔥")

    text, attachment = await alice.engine.load_conversation(alice.account, bob.account)
    assert (text.content, text.status) == ("hi", MessageStatus.READ)
    assert [(r.emoji, r.user) for r in text.reactions] == [("🔥", bob.account)]
    assert attachment.index == 1 and attachment.isFile

    [contact] = await alice.engine.load_contacts(alice.account)
    assert contact.name == "Bob" and contact.publicKey
    await ledger.aclose()


def test_appends_are_pushed_to_event_listeners(app) -> None:
    signer = EthSigner.create()
    with TestClient(app) as tc:
        with tc.websocket_connect("/ws/events") as ws:
            r = tc.post("/api/append", json=_key_record(signer).model_dump(mode="json"))
            assert r.status_code == 200
            event = ws.receive_json()
    assert event["event"] == PUBLIC_KEY
    assert event["record"]["author"] == signer.current_account()
    assert event["record"]["seq"] == r.json()["seq"]


@pytest.mark.asyncio
async def test_malformed_record_is_rejected_with_401(http) -> None:
    ledger = HttpLedgerGateway(BASE, client=http)
    signer = EthSigner.create()
    account = signer.current_account()
    rec = signer.authorize(LedgerRecord(kind=PUBLIC_KEY, author=account, data={"address": account}))
    with pytest.raises(InvalidSignature, match="malformed"):
        await ledger.append(rec)
    assert await ledger.query() == []
    await ledger.aclose()
