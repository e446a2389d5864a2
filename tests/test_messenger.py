from __future__ import annotations

import pytest

from crypto_utils import conversation_id
from envelope import parse_file_reference
from exceptions import InvalidSignature, UnknownRecipient
from models import MESSAGE, PUBLIC_KEY, REACTION, STATUS, LedgerRecord, MessageRecord


@pytest.mark.asyncio
async def test_connect_publishes_key_once(make_client, ledger) -> None:
    alice = make_client("alice")
    first = await alice.messenger.connect()
    again = await alice.messenger.connect()
    assert first == again
    assert len(await ledger.query(PUBLIC_KEY, author=alice.account)) == 1
    assert await alice.directory.resolve_public_key(alice.account) == first.publicKey


@pytest.mark.asyncio
async def test_send_to_account_without_key_fails_before_append(make_client, ledger) -> None:
    alice, bob = make_client("alice"), make_client("bob")
    await alice.messenger.connect()
    with pytest.raises(UnknownRecipient) as exc:
        await alice.messenger.send_text(bob.account, "hi")
    assert exc.value.address == bob.account
    assert await ledger.query(MESSAGE) == []


@pytest.mark.asyncio
async def test_empty_text_is_refused(make_client) -> None:
    alice = make_client("alice")
    with pytest.raises(ValueError):
        await alice.messenger.send_text(alice.account, "   ")


@pytest.mark.asyncio
async def test_message_ids_are_unique_for_identical_payloads(make_client, blobs) -> None:
    alice, bob = make_client("alice"), make_client("bob")
    await bob.messenger.connect()
    one = await alice.messenger.send_file(bob.account, b"same bytes", "a.txt")
    two = await alice.messenger.send_file(bob.account, b"same bytes", "a.txt")
    assert one.data["ciphertext"] == two.data["ciphertext"]
    assert one.data["messageId"] != two.data["messageId"]
    assert (one.data["index"], two.data["index"]) == (0, 1)


@pytest.mark.asyncio
async def test_file_reference_is_cleartext_by_default(make_client, blobs) -> None:
    alice, bob = make_client("alice"), make_client("bob")
    await bob.messenger.connect()
    rec = await alice.messenger.send_file(bob.account, b"\x89PNG...", "../../photo.png")
    scheme, cid, name = parse_file_reference(rec.data["ciphertext"])
    assert (scheme, name) == ("ipfs", "photo.png")
    assert rec.data["isFile"] is True
    assert await blobs.get(cid) == b"\x89PNG..."

    [msg] = await bob.engine.load_conversation(bob.account, alice.account)
    assert msg.isFile and msg.content == rec.data["ciphertext"]


@pytest.mark.asyncio
async def test_file_reference_can_be_sealed(make_client, blobs) -> None:
    alice, bob = make_client("alice"), make_client("bob")
    await bob.messenger.connect()
    alice.messenger.encrypt_file_references = True
    rec = await alice.messenger.send_voice(bob.account, b"opus frames")
    assert "://" not in rec.data["ciphertext"]

    [msg] = await bob.engine.load_conversation(bob.account, alice.account)
    _, cid, name = parse_file_reference(msg.content)
    assert name == "voice-message.webm"
    assert await blobs.get(cid) == b"opus frames"
    [own] = await alice.engine.load_conversation(alice.account, bob.account)
    assert own.content == msg.content


@pytest.mark.asyncio
async def test_sealed_file_to_unknown_recipient_uploads_nothing(make_client, blobs) -> None:
    alice, bob = make_client("alice"), make_client("bob")
    alice.messenger.encrypt_file_references = True
    with pytest.raises(UnknownRecipient):
        await alice.messenger.send_file(bob.account, b"data", "x.bin")
    assert list(blobs.base.iterdir()) == []


@pytest.mark.asyncio
async def test_unsigned_record_is_rejected(make_client, ledger) -> None:
    alice, bob = make_client("alice"), make_client("bob")
    record = MessageRecord(
        conversationId=conversation_id(alice.account, bob.account),
        sender=alice.account,
        recipient=bob.account,
        ciphertext="AAAA",
    )
    unsigned = LedgerRecord(kind=MESSAGE, author=alice.account, data=record.model_dump())
    with pytest.raises(InvalidSignature, match="not signed"):
        await ledger.append(unsigned)

    signed = alice.signer.authorize(unsigned)
    tampered = signed.model_copy(update={"data": {**signed.data, "ciphertext": "BBBB"}})
    with pytest.raises(InvalidSignature, match="does not match"):
        await ledger.append(tampered)
    assert await ledger.query(MESSAGE) == []


@pytest.mark.asyncio
async def test_cannot_write_as_another_account(make_client, ledger) -> None:
    alice, bob, mallory = make_client("alice"), make_client("bob"), make_client("mallory")
    spoof = LedgerRecord(
        kind=MESSAGE,
        author=alice.account,
        data=MessageRecord(
            conversationId=conversation_id(alice.account, bob.account),
            sender=alice.account,
            recipient=bob.account,
            ciphertext="AAAA",
        ).model_dump(),
    )
    with pytest.raises(ValueError):
        mallory.signer.authorize(spoof)

    # signed by mallory but claiming alice as sender
    claimed = spoof.model_copy(update={"author": mallory.account})
    with pytest.raises(InvalidSignature, match="sender"):
        await ledger.append(mallory.signer.authorize(claimed))

    # right author, wrong conversation id
    wrong_conv = LedgerRecord(
        kind=MESSAGE,
        author=mallory.account,
        data={**spoof.data, "sender": mallory.account},
    )
    with pytest.raises(InvalidSignature, match="conversationId"):
        await ledger.append(mallory.signer.authorize(wrong_conv))


@pytest.mark.asyncio
async def test_signed_but_malformed_records_are_rejected(make_client, ledger) -> None:
    alice, bob = make_client("alice"), make_client("bob")
    conv = conversation_id(alice.account, bob.account)
    malformed = [
        (MESSAGE, {"conversationId": conv, "sender": bob.account, "recipient": alice.account}),
        (STATUS, {"conversationId": conv, "messageId": "m0", "status": 9, "user": bob.account}),
        (REACTION, {"conversationId": conv, "messageIndex": 0, "user": bob.account}),
    ]
    for kind, data in malformed:
        record = bob.signer.authorize(LedgerRecord(kind=kind, author=bob.account, data=data))
        with pytest.raises(InvalidSignature, match=f"malformed {kind}"):
            await ledger.append(record)
    assert await ledger.query() == []
