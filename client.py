# client.py
"""
Command-line chat client against a ledger node.

    python client.py connect
    python client.py add 0xabc… Alice
    python client.py send 0xabc… "hello"
    python client.py send-file 0xabc… ./photo.jpg
    python client.py history 0xabc…
    python client.py watch 0xabc…
    python client.py contacts
    python client.py block 0xabc…
"""

from __future__ import annotations

import argparse
import asyncio
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from blobstore import BlobStore, HttpBlobStore
from config import settings
from contacts import ContactDirectory
from exceptions import BlockNetError
from keyvault import KeyVault
from ledger import LedgerGateway
from ledger_client import HttpLedgerGateway
from messenger import Messenger
from models import Message, MessageStatus
from signer import EthSigner, Signer
from storage import LocalStore
from sync_engine import SyncEngine


@dataclass
class ChatClient:
    signer: Signer
    ledger: LedgerGateway
    store: LocalStore
    vault: KeyVault
    directory: ContactDirectory
    engine: SyncEngine
    messenger: Messenger

    @property
    def account(self) -> str:
        return self.messenger.account


def build_client(
    signer: Signer,
    ledger: LedgerGateway,
    store: LocalStore,
    blobs: Optional[BlobStore] = None,
    *,
    now_func: Optional[Callable[[], float]] = None,
) -> ChatClient:
    vault = KeyVault(store)
    directory = ContactDirectory(ledger, store, signer, now_func=now_func)
    engine = SyncEngine(ledger, vault, store, directory)
    messenger = Messenger(signer, ledger, vault, directory, store, blobs)
    return ChatClient(signer, ledger, store, vault, directory, engine, messenger)


def render(messages: List[Message], account: str) -> None:
    for m in messages:
        when = datetime.fromtimestamp(m.timestamp).strftime("%b %d, %H:%M")
        who = "me" if m.sender == account else m.sender[:10] + "…"
        if m.deleted:
            body = "(deleted)"
        elif m.undecryptable:
            body = "🔒 (undecryptable)"
        elif m.isFile:
            body = f"📎 {m.content}"
        else:
            body = m.content
        flags = " (edited)" if m.edited else ""
        ticks = {MessageStatus.SENT: "✓", MessageStatus.DELIVERED: "✓✓", MessageStatus.READ: "✓✓ read"}[m.status]
        reactions = " ".join(f"{e}×{n}" for e, n in _counts(m).items())
        print(f"[{m.index}] {when} {who}: {body}{flags}  {ticks} {reactions}".rstrip())


def _counts(m: Message) -> Counter:
    return Counter(r.emoji for r in m.reactions)


async def _acknowledge(client: ChatClient, address: str, messages: List[Message], status: MessageStatus) -> None:
    ids = [m.id for m in messages if m.recipient == client.account and m.status < status]
    if ids:
        await client.messenger.acknowledge(address, ids, status)
        print(f"✅ ACKed {len(ids)} message(s)")


async def run(args: argparse.Namespace) -> int:
    signer = EthSigner.from_key_file(args.key)
    ledger = HttpLedgerGateway(args.ledger)
    blobs = HttpBlobStore(args.ledger)
    client = build_client(signer, ledger, LocalStore(args.store), blobs)
    try:
        if args.cmd == "connect":
            await client.messenger.connect()
            print(f"🔐 Connected as {client.account}")
        elif args.cmd == "add":
            contact = await client.directory.add_contact(client.account, args.address, args.name)
            if not contact.publicKey:
                print("⚠️ Contact has not published a key yet; sending will fail until they connect.")
            print(f"✅ Added {contact.name} ({contact.address})")
        elif args.cmd == "contacts":
            for c in await client.engine.load_contacts(client.account):
                dot = "🟢" if c.online else "⚪"
                print(f"{dot} {c.name} {c.address}{' (blocked)' if c.blocked else ''}")
        elif args.cmd == "block":
            contact = await client.directory.get_contact(client.account, args.address)
            if contact is None:
                print("⚠️ Unknown contact; add it first.")
                return 1
            contact = await client.directory.toggle_block(client.account, contact)
            print(f"{'🚫 Blocked' if contact.blocked else '✅ Unblocked'} {contact.name}")
        elif args.cmd == "send":
            rec = await client.messenger.send_text(args.address, args.text)
            print(f"📤 Sent #{rec.data['index']} ({rec.data['messageId'][:8]}…)")
        elif args.cmd == "send-file":
            path = Path(args.path)
            rec = await client.messenger.send_file(args.address, path.read_bytes(), path.name)
            print(f"📤 Sent file #{rec.data['index']}")
        elif args.cmd == "history":
            messages = await client.engine.load_conversation(client.account, args.address)
            render(messages, client.account)
            await _acknowledge(client, args.address, messages, MessageStatus.READ)
        elif args.cmd == "watch":
            async def on_change(messages: List[Message]) -> None:
                print("\n🧾 Conversation updated:")
                render(messages, client.account)
                await _acknowledge(client, args.address, messages, MessageStatus.DELIVERED)

            sub = await client.engine.subscribe(client.account, args.address, on_change)
            sub.request_refresh()
            try:
                await asyncio.Event().wait()
            finally:
                sub.cancel()
        return 0
    except BlockNetError as e:
        print(f"⚠️ {e}")
        return 1
    finally:
        await ledger.aclose()
        await blobs.aclose()


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="client.py", description="BlockNet encrypted chat client")
    ap.add_argument("--ledger", default=settings.get("ledger_url"), help="ledger node base URL")
    ap.add_argument("--key", default=settings.get("signer_key_path"), help="account key file")
    ap.add_argument("--store", default=settings.get("local_store_path"), help="local sqlite store")
    sub = ap.add_subparsers(dest="cmd", required=True)
    sub.add_parser("connect", help="create keys and publish the public key")
    p = sub.add_parser("add", help="add a contact")
    p.add_argument("address")
    p.add_argument("name")
    sub.add_parser("contacts", help="list contacts with presence")
    p = sub.add_parser("block", help="toggle the blocked flag of a contact")
    p.add_argument("address")
    p = sub.add_parser("send", help="send a text message")
    p.add_argument("address")
    p.add_argument("text")
    p = sub.add_parser("send-file", help="upload and send a file")
    p.add_argument("address")
    p.add_argument("path")
    p = sub.add_parser("history", help="show a conversation and mark it read")
    p.add_argument("address")
    p = sub.add_parser("watch", help="follow a conversation live")
    p.add_argument("address")
    return ap


if __name__ == "__main__":
    try:
        raise SystemExit(asyncio.run(run(build_arg_parser().parse_args())))
    except KeyboardInterrupt:
        pass
