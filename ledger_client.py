# ledger_client.py
"""
LedgerGateway over HTTP: append/query against a ledger node (main.py) with
httpx, events pushed over its /ws/events WebSocket.

All transport failures surface as LedgerUnavailable; retry policy belongs to
the caller. The event socket itself reconnects after a drop (the subscription
stays registered), but the first connect must succeed or `subscribe` raises.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, List, Optional, Sequence

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from config import settings
from exceptions import InvalidSignature, LedgerUnavailable
from ledger import Callback, LedgerGateway, LedgerSubscription, dispatch
from models import LedgerRecord, QueryRequest


class HttpLedgerGateway(LedgerGateway):
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        ws_url: Optional[str] = None,
    ) -> None:
        self.base_url = (base_url or settings["ledger_url"]).rstrip("/")
        self.ws_url = ws_url or self.base_url.replace("http", "ws", 1) + "/ws/events"
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=settings.get("request_timeout_secs", 10)
        )
        self._subscriptions: List[LedgerSubscription] = []
        self._listener: Optional[asyncio.Task] = None

    async def _post(self, path: str, payload: dict) -> dict:
        try:
            r = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            raise LedgerUnavailable(f"ledger request {path} failed: {e}") from e
        if r.status_code == 401:
            raise InvalidSignature(r.json().get("detail", r.text))
        if r.status_code != 200:
            raise LedgerUnavailable(f"ledger request {path} returned {r.status_code}: {r.text}")
        return r.json()

    async def append(self, record: LedgerRecord) -> LedgerRecord:
        return LedgerRecord(**await self._post("/api/append", record.model_dump(mode="json")))

    async def query(
        self,
        kind: Optional[str] = None,
        *,
        participants: Optional[Sequence[str]] = None,
        author: Optional[str] = None,
        **match: Any,
    ) -> List[LedgerRecord]:
        q = QueryRequest(
            kind=kind,
            author=author,
            participants=list(participants) if participants else None,
            match=match,
        )
        body = await self._post("/api/query", q.model_dump(mode="json"))
        return [LedgerRecord(**r) for r in body.get("records", [])]

    # --- events ---

    def _connect(self):
        ping = settings.get("ws_ping_interval_secs", 20)
        return websockets.connect(self.ws_url, ping_interval=ping, ping_timeout=ping)

    async def subscribe(self, kind: str, callback: Callback) -> LedgerSubscription:
        if self._listener is None or self._listener.done():
            try:
                ws = await self._connect()
            except (OSError, WebSocketException) as e:
                raise LedgerUnavailable(f"cannot open event stream {self.ws_url}: {e}") from e
            print(f"📡 Connected event stream {self.ws_url}")
            self._listener = asyncio.create_task(self._listen(ws))
        sub = LedgerSubscription(kind, callback, self._drop)
        self._subscriptions.append(sub)
        return sub

    def _drop(self, sub: LedgerSubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
        if not self._subscriptions and self._listener is not None:
            self._listener.cancel()
            self._listener = None

    async def _pump(self, ws) -> None:
        async for raw in ws:
            try:
                msg = json.loads(raw)
                record = LedgerRecord(**msg["record"])
            except (ValueError, KeyError, TypeError):
                continue
            await dispatch(self._subscriptions, record)

    async def _listen(self, ws) -> None:
        try:
            await self._pump(ws)
        except ConnectionClosed as e:
            print("⚠️ Event stream dropped:", e)
        finally:
            await ws.close()
        async for ws in self._connect():
            try:
                await self._pump(ws)
            except ConnectionClosed as e:
                print("⚠️ Event stream dropped:", e)
                continue

    async def aclose(self) -> None:
        for sub in list(self._subscriptions):
            sub.unsubscribe()
        if self._listener is not None:
            self._listener.cancel()
            self._listener = None
        await self._client.aclose()
