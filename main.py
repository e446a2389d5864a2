# main.py
"""
BlockNet ledger node: the append-only record log behind the chat client.

Run with:
    uvicorn main:create_app --factory --port 3000
or
    python main.py
"""

import asyncio
import json
import time
from contextlib import asynccontextmanager
from typing import List, Optional
from urllib.parse import urlparse

from fastapi import FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from blobstore import LocalBlobStore, safe_name
from config import settings
from crypto_utils import conversation_id
from database import get_conn, init_db
from envelope import file_reference
from exceptions import BlobStoreError, InvalidSignature
from ledger import ANY_KIND, check_record, normalize_match, record_conversation, record_matches
from models import MESSAGE, LedgerRecord, QueryRequest


# -------------------- helper DB utilities --------------------
def _row_to_record(r) -> LedgerRecord:
    return LedgerRecord(
        kind=r["kind"],
        author=r["author"],
        data=json.loads(r["data"]),
        seq=r["seq"],
        timestamp=r["timestamp"],
        signature=r["signature"],
    )


def insert_record(db_path: str, record: LedgerRecord) -> LedgerRecord:
    conn = get_conn(db_path)
    try:
        cur = conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        data = dict(record.data)
        conv = record_conversation(record)
        if record.kind == MESSAGE:
            # insertion position within the conversation
            data["index"] = cur.execute(
                "SELECT COUNT(*) FROM records WHERE kind = ? AND conversation_id = ?", (MESSAGE, conv)
            ).fetchone()[0]
        ts = int(time.time())
        cur.execute(
            "INSERT INTO records (kind, author, conversation_id, data, signature, timestamp) VALUES (?,?,?,?,?,?)",
            (record.kind, record.author.lower(), conv, json.dumps(data), record.signature, ts),
        )
        seq = cur.lastrowid
        conn.commit()
    finally:
        conn.close()
    return record.model_copy(update={"data": data, "seq": seq, "timestamp": ts, "author": record.author.lower()})


def select_records(db_path: str, q: QueryRequest) -> List[LedgerRecord]:
    clauses, params = [], []
    if q.kind and q.kind != ANY_KIND:
        clauses.append("kind = ?")
        params.append(q.kind)
    if q.author:
        clauses.append("author = ?")
        params.append(q.author.lower())
    conv = q.match.get("conversationId")
    if q.participants:
        conv = conversation_id(*q.participants)
    if conv:
        clauses.append("conversation_id = ?")
        params.append(conv)
    sql = "SELECT seq, kind, author, data, signature, timestamp FROM records"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY seq ASC"

    conn = get_conn(db_path)
    try:
        rows = conn.execute(sql, params).fetchall()
    finally:
        conn.close()
    # the remaining data-field filters run on the decoded records
    out = []
    for r in rows:
        rec = _row_to_record(r)
        if record_matches(rec, q.kind, participants=q.participants, author=q.author, match=q.match):
            out.append(rec)
    return out


# -------------------- app factory --------------------
def create_app(
    db_path: Optional[str] = None,
    blob_path: Optional[str] = None,
    require_signatures: Optional[bool] = None,
) -> FastAPI:
    db_path = str(db_path or settings.get("ledger_db_path"))
    if require_signatures is None:
        require_signatures = bool(settings.get("require_signatures", True))

    init_db(db_path)
    blobs = LocalBlobStore(blob_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            for ws in list(app.state.listeners):
                try:
                    await ws.close()
                except RuntimeError:
                    pass
            app.state.listeners.clear()

    app = FastAPI(title="BlockNet Ledger Node", lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.state.listeners = set()  # in-memory event subscribers (not shared across processes)
    app.state.append_lock = asyncio.Lock()

    async def _push(ws: WebSocket, payload: dict) -> None:
        try:
            await ws.send_json(payload)
        except Exception as e:
            app.state.listeners.discard(ws)
            print("⚠️ Dropped event listener:", e)

    def broadcast(record: LedgerRecord) -> None:
        payload = {"event": record.kind, "record": record.model_dump(mode="json")}
        for ws in list(app.state.listeners):
            # run send in background so the append can finish quickly
            asyncio.create_task(_push(ws, payload))

    # -------------------- WebSocket for push --------------------
    @app.websocket("/ws/events")
    async def ws_events(ws: WebSocket):
        await ws.accept()
        app.state.listeners.add(ws)
        print("WS connected", ws.client)
        try:
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            app.state.listeners.discard(ws)
            print("WS disconnected", ws.client)

    # -------------------- API endpoints --------------------

    # Health endpoint
    @app.get("/health")
    async def health():
        return {"ok": True, "listeners": len(app.state.listeners)}

    # Append one signed record
    @app.post("/api/append")
    async def append(record: LedgerRecord):
        try:
            check_record(record, require_signatures)
        except InvalidSignature as e:
            raise HTTPException(status_code=401, detail=str(e))
        async with app.state.append_lock:
            stored = await asyncio.to_thread(insert_record, db_path, record)
        print(f"🧾 Appended {stored.kind} #{stored.seq} by {stored.author[:10]}…")
        broadcast(stored)
        return stored.model_dump(mode="json")

    # Ordered query
    @app.post("/api/query")
    async def query(q: QueryRequest):
        if q.participants is not None and len(q.participants) != 2:
            raise HTTPException(status_code=400, detail="participants must name exactly two addresses")
        q = q.model_copy(update={"match": normalize_match(q.match)})
        records = await asyncio.to_thread(select_records, db_path, q)
        return {"ok": True, "records": [r.model_dump(mode="json") for r in records]}

    # Upload attachment -> content-addressed store
    @app.post("/api/upload")
    async def upload(request: Request, name: str = "file"):
        body = await request.body()
        if not body:
            raise HTTPException(status_code=400, detail="No file provided")
        if len(body) > blobs.max_bytes:
            raise HTTPException(status_code=413, detail="Payload too large")
        cid = await asyncio.to_thread(blobs.store, body)
        return {"ok": True, "cid": cid, "ref": file_reference(cid, safe_name(name))}

    # fetch attachment by cid
    @app.get("/api/blob/{cid}")
    async def fetch_blob(cid: str):
        try:
            data = await asyncio.to_thread(blobs.fetch, cid)
        except BlobStoreError as e:
            raise HTTPException(status_code=409, detail=str(e))
        if data is None:
            raise HTTPException(status_code=404, detail="not found")
        return Response(content=data, media_type="application/octet-stream")

    return app


if __name__ == "__main__":
    import uvicorn

    parsed = urlparse(settings.get("ledger_url"))
    uvicorn.run(create_app(), host=parsed.hostname or "127.0.0.1", port=parsed.port or 3000)
