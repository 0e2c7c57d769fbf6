"""FastAPI JSON and WebSocket API for convo-sync UIs."""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Iterator
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from convo_sync.backend import MutationError
from convo_sync.common import ErrorCode
from convo_sync.config import SyncSettings
from convo_sync.db import DBBusyError, NotFoundError, PlatformDB, SchemaMismatchError
from convo_sync.engine import ConversationSync, TopicView
from convo_sync.local import FileBlobStore, LocalPlatform
from convo_sync.models import Topic, item_to_dict

logger = structlog.get_logger(__name__)

app = FastAPI(title="convo-sync", docs_url=None, redoc_url=None)

# Global platform instance (initialized on startup)
_platform: LocalPlatform | None = None


def get_platform() -> LocalPlatform:
    if _platform is None:
        raise RuntimeError("Platform not initialized")
    return _platform


def init_platform(db_path: str | None = None, blob_dir: str | None = None) -> LocalPlatform:
    global _platform
    settings = SyncSettings.from_env()
    _platform = LocalPlatform(
        PlatformDB(path=db_path or settings.db_path),
        blobs=FileBlobStore(blob_dir or settings.blob_dir),
    )
    return _platform


class SendMessage(BaseModel):
    content: str = Field(min_length=1)


def _error(status_code: int, code: ErrorCode, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


@contextlib.contextmanager
def _errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as e:
        raise _error(404, ErrorCode.ITEM_NOT_FOUND, f"Not found: {e}") from None
    except DBBusyError as e:
        raise _error(503, ErrorCode.DB_BUSY, str(e)) from e
    except SchemaMismatchError as e:
        raise _error(500, ErrorCode.DB_SCHEMA_MISMATCH, str(e)) from e
    except MutationError as e:
        raise _error(502, ErrorCode.MUTATION_FAILED, str(e)) from e
    except ValueError as e:
        raise _error(400, ErrorCode.INVALID_ARGUMENT, str(e)) from e


def _conversation(viewer_id: str, other_id: str) -> Topic:
    try:
        return Topic.conversation(viewer_id, other_id)
    except ValueError as e:
        raise _error(400, ErrorCode.INVALID_ARGUMENT, str(e)) from None


@app.get("/health")
async def health() -> dict[str, Any]:
    return {"status": "ok"}


@app.get("/conversations/{viewer_id}")
async def list_conversations(viewer_id: str) -> dict[str, Any]:
    """Conversations of a user, most recently active first."""
    platform = get_platform()
    with _errors():
        rows = platform.db.conversations(viewer_id=viewer_id)
    return {"viewer_id": viewer_id, "conversations": rows}


@app.get("/conversations/{viewer_id}/{other_id}/messages")
async def list_messages(viewer_id: str, other_id: str, limit: int | None = None) -> dict[str, Any]:
    topic = _conversation(viewer_id, other_id)
    if limit is not None:
        limit = max(1, min(limit, 1000))
    platform = get_platform()
    with _errors():
        rows = platform.db.messages_between(user_a=viewer_id, user_b=other_id, limit=limit)
        unread = platform.db.unread_count(viewer_id=viewer_id, other_id=other_id)
    return {"topic": topic.key, "messages": rows, "unread_count": unread}


@app.post("/conversations/{viewer_id}/{other_id}/messages", status_code=201)
async def send_message(viewer_id: str, other_id: str, body: SendMessage) -> dict[str, Any]:
    topic = _conversation(viewer_id, other_id)
    if not body.content.strip():
        raise _error(400, ErrorCode.INVALID_ARGUMENT, "content must be non-empty")
    with _errors():
        row = await get_platform().insert_item(topic, author_id=viewer_id, content=body.content)
    return {"message": row}


@app.delete("/conversations/{viewer_id}/{other_id}/messages/{message_id}")
async def delete_message(viewer_id: str, other_id: str, message_id: str) -> dict[str, Any]:
    topic = _conversation(viewer_id, other_id)
    platform = get_platform()
    with _errors():
        row = await platform.delete_item(topic, message_id)
        if row is not None and row.get("media_url") and platform.blobs is not None:
            await platform.blobs.remove([row["media_url"]])
    if row is None:
        raise _error(404, ErrorCode.ITEM_NOT_FOUND, f"Not found: {message_id}")
    return {"status": "ok", "message_id": message_id, "deleted": True}


@app.post("/conversations/{viewer_id}/{other_id}/read")
async def mark_read(viewer_id: str, other_id: str) -> dict[str, Any]:
    topic = _conversation(viewer_id, other_id)
    with _errors():
        updated = await get_platform().mark_read(topic, viewer_id)
    return {"topic": topic.key, "updated": updated}


def _frame(view: TopicView) -> dict[str, Any]:
    unread = view.unread()
    return {
        "type": "snapshot",
        "topic": view.topic.key,
        "status": str(view.status),
        "items": [item_to_dict(i) for i in view.snapshot()],
        "unread_count": unread.unread_count,
        "last_activity_at": unread.last_activity_at,
    }


@app.websocket("/ws/conversations/{viewer_id}/{other_id}")
async def conversation_socket(websocket: WebSocket, viewer_id: str, other_id: str) -> None:
    """Stream snapshots of one conversation.

    Client frames: ``{"type": "send", "content": ...}`` and ``{"type": "read"}``.
    """
    try:
        topic = Topic.conversation(viewer_id, other_id)
    except ValueError:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    platform = get_platform()
    changed: asyncio.Queue[None] = asyncio.Queue()
    engine = ConversationSync(platform, platform, viewer_id=viewer_id, blobs=platform.blobs)
    try:
        view = await engine.open(topic, on_change=lambda _v: changed.put_nowait(None))
        await websocket.send_json(_frame(view))

        async def _push() -> None:
            while True:
                await changed.get()
                while not changed.empty():
                    changed.get_nowait()
                await websocket.send_json(_frame(view))

        async def _receive() -> None:
            while True:
                text = await websocket.receive_text()
                try:
                    frame = json.loads(text)
                except ValueError:
                    await websocket.send_json({"type": "error", "message": "invalid JSON"})
                    continue
                kind = frame.get("type") if isinstance(frame, dict) else None
                if kind == "send":
                    try:
                        await engine.send(topic, str(frame.get("content") or ""))
                    except (ValueError, MutationError) as e:
                        await websocket.send_json({"type": "error", "message": str(e)})
                elif kind == "read":
                    engine.mark_read(topic)
                else:
                    await websocket.send_json({"type": "error", "message": "unknown frame"})

        tasks = [asyncio.create_task(_push()), asyncio.create_task(_receive())]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    except WebSocketDisconnect:
        logger.info("socket_disconnected", topic=topic.key, viewer_id=viewer_id)
    finally:
        await engine.aclose()


def run_server(host: str = "127.0.0.1", port: int = 8080, db_path: str | None = None) -> None:
    """Run the web server."""
    import uvicorn

    init_platform(db_path)
    uvicorn.run(app, host=host, port=port)
