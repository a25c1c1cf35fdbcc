import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from starlette.websockets import WebSocketState

from core.nicknames import ANONYMOUS
from core.security import new_join_token

logger = logging.getLogger(__name__)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class RetroHub:
    """In-process shared-state substrate for retrospective sessions.

    Per session token it keeps replicated value slots (last write wins, with a
    version per key), the connected participants, a nickname map and a chat
    feed. Every published change is queued and fanned out to all sockets of
    the session, the publisher included.
    """

    def __init__(
        self,
        join_url_base: str,
        stale_after_seconds: float = 12.0,
        chat_history_limit: int = 200,
    ) -> None:
        self.join_url_base = join_url_base
        self.stale_after_seconds = stale_after_seconds
        self.chat_history_limit = chat_history_limit
        self.active: Dict[str, List[WebSocket]] = {}
        self.presence: Dict[str, Dict[WebSocket, dict]] = {}
        self.values: Dict[str, Dict[str, Any]] = {}
        self.versions: Dict[str, Dict[str, int]] = {}
        self.nicknames: Dict[str, Dict[str, str]] = {}
        self.chat: Dict[str, List[dict]] = {}
        self.join_urls: Dict[str, str] = {}
        self._join_events: Dict[str, asyncio.Event] = {}
        self._last_presence: Dict[str, dict] = {}
        # Starlette WebSocket isn't safe for concurrent sends. Serialize sends per-socket.
        self._send_locks: Dict[WebSocket, asyncio.Lock] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queues: Dict[str, "asyncio.Queue[dict]"] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    # Session lifecycle

    def ensure_session(self, token: str) -> None:
        self.values.setdefault(token, {})
        self.versions.setdefault(token, {})
        self.nicknames.setdefault(token, {})
        self.chat.setdefault(token, [])
        if token not in self._join_events:
            self._join_events[token] = asyncio.Event()

    def has_session(self, token: str) -> bool:
        return token in self.values

    def create_session(self) -> str:
        """Register a new session; its join URL is published asynchronously."""
        token = new_join_token()
        self.ensure_session(token)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._publish_join_url(token)
        else:
            loop.call_soon(self._publish_join_url, token)
        return token

    def _publish_join_url(self, token: str) -> None:
        if not self.has_session(token):
            return
        self.join_urls[token] = f"{self.join_url_base}?session={token}"
        self._join_events[token].set()

    def session_join_url(self, token: str) -> Optional[str]:
        return self.join_urls.get(token)

    async def wait_for_join_url(self, token: str) -> str:
        self.ensure_session(token)
        await self._join_events[token].wait()
        return self.join_urls[token]

    def discard_session(self, token: str) -> None:
        if self.active.get(token):
            return
        self._drop(token)

    def _drop(self, token: str) -> None:
        for registry in (
            self.active,
            self.presence,
            self.values,
            self.versions,
            self.nicknames,
            self.chat,
            self.join_urls,
            self._join_events,
            self._last_presence,
            self._queues,
        ):
            registry.pop(token, None)
        worker = self._workers.pop(token, None)
        if worker is not None and not worker.done():
            worker.cancel()

    async def close_session(self, token: str) -> None:
        sockets = list(self.active.get(token, []))
        for websocket in sockets:
            await self.send_one(token, websocket, {"type": "presence", "total": 0, "participants": []})
            await self.send_one(token, websocket, {"type": "session_closed"})
            try:
                await asyncio.wait_for(websocket.close(), timeout=2.0)
            except Exception:
                logger.debug("Socket already gone while closing session %s", token)
        self._drop(token)

    # Participants

    async def connect(self, token: str, websocket: WebSocket) -> str:
        self._loop = asyncio.get_running_loop()
        await websocket.accept()
        self.ensure_session(token)
        participant_id = uuid4().hex
        self.active.setdefault(token, []).append(websocket)
        now = time.time()
        self.presence.setdefault(token, {})[websocket] = {
            "id": participant_id,
            "nickname": ANONYMOUS,
            "online": True,
            "last_seen_ts": now,
            "last_seen": _iso(now),
        }
        self._send_locks.setdefault(websocket, asyncio.Lock())
        self._ensure_worker(token)
        return participant_id

    def disconnect(self, token: str, websocket: WebSocket) -> None:
        sockets = self.active.get(token, [])
        if websocket in sockets:
            sockets.remove(websocket)
        (self.presence.get(token, {}) or {}).pop(websocket, None)
        self._send_locks.pop(websocket, None)
        if sockets:
            return
        self.active.pop(token, None)
        # Sessions opened ad hoc on a socket live only as long as their sockets;
        # provisioned ones (with a join URL) survive until closed.
        if token not in self.join_urls:
            self._drop(token)

    async def leave_session(self, token: str, websocket: WebSocket) -> None:
        self.disconnect(token, websocket)
        try:
            await asyncio.wait_for(websocket.close(), timeout=2.0)
        except Exception:
            logger.debug("Socket already gone while leaving session %s", token)
        self.enqueue(token, self.build_presence_payload(token))

    def touch(self, token: str, websocket: WebSocket) -> None:
        meta = (self.presence.get(token, {}) or {}).get(websocket)
        if isinstance(meta, dict):
            now = time.time()
            meta["online"] = True
            meta["last_seen_ts"] = now
            meta["last_seen"] = _iso(now)

    def participant_id(self, token: str, websocket: WebSocket) -> Optional[str]:
        meta = (self.presence.get(token, {}) or {}).get(websocket)
        return meta.get("id") if meta else None

    def nickname_of(self, token: str, participant_id: str) -> str:
        return (self.nicknames.get(token, {}) or {}).get(participant_id) or ANONYMOUS

    def set_nickname(self, token: str, participant_id: str, nickname: str) -> None:
        nickname = (nickname or "").strip() or ANONYMOUS
        self.ensure_session(token)
        self.nicknames[token][participant_id] = nickname
        for meta in (self.presence.get(token, {}) or {}).values():
            if meta.get("id") == participant_id:
                meta["nickname"] = nickname
        self.enqueue(token, {"type": "nicknames", "nicknames": self.nickname_map(token)})
        self.enqueue(token, self.build_presence_payload(token))

    def nickname_map(self, token: str) -> Dict[str, str]:
        return dict(self.nicknames.get(token, {}) or {})

    def connected_participants(self, token: str, self_id: Optional[str] = None) -> List[dict]:
        now = time.time()
        entries = []
        for meta in (self.presence.get(token, {}) or {}).values():
            last_seen_ts = meta.get("last_seen_ts")
            # A paused browser may keep the socket open; the heartbeat decides.
            fresh = (
                isinstance(last_seen_ts, (int, float))
                and (now - float(last_seen_ts)) <= self.stale_after_seconds
            )
            entries.append(
                {
                    "id": meta["id"],
                    "nickname": meta.get("nickname") or ANONYMOUS,
                    "isSelf": meta["id"] == self_id,
                    "online": bool(meta.get("online", True) and fresh),
                    "last_seen": meta.get("last_seen") or "",
                }
            )
        entries.sort(key=lambda item: (item["nickname"].lower(), item["id"]))
        return entries

    def build_presence_payload(self, token: str) -> dict:
        participants = self.connected_participants(token)
        return {"type": "presence", "total": len(participants), "participants": participants}

    def sweep_presence(self) -> None:
        """Re-broadcast presence for sessions whose online flags went stale."""
        for token in list(self.active.keys()):
            payload = self.build_presence_payload(token)
            snapshot = {
                "participants": [
                    (entry["id"], entry["nickname"], entry["online"])
                    for entry in payload["participants"]
                ]
            }
            if self._last_presence.get(token) == snapshot:
                continue
            self._last_presence[token] = snapshot
            self.enqueue(token, payload)

    # Shared values

    def shared_value(self, token: str, key: str, initial: Any = None) -> Any:
        self.ensure_session(token)
        values = self.values[token]
        if key not in values:
            values[key] = initial
            self.versions[token][key] = 0
        return values[key]

    def version(self, token: str, key: str) -> int:
        return (self.versions.get(token, {}) or {}).get(key, 0)

    def set_value(self, token: str, key: str, value: Any) -> int:
        self.ensure_session(token)
        self.values[token][key] = value
        version = self.versions[token].get(key, 0) + 1
        self.versions[token][key] = version
        self.enqueue(token, {"type": "value", "key": key, "value": value, "version": version})
        return version

    def apply(self, token: str, key: str, transform: Callable[[Any], Any], initial: Any = None) -> bool:
        """Read-modify-write ``key`` in one step; nothing awaits in between.

        Returns False (and publishes nothing) when ``transform`` hands back the
        current value unchanged.
        """
        current = self.shared_value(token, key, initial)
        updated = transform(current)
        if updated is current or updated == current:
            return False
        self.set_value(token, key, updated)
        return True

    def snapshot(self, token: str) -> dict:
        return {
            "values": dict(self.values.get(token, {}) or {}),
            "versions": dict(self.versions.get(token, {}) or {}),
        }

    # Chat

    def post_chat(self, token: str, participant_id: str, text: str) -> Optional[dict]:
        if not (text or "").strip():
            return None
        self.ensure_session(token)
        now = time.time()
        message = {
            "id": uuid4().hex,
            "senderId": participant_id,
            "sender": self.nickname_of(token, participant_id),
            "text": text,
            "sentAt": _iso(now),
        }
        history = self.chat[token]
        history.append(message)
        if len(history) > self.chat_history_limit:
            del history[: len(history) - self.chat_history_limit]
        self.enqueue(token, {"type": "chat_message", "message": message})
        return message

    def chat_history(self, token: str) -> List[dict]:
        return list(self.chat.get(token, []) or [])

    def welcome_payload(self, token: str, websocket: WebSocket) -> dict:
        participant_id = self.participant_id(token, websocket)
        snapshot = self.snapshot(token)
        return {
            "type": "welcome",
            "participant_id": participant_id,
            "nickname": self.nickname_of(token, participant_id) if participant_id else ANONYMOUS,
            "values": snapshot["values"],
            "versions": snapshot["versions"],
            "nicknames": self.nickname_map(token),
            "participants": self.connected_participants(token, participant_id),
            "chat": self.chat_history(token),
        }

    # Delivery

    async def send_one(self, token: str, websocket: WebSocket, payload: dict) -> None:
        lock = self._send_locks.setdefault(websocket, asyncio.Lock())
        try:
            encoded = jsonable_encoder(payload)
            async with lock:
                await asyncio.wait_for(websocket.send_json(encoded), timeout=2.0)
        except Exception:
            logger.debug("Dropping socket after failed send on session %s", token)
            self.disconnect(token, websocket)

    def enqueue(self, token: str, payload: dict) -> None:
        """
        Queue a broadcast without blocking the caller on socket writes.
        """
        if not token or not isinstance(payload, dict) or not self.has_session(token):
            return
        if self._loop is None or self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._put(token, payload)
        else:
            # Called from a threadpool handler.
            self._loop.call_soon_threadsafe(self._put, token, payload)

    def _put(self, token: str, payload: dict) -> None:
        if not self.has_session(token):
            return
        self._ensure_worker(token)
        queue = self._queues.get(token)
        if queue is None:
            return
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("Broadcast queue full for session %s, dropping message", token)

    def _ensure_worker(self, token: str) -> None:
        if not token or self._loop is None:
            return
        worker = self._workers.get(token)
        if worker is not None and not worker.done() and worker.get_loop() is self._loop:
            return
        self._queues[token] = asyncio.Queue(maxsize=500)
        self._workers[token] = self._loop.create_task(self._worker(token))

    async def _worker(self, token: str) -> None:
        queue = self._queues.get(token)
        if queue is None:
            return
        while True:
            payload = await queue.get()
            sockets = list(self.active.get(token, []) or [])
            if not sockets:
                continue
            try:
                await self._broadcast_now(token, sockets, payload)
            except Exception:
                logger.exception("Broadcast failed for session %s", token)

    async def _broadcast_now(self, token: str, sockets: List[WebSocket], payload: dict) -> None:
        encoded = jsonable_encoder(payload)

        async def safe_send(ws: WebSocket) -> None:
            if getattr(ws, "application_state", None) == WebSocketState.DISCONNECTED:
                self.disconnect(token, ws)
                return
            try:
                lock = self._send_locks.setdefault(ws, asyncio.Lock())
                async with lock:
                    await asyncio.wait_for(ws.send_json(encoded), timeout=2.0)
            except Exception:
                logger.debug("Dropping socket after failed broadcast on session %s", token)
                self.disconnect(token, ws)

        tasks = [asyncio.create_task(safe_send(ws)) for ws in sockets]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
