import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .chat import dispatch
from .schemas import ERROR, USERS_ONLINE, error_frame, frame, inbound_event

logger = logging.getLogger(__name__)

router = APIRouter()


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


async def safe_send(conn: Connection, payload: dict) -> bool:
    try:
        await conn.send_json(payload)
        return True
    except Exception as e:
        # peer went away mid-send; its own disconnect will unregister it
        logger.warning("dropping %s event: %s", payload.get("event"), e)
        return False


class ConnectionRegistry:
    """Maps each user id to its single active connection.

    A later login for the same user replaces the earlier connection. Every
    mutation broadcasts the online user list to every attached connection,
    logged in or not. Broadcasts are serialized so each peer sees them in
    mutation order.
    """

    def __init__(self):
        self._by_user: Dict[str, Connection] = {}
        self._by_conn: Dict[Connection, str] = {}
        self._attached: Dict[Connection, None] = {}
        self.lock = threading.Lock()
        self._broadcast_lock = asyncio.Lock()

    def attach(self, conn: Connection):
        with self.lock:
            self._attached[conn] = None

    def _snapshot(self) -> Tuple[List[str], List[Connection]]:
        return list(self._by_user), list(self._attached)

    async def register(self, user_id: str, conn: Connection):
        async with self._broadcast_lock:
            with self.lock:
                self._attached[conn] = None
                previous_user = self._by_conn.get(conn)
                if previous_user is not None and self._by_user.get(previous_user) is conn:
                    del self._by_user[previous_user]
                superseded = self._by_user.get(user_id)
                if superseded is not None and superseded is not conn:
                    self._by_conn.pop(superseded, None)
                self._by_user[user_id] = conn
                self._by_conn[conn] = user_id
                users, conns = self._snapshot()
            logger.info("user %s logged in", user_id)
            await self._broadcast(users, conns)

    async def unregister(self, conn: Connection):
        """Forget a closed connection; broadcast only if it was someone's current one."""
        async with self._broadcast_lock:
            with self.lock:
                self._attached.pop(conn, None)
                user_id = self._by_conn.pop(conn, None)
                if user_id is None or self._by_user.get(user_id) is not conn:
                    return
                del self._by_user[user_id]
                users, conns = self._snapshot()
            logger.info("user %s disconnected", user_id)
            await self._broadcast(users, conns)

    def resolve(self, user_id: str) -> Optional[Connection]:
        with self.lock:
            return self._by_user.get(user_id)

    def identity_of(self, conn: Connection) -> Optional[str]:
        with self.lock:
            return self._by_conn.get(conn)

    def online_users(self) -> List[str]:
        with self.lock:
            return list(self._by_user)

    async def _broadcast(self, users: List[str], conns: List[Connection]):
        payload = frame(USERS_ONLINE, users)
        await asyncio.gather(*(safe_send(conn, payload) for conn in conns))


class DeliveryStrategy(Protocol):
    async def deliver(self, user_id: str, payload: dict) -> bool: ...

    async def reply(self, conn: Connection, payload: dict) -> bool: ...


class BestEffortDelivery:
    """Deliver to the user's current connection if there is one, otherwise skip."""

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def deliver(self, user_id: str, payload: dict) -> bool:
        conn = self.registry.resolve(user_id)
        if conn is None:
            return False
        return await safe_send(conn, payload)

    async def reply(self, conn: Connection, payload: dict) -> bool:
        return await safe_send(conn, payload)


def _describe(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"invalid event: {loc}: {err['msg']}" if loc else f"invalid event: {err['msg']}"


async def handle_frame(service, conn: Connection, raw: str):
    try:
        event = inbound_event.validate_json(raw)
    except ValidationError as e:
        logger.warning("rejected frame: %s", e.errors()[0].get("msg"))
        await safe_send(conn, error_frame(ERROR, _describe(e)))
        return
    try:
        await dispatch(service, conn, event)
    except Exception:
        logger.exception("unhandled error in %s", event.event)
        await safe_send(conn, error_frame(ERROR, f"internal error handling {event.event}"))


@router.websocket("/ws")
async def ws_endpoint(websocket: WebSocket):
    service = websocket.app.state.chat
    # attached before the handshake completes so the client never misses a presence frame
    service.registry.attach(websocket)
    try:
        await websocket.accept()
        logger.debug("ws connect from %s", websocket.client)
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                await safe_send(websocket, error_frame(ERROR, "binary frames are not supported"))
                continue
            await handle_frame(service, websocket, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await service.logout(websocket)
