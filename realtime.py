"""
Live comment delivery over websockets.

Frames are JSON objects {"event": <name>, "data": <payload>} in both
directions. Clients join per-file rooms named "file-<fileId>"; a new comment
is pushed to every socket in its room except the author's own sockets.
Delivery is best-effort: sockets that are gone at send time simply miss it.
"""
import json
import logging
import uuid
from typing import Any, Callable, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

AUTH_CHECK_ROOM = "auth-check"


def room_name(file_id) -> str:
    return f"file-{file_id}"


def frame(event: str, data: Any) -> Dict[str, Any]:
    return {"event": event, "data": data}


class ConnectionManager:
    def __init__(self):
        self.connections: Dict[str, WebSocket] = {}
        self.socket_users: Dict[str, str] = {}
        self.user_sockets: Dict[str, Set[str]] = {}
        self.rooms: Dict[str, Set[str]] = {}
        self.socket_rooms: Dict[str, Set[str]] = {}

    def connect(self, websocket: WebSocket) -> str:
        socket_id = uuid.uuid4().hex
        self.connections[socket_id] = websocket
        self.socket_rooms[socket_id] = set()
        return socket_id

    def register_user(self, socket_id: str, user_id) -> None:
        user_id = str(user_id)
        previous = self.socket_users.get(socket_id)
        if previous and previous != user_id:
            self.unregister(socket_id)
        self.socket_users[socket_id] = user_id
        self.user_sockets.setdefault(user_id, set()).add(socket_id)

    def unregister(self, socket_id: str) -> None:
        user_id = self.socket_users.pop(socket_id, None)
        if user_id is None:
            return
        sockets = self.user_sockets.get(user_id, set())
        sockets.discard(socket_id)
        if not sockets:
            self.user_sockets.pop(user_id, None)

    def user_for(self, socket_id: str) -> Optional[str]:
        return self.socket_users.get(socket_id)

    def sockets_for_user(self, user_id) -> Set[str]:
        return set(self.user_sockets.get(str(user_id), set()))

    def join(self, socket_id: str, room: str) -> None:
        self.rooms.setdefault(room, set()).add(socket_id)
        self.socket_rooms.setdefault(socket_id, set()).add(room)

    def leave(self, socket_id: str, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.discard(socket_id)
            if not members:
                del self.rooms[room]
        self.socket_rooms.get(socket_id, set()).discard(room)

    def members(self, room: str) -> Set[str]:
        return set(self.rooms.get(room, set()))

    def disconnect(self, socket_id: str) -> None:
        for room in list(self.socket_rooms.pop(socket_id, set())):
            self.leave(socket_id, room)
        self.unregister(socket_id)
        self.connections.pop(socket_id, None)

    def clear(self) -> None:
        self.connections.clear()
        self.socket_users.clear()
        self.user_sockets.clear()
        self.rooms.clear()
        self.socket_rooms.clear()

    async def send(self, socket_id: str, message: Dict[str, Any]) -> bool:
        ws = self.connections.get(socket_id)
        if ws is None:
            return False
        try:
            await ws.send_json(message)
            return True
        except Exception as e:
            logger.warning("Dropping socket %s after failed send: %s", socket_id, e)
            self.disconnect(socket_id)
            return False

    async def broadcast(self, room: str, message: Dict[str, Any], exclude_user=None) -> int:
        excluded = self.sockets_for_user(exclude_user) if exclude_user is not None else set()
        delivered = 0
        for socket_id in sorted(self.members(room) - excluded):
            if await self.send(socket_id, message):
                delivered += 1
        return delivered


class RealtimeHub:
    def __init__(self, sessions, manager: Optional[ConnectionManager] = None, can_join: Optional[Callable[[str, str], bool]] = None):
        self.sessions = sessions
        self.manager = manager or ConnectionManager()
        # can_join(user_id, file_id) -> bool, called from the threadpool
        self.can_join = can_join

    async def emit(self, socket_id: str, event: str, data: Any) -> bool:
        return await self.manager.send(socket_id, frame(event, data))

    async def broadcast_new_comment(self, file_id, comment: Dict[str, Any], author_id) -> int:
        return await self.manager.broadcast(room_name(file_id), frame("new-comment", comment), exclude_user=author_id)

    async def serve(self, websocket: WebSocket):
        await websocket.accept()
        socket_id = self.manager.connect(websocket)
        logger.info("Client connected: %s", socket_id)

        session = self.sessions.get_from_socket(websocket)
        if session is not None:
            user_id = str(session["userId"])
            self.manager.register_user(socket_id, user_id)
            await self.emit(socket_id, "authentication_success", {"userId": user_id, "message": "Authenticated from session"})
        else:
            await self.emit(socket_id, "need_authentication", {"message": "No valid session; send an authenticate event"})

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    await self.emit(socket_id, "error", {"message": "Malformed message"})
                    continue
                await self.dispatch(socket_id, message)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Socket %s failed", socket_id)
        finally:
            self.manager.disconnect(socket_id)
            logger.info("Client disconnected: %s", socket_id)

    async def dispatch(self, socket_id: str, message: Any):
        if not isinstance(message, dict) or not isinstance(message.get("event"), str):
            await self.emit(socket_id, "error", {"message": "Malformed message"})
            return
        event, data = message["event"], message.get("data")
        try:
            if event == "join-file-room":
                await self.on_join(socket_id, data)
            elif event == "leave-file-room":
                await self.on_leave(socket_id, data)
            elif event == "authenticate":
                await self.on_authenticate(socket_id, data)
            else:
                await self.emit(socket_id, "error", {"message": f"Unknown event: {event}"})
        except Exception as e:
            logger.exception("Error handling %s from socket %s", event, socket_id)
            await self.emit(socket_id, "error", {"message": str(e) or "Internal error"})

    async def on_join(self, socket_id: str, file_id):
        user_id = self.manager.user_for(socket_id)
        if file_id == AUTH_CHECK_ROOM:
            if user_id:
                await self.emit(socket_id, "authentication_success", {"userId": user_id, "message": "Authenticated"})
            else:
                await self.emit(socket_id, "need_authentication", {"message": "Not authenticated"})
            return
        if not user_id:
            logger.warning("Unauthenticated socket %s tried to join %s", socket_id, file_id)
            await self.emit(socket_id, "error", {"message": "Authentication required to join a file room"})
            return
        if not isinstance(file_id, str) or not file_id:
            await self.emit(socket_id, "error", {"message": "fileId is required"})
            return
        if self.can_join is not None and not await run_in_threadpool(self.can_join, user_id, file_id):
            logger.warning("User %s denied access to room of file %s", user_id, file_id)
            await self.emit(socket_id, "error", {"message": "You don't have access to this file"})
            return
        room = room_name(file_id)
        self.manager.join(socket_id, room)
        logger.debug("Socket %s joined %s", socket_id, room)
        await self.emit(socket_id, "room-joined", {"room": room})

    async def on_leave(self, socket_id: str, file_id):
        room = room_name(file_id)
        self.manager.leave(socket_id, room)
        await self.emit(socket_id, "room-left", {"room": room})

    async def on_authenticate(self, socket_id: str, data):
        token = data.get("token") if isinstance(data, dict) else data
        user_id = self.sessions.verify_socket_token(token) if isinstance(token, str) else None
        if user_id is None:
            logger.warning("Socket %s sent an invalid authentication token", socket_id)
            await self.emit(socket_id, "error", {"message": "Invalid authentication token"})
            return
        self.manager.register_user(socket_id, user_id)
        await self.emit(socket_id, "authentication_success", {"userId": user_id, "message": "Authenticated with token"})

    async def shutdown(self):
        for socket_id, ws in list(self.manager.connections.items()):
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Close failed for socket %s: %s", socket_id, e)
        self.manager.clear()
