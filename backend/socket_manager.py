"""WebSocket hub for the party game: sessions, rooms, broadcast and routing."""

from fastapi import WebSocket, WebSocketDisconnect
from contextlib import asynccontextmanager
from typing import Dict, List, Optional
import asyncio
import itertools
import logging
import time

import config
from bomb_game import BombEngine
from errors import ConflictError, HubError, NotFoundError, PermissionDeniedError
from messages import MalformedMessage, UnknownMessageType, parse_message
from spinner import SpinnerEngine, now_ms

logger = logging.getLogger(__name__)


class Session:
    def __init__(self, client_id: str, websocket: WebSocket):
        self.client_id = client_id
        self.websocket = websocket
        self.player_name: Optional[str] = None
        self.room_id: Optional[str] = None  # lookup key into SocketManager.rooms
        self.is_host = False
        self.state = "connecting"  # connecting, open, closed
        self.connected_at = time.time()
        self.disconnecting = False
        self.msg_timestamps: List[float] = []

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    @property
    def display_name(self) -> str:
        return self.player_name or self.client_id


class Room:
    def __init__(self, room_id: str, host_id: str,
                 default_winner_duration: Optional[float] = None):
        self.room_id = room_id
        self.host_id = host_id
        self.players: Dict[str, dict] = {}  # client_id -> player record, join order
        self.player_order: Optional[List[str]] = None
        self.default_winner_duration = default_winner_duration
        self.spinner = None
        self.spinner_task: Optional[asyncio.Task] = None
        self.bomb_game = None
        self.lock = asyncio.Lock()
        self.closed = False
        self.created_at = time.time()

    @property
    def game_state(self) -> str:
        if self.spinner is not None:
            return "spinner"
        if self.bomb_game is not None:
            return "bomb"
        return "none"

    def add_player(self, client_id: str, name: str, avatar: str = "",
                   is_host: bool = False) -> dict:
        player = {
            "id": client_id,
            "name": name,
            "avatar": avatar,
            "is_host": is_host,
            "joined_at": time.time(),
        }
        self.players[client_id] = player
        # An override is only valid as a permutation of the current members
        self.player_order = None
        return player

    def remove_player(self, client_id: str) -> Optional[dict]:
        player = self.players.pop(client_id, None)
        if player is not None:
            self.player_order = None
        return player

    def get_player_list(self) -> list:
        players = []
        for p in self.players.values():
            entry = {
                "id": p["id"],
                "name": p["name"],
                "avatar": p.get("avatar", ""),
                "isHost": p["is_host"],
                "joinedAt": int(p["joined_at"] * 1000),
            }
            if self.bomb_game is not None:
                entry["points"] = p.get("points", 0)
                entry["diceValue"] = p.get("dice_value", 1)
                entry["hasBomb"] = p.get("has_bomb", False)
            players.append(entry)
        return players

    def cancel_spinner(self):
        if self.spinner_task and not self.spinner_task.done():
            self.spinner_task.cancel()
        self.spinner_task = None
        self.spinner = None


class SocketManager:
    def __init__(self, host_only_commands: bool = config.HOST_ONLY_COMMANDS):
        self.sessions: Dict[str, Session] = {}
        self.rooms: Dict[str, Room] = {}
        self.host_only_commands = host_only_commands
        self.spinner = SpinnerEngine(self)
        self.bomb = BombEngine(self)
        self.started_at = time.time()
        self._client_ids = itertools.count(1)
        self._sweep_task: Optional[asyncio.Task] = None

    # --- Background sweep ---

    def start_sweep_loop(self):
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self):
        while True:
            try:
                await asyncio.sleep(config.STALE_SWEEP_SECONDS)
                await self.sweep_stale_sessions()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in session sweep loop")

    async def sweep_stale_sessions(self) -> int:
        """Log a status line and clean up sessions whose socket is gone."""
        active = sum(1 for s in self.sessions.values() if s.is_open)
        logger.info("Status: %d active clients, %d active rooms", active, len(self.rooms))
        for room in self.rooms.values():
            logger.debug("  Room %s: %s (%s)", room.room_id,
                         ", ".join(p["name"] for p in room.players.values()), room.game_state)

        stale = [cid for cid, s in self.sessions.items() if s.state == "closed"]
        for client_id in stale:
            session = self.sessions.get(client_id)
            await self.disconnect(client_id)
            if session:
                try:
                    await session.websocket.close()
                except Exception:
                    logger.debug("Socket for %s already closed", client_id)
        if stale:
            logger.info("Cleaned up %d stale connections", len(stale))
        return len(stale)

    async def shutdown(self):
        if self._sweep_task:
            self._sweep_task.cancel()
            self._sweep_task = None
        for room in list(self.rooms.values()):
            room.closed = True
            room.cancel_spinner()
        self.rooms.clear()
        for session in list(self.sessions.values()):
            session.state = "closed"
            try:
                await session.websocket.close()
            except Exception:
                logger.debug("Socket for %s already closed", session.client_id)
        self.sessions.clear()

    def stats(self) -> dict:
        return {"clients": len(self.sessions), "rooms": len(self.rooms)}

    # --- Session registry ---

    def register_session(self, websocket: WebSocket) -> Session:
        client_id = f"client_{next(self._client_ids)}"
        session = Session(client_id, websocket)
        self.sessions[client_id] = session
        return session

    async def disconnect(self, client_id: str):
        """Cleanup path for close and error alike; safe to call repeatedly."""
        session = self.sessions.get(client_id)
        if session is None or session.disconnecting:
            return
        session.disconnecting = True
        session.state = "closed"
        try:
            if session.room_id:
                await self._leave_current_room(session)
        finally:
            self.sessions.pop(client_id, None)
        logger.info("Cleaned up client %s (%d connected)", client_id, len(self.sessions))

    # --- Broadcast dispatcher ---

    async def send_to_client(self, client_id: str, message: dict) -> bool:
        session = self.sessions.get(client_id)
        if session is None or not session.is_open:
            return False
        try:
            await session.websocket.send_json(message)
            return True
        except Exception:
            logger.debug("Send to %s failed, marking closed", client_id)
            session.state = "closed"
            return False

    async def broadcast_to_room(self, room_id: str, message: dict,
                                exclude_id: Optional[str] = None) -> int:
        room = self.rooms.get(room_id)
        if room is None:
            return 0
        delivered = 0
        for client_id in list(room.players):
            if client_id == exclude_id:
                continue
            if await self.send_to_client(client_id, message):
                delivered += 1
        return delivered

    def room_exists(self, room: Room) -> bool:
        return not room.closed and self.rooms.get(room.room_id) is room

    async def _broadcast_room_update(self, room: Room):
        await self.broadcast_to_room(room.room_id, {
            "type": "room_update",
            "roomId": room.room_id,
            "hostId": room.host_id,
            "players": room.get_player_list(),
            "playerCount": len(room.players),
        })

    # --- Connection gateway ---

    async def connect(self, websocket: WebSocket):
        session = self.register_session(websocket)
        try:
            await websocket.accept()
            session.state = "open"
            logger.info("Client connected: %s (%d connected)",
                        session.client_id, len(self.sessions))
            await self.send_to_client(session.client_id, {
                "type": "connected",
                "clientId": session.client_id,
                "message": f"Connected as {session.client_id}",
            })
            while True:
                data = await websocket.receive_text()
                await self.handle_frame(session, data)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected", session.client_id)
        except Exception:
            logger.exception("WebSocket error for client %s", session.client_id)
        finally:
            await self.disconnect(session.client_id)

    def _rate_limited(self, session: Session) -> bool:
        now = time.time()
        timestamps = session.msg_timestamps
        timestamps[:] = [t for t in timestamps if now - t < 1.0]
        if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
            return True
        timestamps.append(now)
        return False

    async def handle_frame(self, session: Session, data: str):
        if self.sessions.get(session.client_id) is not session or session.disconnecting:
            return

        if len(data) > config.MAX_WS_MESSAGE_SIZE:
            await self.send_to_client(session.client_id, {
                "type": "error", "code": "validation", "message": "Message too large"})
            return
        if self._rate_limited(session):
            await self.send_to_client(session.client_id, {
                "type": "error", "code": "rate_limited", "message": "Too many messages"})
            return

        try:
            message = parse_message(data)
        except MalformedMessage as e:
            logger.warning("Dropping malformed message from %s: %s", session.client_id, e)
            return
        except UnknownMessageType as e:
            logger.warning("Unknown message type from %s: %s", session.client_id, e)
            return
        except HubError as e:
            await self.send_to_client(session.client_id, e.to_message())
            return

        try:
            await self.handle_message(session, message)
        except HubError as e:
            logger.info("Rejected %s from %s: %s", message.type, session.client_id, e.message)
            await self.send_to_client(session.client_id, e.to_message())
        except Exception:
            logger.exception("Error handling %s from %s", message.type, session.client_id)
            await self.send_to_client(session.client_id, {
                "type": "error", "code": "internal", "message": "Internal server error"})

    async def handle_message(self, session: Session, message):
        msg_type = message.type

        if msg_type == "create_room":
            await self.create_room(session, message.room_id, message.player_name,
                                   message.avatar, message.winner_duration)

        elif msg_type == "join_room":
            await self.join_room(session, message.room_id, message.player_name,
                                 message.avatar)

        elif msg_type == "leave_room":
            await self.leave_room(session)

        elif msg_type == "player_info":
            await self.update_player_info(session, message.player_name, message.avatar)

        elif msg_type in ("control_led", "led_control"):
            await self.relay_led_command(session, message.action, message.target)

        elif msg_type == "start_spinner":
            await self.start_spinner(session, message.winner_duration)

        elif msg_type == "set_player_order":
            await self.set_player_order(session, message.order)

        elif msg_type == "reset_game":
            await self.reset_game(session, message.settings_overrides())

        elif msg_type == "roll_dice":
            async with self._locked_room(session) as room:
                await self.bomb.roll_dice(room, session.client_id)

        elif msg_type == "use_bomb":
            async with self._locked_room(session) as room:
                await self.bomb.use_bomb(room, session.client_id, message.target_id)

        elif msg_type == "ping":
            await self.send_to_client(session.client_id, {"type": "pong", "timestamp": now_ms()})

        else:
            logger.warning("Unhandled message type %s from %s", msg_type, session.client_id)

    # --- Room registry ---

    @asynccontextmanager
    async def _locked_room(self, session: Session):
        """Yield the session's room with its lock held."""
        room = self.rooms.get(session.room_id) if session.room_id else None
        if room is None:
            raise NotFoundError("You are not in a room")
        async with room.lock:
            if room.closed or session.room_id != room.room_id:
                raise NotFoundError("You are not in a room")
            yield room

    async def create_room(self, session: Session, room_id: str, player_name: str,
                          avatar: str = "", winner_duration: Optional[float] = None) -> Room:
        if room_id in self.rooms:
            raise ConflictError(f"Room {room_id} already exists")
        if session.room_id:
            await self._leave_current_room(session)
            if room_id in self.rooms:
                raise ConflictError(f"Room {room_id} already exists")

        room = Room(room_id, session.client_id, default_winner_duration=winner_duration)
        self.rooms[room_id] = room
        async with room.lock:
            room.add_player(session.client_id, player_name, avatar, is_host=True)
            session.player_name = player_name
            session.room_id = room_id
            session.is_host = True
            logger.info("%s (%s) created room %s", player_name, session.client_id, room_id)

            await self.send_to_client(session.client_id, {
                "type": "room_joined",
                "roomId": room_id,
                "playerName": player_name,
                "isHost": True,
            })
            await self._broadcast_room_update(room)
        return room

    async def join_room(self, session: Session, room_id: str, player_name: str,
                        avatar: str = "") -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            raise NotFoundError(f"Room {room_id} not found")
        if session.room_id == room_id:
            await self.update_player_info(session, player_name, avatar or None)
            return room
        if session.room_id:
            await self._leave_current_room(session)

        async with room.lock:
            if not self.room_exists(room):
                raise NotFoundError(f"Room {room_id} not found")
            room.add_player(session.client_id, player_name, avatar)
            self.bomb.enroll(room, session.client_id)
            session.player_name = player_name
            session.room_id = room_id
            session.is_host = False
            logger.info("%s (%s) joined room %s", player_name, session.client_id, room_id)

            await self.send_to_client(session.client_id, {
                "type": "room_joined",
                "roomId": room_id,
                "playerName": player_name,
                "isHost": False,
            })
            await self._broadcast_room_update(room)
        return room

    async def leave_room(self, session: Session):
        if not session.room_id:
            raise NotFoundError("You are not in a room")
        room_id = await self._leave_current_room(session)
        await self.send_to_client(session.client_id, {
            "type": "left_room",
            "roomId": room_id,
            "message": f"You left room {room_id}",
        })

    async def _leave_current_room(self, session: Session) -> Optional[str]:
        room_id = session.room_id
        room = self.rooms.get(room_id) if room_id else None
        if room is None:
            session.room_id = None
            session.is_host = False
            return room_id

        async with room.lock:
            if session.client_id in room.players and not room.closed:
                await self._remove_from_room(room, session)
            else:
                session.room_id = None
                session.is_host = False
        return room_id

    async def _remove_from_room(self, room: Room, session: Session):
        """Remove a member; caller holds room.lock."""
        player = room.remove_player(session.client_id)
        session.room_id = None
        session.is_host = False
        logger.info("%s (%s) left room %s", player["name"], session.client_id, room.room_id)

        if session.client_id == room.host_id:
            await self._close_room(room, player)
        elif room.players:
            await self._broadcast_room_update(room)
        else:
            self._delete_room(room)

    async def _close_room(self, room: Room, host: dict):
        survivors = list(room.players)
        self._delete_room(room)
        for client_id in survivors:
            other = self.sessions.get(client_id)
            if other and other.room_id == room.room_id:
                other.room_id = None
                other.is_host = False
        room.players.clear()

        notice = {
            "type": "room_closed",
            "roomId": room.room_id,
            "hostId": host["id"],
            "hostName": host["name"],
            "message": f"{host['name']} left, room {room.room_id} is closed",
        }
        for client_id in survivors:
            await self.send_to_client(client_id, notice)
        logger.info("Host %s left, closed room %s (%d players removed)",
                    host["name"], room.room_id, len(survivors))

    def _delete_room(self, room: Room):
        room.closed = True
        room.cancel_spinner()
        if self.rooms.get(room.room_id) is room:
            del self.rooms[room.room_id]
        logger.info("Deleted room %s", room.room_id)

    async def update_player_info(self, session: Session, player_name: str,
                                 avatar: Optional[str] = None):
        session.player_name = player_name
        if not session.room_id:
            return
        async with self._locked_room(session) as room:
            player = room.players[session.client_id]
            player["name"] = player_name
            if avatar is not None:
                player["avatar"] = avatar
            logger.info("Updated player name for %s: %s", session.client_id, player_name)
            await self._broadcast_room_update(room)

    async def set_player_order(self, session: Session, order: List[str]):
        async with self._locked_room(session) as room:
            valid = [pid for pid in order if pid in room.players]
            if len(valid) != len(room.players) or set(valid) != set(room.players):
                logger.info("Ignoring player order from %s in room %s: not a permutation",
                            session.client_id, room.room_id)
                return
            room.player_order = valid
            names = [room.players[pid]["name"] for pid in valid]
            logger.info("Player order set in room %s: %s", room.room_id, " -> ".join(names))
            await self.broadcast_to_room(room.room_id, {
                "type": "player_order_update",
                "roomId": room.room_id,
                "playerOrder": valid,
                "orderNames": names,
            })

    async def reset_game(self, session: Session, overrides: Optional[dict] = None):
        async with self._locked_room(session) as room:
            game = self.bomb.initialize(room, overrides)
            await self.broadcast_to_room(room.room_id, {
                "type": "game_reset",
                "roomId": room.room_id,
                "resetBy": session.display_name,
                "settings": game.settings.to_dict(),
                "players": room.get_player_list(),
                "message": f"The game was reset by {session.display_name}",
            })

    # --- Command relay ---

    async def relay_led_command(self, session: Session, action: str, target: str) -> int:
        async with self._locked_room(session) as room:
            if self.host_only_commands and room.host_id != session.client_id:
                raise PermissionDeniedError("Only the host can send commands")

            command = {
                "type": "led_command",
                "action": action,
                "from": session.client_id,
                "fromName": session.display_name,
                "timestamp": now_ms(),
            }
            if target == "all":
                delivered = await self.broadcast_to_room(
                    room.room_id, command, exclude_id=session.client_id)
            else:
                if target not in room.players:
                    raise NotFoundError(f"Client {target} not found")
                delivered = int(await self.send_to_client(target, command))

            logger.info("LED command '%s' from %s to %s (%d delivered)",
                        action, session.display_name, target, delivered)
            await self.send_to_client(session.client_id, {
                "type": "led_control_sent",
                "target": target,
                "action": action,
                "delivered": delivered,
            })
            return delivered

    # --- Spinner ---

    async def start_spinner(self, session: Session, winner_duration: Optional[float] = None):
        async with self._locked_room(session) as room:
            return await self.spinner.start(room, session.display_name, winner_duration)


socket_manager = SocketManager()
