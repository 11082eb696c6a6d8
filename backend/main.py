from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Dict, List, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from app.settings import Settings, get_settings
from game import RoomRegistry
from models import ErrorKind

logger = logging.getLogger(__name__)


# ---------- WebSockets hub ----------
class Hub:
    def __init__(self, registry: RoomRegistry, settings: Settings):
        self.registry = registry
        self.settings = settings
        self.rooms: Dict[str, List[WebSocket]] = {}
        self.ws_player: Dict[WebSocket, str] = {}
        self.ws_room: Dict[WebSocket, str] = {}
        self._pending: Set[asyncio.Task] = set()

    async def connect(self, ws: WebSocket) -> str:
        await ws.accept()
        player_id = uuid.uuid4().hex
        self.ws_player[ws] = player_id
        await ws.send_json({"type": "connected", "playerId": player_id})
        logger.info("Player connected: %s", player_id)
        return player_id

    def subscribe(self, ws: WebSocket, room_id: str):
        self.unsubscribe(ws)
        self.rooms.setdefault(room_id, []).append(ws)
        self.ws_room[ws] = room_id

    def unsubscribe(self, ws: WebSocket):
        rid = self.ws_room.pop(ws, None)
        if rid and ws in self.rooms.get(rid, []):
            self.rooms[rid].remove(ws)
            if not self.rooms[rid]:
                self.rooms.pop(rid, None)

    def in_live_room(self, ws: WebSocket) -> bool:
        rid = self.ws_room.get(ws)
        return rid is not None and self.registry.get_room(rid) is not None

    async def disconnect(self, ws: WebSocket):
        pid = self.ws_player.pop(ws, None)
        self.unsubscribe(ws)
        if pid is None:
            return
        room_id = self.registry.remove_player(pid)
        if room_id and self.registry.get_room(room_id) is not None:
            await self.send_room_event(room_id, {"type": "playerLeft", "playerId": pid})
            await self.send_room_state(room_id)
        logger.info("Player disconnected: %s", pid)

    async def send_room_state(self, room_id: str, event: str = "gameState"):
        state = self.registry.get_game_state(room_id)
        if state is None:
            return
        await self.send_room_event(room_id, {"type": event, "payload": state.model_dump(by_alias=True)})

    async def send_room_event(self, room_id: str, message: dict):
        for ws in list(self.rooms.get(room_id, [])):
            try:
                await ws.send_json(message)
            except (RuntimeError, WebSocketDisconnect):
                pass

    async def _after_set_result(self, room_id: str, delay: float):
        if delay > 0:
            await asyncio.sleep(delay)
        state = self.registry.get_game_state(room_id)
        if state is None:
            return
        payload = state.model_dump(by_alias=True)
        await self.send_room_event(room_id, {"type": "gameState", "payload": payload})
        if state.game_over:
            await self.send_room_event(
                room_id,
                {"type": "gameOver", "payload": {"winner": payload["winner"], "players": payload["players"]}},
            )

    def cancel_pending(self):
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

    async def refresh_after_set(self, room_id: str, delay: float):
        if delay > 0:
            task = asyncio.create_task(self._after_set_result(room_id, delay))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        else:
            await self._after_set_result(room_id, delay)

    # ---------- commands ----------
    async def handle(self, ws: WebSocket, player_id: str, data: dict):
        t = data.get("type")
        if t in {"createRoom", "joinRoom"} and self.in_live_room(ws):
            await _send_error(ws, "Already in a room")
            return
        if t == "createRoom":
            room_id = self.registry.create_room()
            player = self.registry.add_player_to_room(room_id, player_id, _player_name(data))
            self.subscribe(ws, room_id)
            await ws.send_json({"type": "roomCreated", "roomId": room_id, "player": player.model_dump()})
            await self.send_room_state(room_id)
        elif t == "joinRoom":
            room_id = data.get("roomId")
            room = self.registry.get_room(room_id) if isinstance(room_id, str) else None
            if room is None:
                await _send_error(ws, "Room not found", ErrorKind.ROOM_NOT_FOUND)
                return
            if len(room.players) >= self.settings.max_players:
                await _send_error(ws, "Room is full", ErrorKind.ROOM_FULL)
                return
            player = self.registry.add_player_to_room(room_id, player_id, _player_name(data))
            self.subscribe(ws, room_id)
            await ws.send_json({"type": "roomJoined", "roomId": room_id, "player": player.model_dump()})
            await self.send_room_state(room_id)
            await self.send_room_event(room_id, {"type": "playerJoined", "player": player.model_dump()})
        elif t == "startGame":
            room_id = data.get("roomId")
            if not isinstance(room_id, str) or self.registry.get_room(room_id) is None:
                await _send_error(ws, "Room not found", ErrorKind.ROOM_NOT_FOUND)
                return
            self.registry.start_game(room_id)
            await self.send_room_state(room_id, event="gameStarted")
        elif t == "selectCard":
            await self._select_card(ws, player_id, data)
        elif t == "add3Cards":
            room_id = data.get("roomId")
            result = self.registry.add_3_cards(room_id) if isinstance(room_id, str) else None
            if result is None:
                await _send_error(ws, "Room not found", ErrorKind.ROOM_NOT_FOUND)
                return
            if not result.success:
                await _send_error(ws, result.message, result.error)
                return
            await self.send_room_state(room_id)
            await self.send_room_event(room_id, {"type": "cardsAdded", "count": 3})
        elif t == "requestHint":
            room_id = data.get("roomId")
            hint = self.registry.get_hint(room_id) if isinstance(room_id, str) else None
            if hint:
                await ws.send_json({"type": "hint", "indices": list(hint)})
            else:
                await _send_error(ws, "No sets available on the board")
        else:
            await _send_error(ws, "Unknown message type")

    async def _select_card(self, ws: WebSocket, player_id: str, data: dict):
        room_id = data.get("roomId")
        card_index = data.get("cardIndex")
        if not isinstance(room_id, str):
            await _send_error(ws, "Game not started", ErrorKind.GAME_NOT_STARTED)
            return
        result = self.registry.select_card(room_id, player_id, card_index)
        if not result.success:
            await _send_error(ws, result.message, result.error)
            return

        await self.send_room_event(
            room_id,
            {
                "type": "cardSelected",
                "playerId": player_id,
                "cardIndex": card_index,
                "selectedCards": result.selected_cards,
            },
        )
        if len(result.selected_cards) < 3:
            return

        set_result = self.registry.check_set(room_id, player_id)
        if set_result.is_valid:
            await self.send_room_event(
                room_id,
                {
                    "type": "validSet",
                    "playerId": player_id,
                    "playerName": set_result.player_name,
                    "cards": [card.model_dump() for card in set_result.cards],
                    "score": set_result.score,
                },
            )
            await self.refresh_after_set(room_id, self.settings.valid_set_delay_sec)
        else:
            await self.send_room_event(
                room_id,
                {"type": "invalidSet", "playerId": player_id, "playerName": set_result.player_name},
            )
            await self.refresh_after_set(room_id, self.settings.invalid_set_delay_sec)


def _player_name(data: dict) -> str:
    name = data.get("playerName")
    if isinstance(name, str) and name.strip():
        return name.strip()
    return "Player"


async def _send_error(ws: WebSocket, message: str, kind: Optional[ErrorKind] = None):
    payload = {"type": "error", "message": message}
    if kind is not None:
        payload["error"] = kind.value
    await ws.send_json(payload)


# ---------- stale room sweeper ----------
async def sweep_stale_rooms(registry: RoomRegistry, interval: float):
    while True:
        await asyncio.sleep(interval)
        evicted = registry.cleanup_stale_rooms()
        if evicted:
            logger.info("Sweep evicted %d stale rooms", len(evicted))


def create_app(registry: Optional[RoomRegistry] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    registry = registry or RoomRegistry(room_ttl=settings.room_ttl_sec)
    hub = Hub(registry, settings)

    application = FastAPI(title="Set Game Server")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins(),
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )
    application.state.registry = registry
    application.state.hub = hub
    logger.info("[CORS] allow_origins: %s", settings.allowed_origins())

    @application.on_event("startup")
    async def _start_sweeper() -> None:
        application.state.sweeper = asyncio.create_task(
            sweep_stale_rooms(registry, settings.sweep_interval_sec)
        )

    @application.on_event("shutdown")
    async def _stop_sweeper() -> None:
        task = getattr(application.state, "sweeper", None)
        if task is not None:
            task.cancel()
        hub.cancel_pending()

    # ---------- REST ----------
    @application.get("/health")
    async def health():
        return {"status": "ok", "rooms": registry.get_room_count()}

    @application.get("/api/rooms/{room_id}/state")
    async def room_state(room_id: str):
        state = registry.get_game_state(room_id)
        if state is None:
            raise HTTPException(status_code=404, detail="room_not_found")
        return state.model_dump(by_alias=True)

    # ---------- WS endpoint ----------
    @application.websocket("/ws")
    async def ws_game(ws: WebSocket):
        player_id = await hub.connect(ws)
        try:
            while True:
                raw = await ws.receive_text()
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    data = None
                if not isinstance(data, dict) or not isinstance(data.get("type"), str):
                    await _send_error(ws, "Malformed message")
                    continue
                await hub.handle(ws, player_id, data)
        except WebSocketDisconnect:
            pass
        finally:
            await hub.disconnect(ws)

    return application


app = create_app()
