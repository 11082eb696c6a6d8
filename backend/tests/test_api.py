import asyncio
import random

import pytest
from fastapi.testclient import TestClient

from app.settings import Settings
from game import RoomRegistry, create_deck
from main import create_app, sweep_stale_rooms
from models import Card

PLANTED = [
    Card(number=2, shape="oval", color="green", shading=shading)
    for shading in ("solid", "striped", "empty")
]


def make_client(**overrides):
    registry = RoomRegistry(rng=random.Random(7))
    options = {"max_players": 2, "valid_set_delay_sec": 0, "invalid_set_delay_sec": 0}
    options.update(overrides)
    app = create_app(registry, Settings(**options))
    return TestClient(app), registry


@pytest.fixture()
def client_and_registry():
    client, registry = make_client()
    with client:
        yield client, registry


def _connect(ws) -> str:
    hello = ws.receive_json()
    assert hello["type"] == "connected"
    return hello["playerId"]


def _create_room(ws, name="Alice") -> str:
    ws.send_json({"type": "createRoom", "playerName": name})
    created = ws.receive_json()
    assert created["type"] == "roomCreated"
    assert created["player"]["name"] == name
    state = ws.receive_json()
    assert state["type"] == "gameState"
    return created["roomId"]


def _plant_set(registry, room_id):
    room = registry.get_room(room_id)
    rest = [card for card in create_deck(random.Random(3)) if card not in PLANTED]
    room.board = PLANTED + rest[:9]
    room.deck = rest[9:]


def test_health_reports_room_count(client_and_registry):
    client, registry = client_and_registry
    assert client.get("/health").json() == {"status": "ok", "rooms": 0}
    registry.create_room()
    assert client.get("/health").json()["rooms"] == 1


def test_state_endpoint_returns_404_for_unknown_room(client_and_registry):
    client, _ = client_and_registry
    r = client.get("/api/rooms/NOPE00/state")
    assert r.status_code == 404
    assert r.json()["detail"] == "room_not_found"


def test_create_join_start_flow(client_and_registry):
    client, registry = client_and_registry
    with client.websocket_connect("/ws") as a:
        _connect(a)
        room_id = _create_room(a)

        with client.websocket_connect("/ws") as b:
            _connect(b)
            b.send_json({"type": "joinRoom", "roomId": room_id, "playerName": "Bob"})
            joined = b.receive_json()
            assert joined["type"] == "roomJoined"
            assert joined["player"]["color"] == "#f093fb"
            assert b.receive_json()["type"] == "gameState"
            assert b.receive_json()["type"] == "playerJoined"
            assert a.receive_json()["type"] == "gameState"
            assert a.receive_json()["type"] == "playerJoined"

            a.send_json({"type": "startGame", "roomId": room_id})
            started = a.receive_json()
            assert started["type"] == "gameStarted"
            assert len(started["payload"]["board"]) == 12
            assert started["payload"]["deckSize"] == 69
            assert b.receive_json()["type"] == "gameStarted"

            with client.websocket_connect("/ws") as c:
                _connect(c)
                c.send_json({"type": "joinRoom", "roomId": room_id, "playerName": "Carol"})
                assert c.receive_json() == {"type": "error", "message": "Room is full", "error": "room_full"}

            state = client.get(f"/api/rooms/{room_id}/state").json()
            assert [p["name"] for p in state["players"]] == ["Alice", "Bob"]

        left = a.receive_json()
        assert left["type"] == "playerLeft"
        assert a.receive_json()["payload"]["players"][0]["name"] == "Alice"

    assert registry.get_room(room_id) is None
    assert client.get("/health").json()["rooms"] == 0


def test_join_unknown_room(client_and_registry):
    client, _ = client_and_registry
    with client.websocket_connect("/ws") as ws:
        _connect(ws)
        ws.send_json({"type": "joinRoom", "roomId": "NOPE00", "playerName": "Bob"})
        assert ws.receive_json() == {"type": "error", "message": "Room not found", "error": "room_not_found"}
        ws.send_json({"type": "startGame", "roomId": "NOPE00"})
        assert ws.receive_json()["message"] == "Room not found"


def test_valid_set_over_websocket(client_and_registry):
    client, registry = client_and_registry
    with client.websocket_connect("/ws") as ws:
        player_id = _connect(ws)
        room_id = _create_room(ws)
        ws.send_json({"type": "startGame", "roomId": room_id})
        ws.receive_json()
        _plant_set(registry, room_id)

        for index in (0, 1, 2):
            ws.send_json({"type": "selectCard", "roomId": room_id, "cardIndex": index})
            selected = ws.receive_json()
            assert selected["type"] == "cardSelected"
            assert selected["playerId"] == player_id
        assert selected["selectedCards"] == [0, 1, 2]

        valid = ws.receive_json()
        assert valid["type"] == "validSet"
        assert valid["playerName"] == "Alice"
        assert valid["score"] == 1
        assert valid["cards"] == [card.model_dump() for card in PLANTED]

        state = ws.receive_json()
        assert state["type"] == "gameState"
        assert len(state["payload"]["board"]) == 12
        assert state["payload"]["deckSize"] == 66
        assert state["payload"]["selections"] == {}


def test_invalid_set_refreshes_after_delay():
    client, registry = make_client(invalid_set_delay_sec=0.05)
    with client, client.websocket_connect("/ws") as ws:
        _connect(ws)
        room_id = _create_room(ws)
        ws.send_json({"type": "startGame", "roomId": room_id})
        ws.receive_json()
        _plant_set(registry, room_id)
        room = registry.get_room(room_id)
        # PLANTED[2] is the only card completing the first two
        room.board[2], room.deck[0] = room.deck[0], room.board[2]

        for index in (0, 1, 2):
            ws.send_json({"type": "selectCard", "roomId": room_id, "cardIndex": index})
            ws.receive_json()
        invalid = ws.receive_json()
        assert invalid["type"] == "invalidSet"
        assert invalid["playerName"] == "Alice"
        state = ws.receive_json()
        assert state["type"] == "gameState"
        assert state["payload"]["selections"] == {}


def test_selection_errors_keep_socket_open(client_and_registry):
    client, _ = client_and_registry
    with client.websocket_connect("/ws") as ws:
        _connect(ws)
        room_id = _create_room(ws)

        ws.send_json({"type": "selectCard", "roomId": room_id, "cardIndex": 0})
        assert ws.receive_json() == {"type": "error", "message": "Game not started", "error": "game_not_started"}

        ws.send_json({"type": "startGame", "roomId": room_id})
        ws.receive_json()
        ws.send_json({"type": "selectCard", "roomId": room_id, "cardIndex": 12})
        assert ws.receive_json() == {"type": "error", "message": "Invalid card index", "error": "invalid_card_index"}

        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "message": "Malformed message"}
        ws.send_json({"type": "dance"})
        assert ws.receive_json() == {"type": "error", "message": "Unknown message type"}
        ws.send_json({"type": "createRoom", "playerName": "Again"})
        assert ws.receive_json() == {"type": "error", "message": "Already in a room"}


@pytest.mark.parametrize("bad_type", [["x"], {"a": 1}, 3, None])
def test_non_string_type_is_malformed_and_player_is_cleaned_up(client_and_registry, bad_type):
    client, registry = client_and_registry
    with client.websocket_connect("/ws") as ws:
        player_id = _connect(ws)
        room_id = _create_room(ws)

        ws.send_json({"type": bad_type, "roomId": room_id})
        assert ws.receive_json() == {"type": "error", "message": "Malformed message"}
        ws.send_json({"type": "requestHint", "roomId": room_id})
        assert ws.receive_json()["type"] == "error"
        assert registry.player_rooms[player_id] == room_id

    assert registry.get_room(room_id) is None
    assert player_id not in registry.player_rooms


def test_last_set_broadcasts_game_over_after_delay():
    client, registry = make_client(valid_set_delay_sec=0.05)
    fillers = [
        Card(number=number, shape="diamond", color=color, shading=shading)
        for number in (1, 3)
        for color in ("red", "purple")
        for shading in ("solid", "striped")
    ]
    with client, client.websocket_connect("/ws") as ws:
        player_id = _connect(ws)
        room_id = _create_room(ws)
        ws.send_json({"type": "startGame", "roomId": room_id})
        ws.receive_json()
        room = registry.get_room(room_id)
        room.board = PLANTED + fillers
        room.deck = []

        for index in (0, 1, 2):
            ws.send_json({"type": "selectCard", "roomId": room_id, "cardIndex": index})
            assert ws.receive_json()["type"] == "cardSelected"

        valid = ws.receive_json()
        assert valid["type"] == "validSet"
        assert valid["score"] == 1

        state = ws.receive_json()
        assert state["type"] == "gameState"
        assert state["payload"]["gameOver"] is True
        assert state["payload"]["deckSize"] == 0
        assert len(state["payload"]["board"]) == 8

        over = ws.receive_json()
        assert over["type"] == "gameOver"
        assert over["payload"]["winner"]["id"] == player_id
        assert over["payload"]["winner"]["score"] == 1
        assert [p["name"] for p in over["payload"]["players"]] == ["Alice"]


def test_shutdown_cancels_delayed_refreshes():
    client, registry = make_client(valid_set_delay_sec=60)
    hub = client.app.state.hub
    with client:
        with client.websocket_connect("/ws") as ws:
            _connect(ws)
            room_id = _create_room(ws)
            ws.send_json({"type": "startGame", "roomId": room_id})
            ws.receive_json()
            _plant_set(registry, room_id)
            for index in (0, 1, 2):
                ws.send_json({"type": "selectCard", "roomId": room_id, "cardIndex": index})
                ws.receive_json()
            assert ws.receive_json()["type"] == "validSet"
            assert len(hub._pending) == 1
    assert not hub._pending


def test_hint_and_add_cards(client_and_registry):
    client, registry = client_and_registry
    with client.websocket_connect("/ws") as ws:
        _connect(ws)
        room_id = _create_room(ws)
        ws.send_json({"type": "startGame", "roomId": room_id})
        ws.receive_json()
        _plant_set(registry, room_id)

        ws.send_json({"type": "requestHint", "roomId": room_id})
        hint = ws.receive_json()
        assert hint["type"] == "hint"
        assert hint["indices"] == list(registry.get_hint(room_id))

        ws.send_json({"type": "add3Cards", "roomId": room_id})
        state = ws.receive_json()
        assert state["type"] == "gameState"
        assert len(state["payload"]["board"]) == 15
        assert ws.receive_json() == {"type": "cardsAdded", "count": 3}

        registry.get_room(room_id).deck = []
        ws.send_json({"type": "add3Cards", "roomId": room_id})
        assert ws.receive_json() == {"type": "error", "message": "Not enough cards in deck", "error": "insufficient_deck"}

        registry.get_room(room_id).board = []
        ws.send_json({"type": "requestHint", "roomId": room_id})
        assert ws.receive_json() == {"type": "error", "message": "No sets available on the board"}


@pytest.mark.asyncio
async def test_sweeper_evicts_idle_rooms():
    now = [0.0]
    registry = RoomRegistry(clock=lambda: now[0], room_ttl=10)
    registry.create_room()
    now[0] = 11.0

    task = asyncio.create_task(sweep_stale_rooms(registry, 0.01))
    try:
        for _ in range(100):
            await asyncio.sleep(0.01)
            if registry.get_room_count() == 0:
                break
    finally:
        task.cancel()
    assert registry.get_room_count() == 0


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("MAX_PLAYERS", "4")
    monkeypatch.setenv("ORIGIN", "https://a.example, ,https://b.example")
    settings = Settings()
    assert settings.max_players == 4
    assert settings.room_ttl_sec == 7200
    assert settings.sweep_interval_sec == 300
    assert RoomRegistry().room_ttl == settings.room_ttl_sec
    assert settings.allowed_origins() == [
        "http://localhost:5173",
        "https://a.example",
        "https://b.example",
    ]
