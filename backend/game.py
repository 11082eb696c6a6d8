from __future__ import annotations

import itertools
import logging
import random
import string
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from app.settings import ROOM_TTL_SECONDS
from models import (
    CARD_ATTRIBUTES,
    COLORS,
    NUMBERS,
    PLAYER_COLORS,
    SHADINGS,
    SHAPES,
    ActionResult,
    Card,
    ErrorKind,
    GameState,
    Player,
    SelectResult,
    SetResult,
)

logger = logging.getLogger(__name__)

BOARD_SIZE = 12
SET_SIZE = 3
ROOM_ID_LENGTH = 6
ROOM_ID_ALPHABET = string.digits + string.ascii_uppercase

Triple = Tuple[int, int, int]


class GameError(ValueError):
    """Rule violation raised inside a room; carries the client-facing message."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


def create_deck(rng: Optional[random.Random] = None) -> List[Card]:
    deck = [
        Card(number=number, shape=shape, color=color, shading=shading)
        for number, shape, color, shading in itertools.product(NUMBERS, SHAPES, COLORS, SHADINGS)
    ]
    (rng or random).shuffle(deck)
    return deck


def is_valid_set(cards: Sequence[Card]) -> bool:
    if len(cards) != SET_SIZE:
        return False
    for attr in CARD_ATTRIBUTES:
        distinct = len({getattr(card, attr) for card in cards})
        # 2 distinct values means two match and one differs
        if distinct == 2:
            return False
    return True


def find_sets(board: Sequence[Card]) -> List[Triple]:
    return [
        (i, j, k)
        for i, j, k in itertools.combinations(range(len(board)), SET_SIZE)
        if is_valid_set((board[i], board[j], board[k]))
    ]


def deal_cards(room: Room, count: int) -> int:
    dealt = 0
    while dealt < count and room.deck:
        room.board.append(room.deck.pop())
        dealt += 1
    return dealt


class Room:
    def __init__(self, room_id: str, now: float):
        self.id = room_id
        self.players: List[Player] = []
        self.deck: List[Card] = []
        self.board: List[Card] = []
        self.game_started = False
        self.game_over = False
        self.selections: Dict[str, List[int]] = {}
        self.last_activity = now

    # ------------------------------------------------------------------
    # Players
    # ------------------------------------------------------------------
    def add_player(self, player_id: str, name: str) -> Player:
        player = Player(
            id=player_id,
            name=name,
            score=0,
            color=PLAYER_COLORS[len(self.players) % len(PLAYER_COLORS)],
        )
        self.players.append(player)
        return player

    def remove_player(self, player_id: str):
        self.players = [p for p in self.players if p.id != player_id]
        self.selections.pop(player_id, None)

    def find_player(self, player_id: str) -> Optional[Player]:
        return next((p for p in self.players if p.id == player_id), None)

    # ------------------------------------------------------------------
    # Game lifecycle
    # ------------------------------------------------------------------
    def start(self, deck: List[Card], now: float):
        self.deck = deck
        self.board = []
        self.game_started = True
        self.game_over = False
        self.selections.clear()
        self.last_activity = now
        for player in self.players:
            player.score = 0
        deal_cards(self, BOARD_SIZE)

    def add_cards(self, now: float):
        if len(self.deck) < SET_SIZE:
            raise GameError(ErrorKind.INSUFFICIENT_DECK, "Not enough cards in deck")
        self.last_activity = now
        deal_cards(self, SET_SIZE)

    # ------------------------------------------------------------------
    # Selections and sets
    # ------------------------------------------------------------------
    def toggle_selection(self, player_id: str, card_index, now: float) -> List[int]:
        if not self.game_started:
            raise GameError(ErrorKind.GAME_NOT_STARTED, "Game not started")
        self.last_activity = now
        if (
            not isinstance(card_index, int)
            or isinstance(card_index, bool)
            or not 0 <= card_index < len(self.board)
        ):
            raise GameError(ErrorKind.INVALID_CARD_INDEX, "Invalid card index")

        selected = self.selections.get(player_id, [])
        if card_index in selected:
            selected.remove(card_index)
        elif len(selected) < SET_SIZE:
            selected.append(card_index)
        else:
            raise GameError(ErrorKind.SELECTION_LIMIT_EXCEEDED, "Already selected 3 cards")
        self.selections[player_id] = selected
        return list(selected)

    def resolve_selection(self, player_id: str, now: float) -> SetResult:
        selected = self.selections.get(player_id, [])
        player = self.find_player(player_id)
        if len(selected) != SET_SIZE or player is None:
            return SetResult(is_valid=False)

        self.last_activity = now
        cards = [self.board[i] for i in selected]
        valid = is_valid_set(cards)
        if valid:
            player.score += 1
            for index in sorted(selected, reverse=True):
                del self.board[index]
            deal_cards(self, min(SET_SIZE, BOARD_SIZE - len(self.board), len(self.deck)))
            if not self.deck and not find_sets(self.board):
                self.game_over = True

        # every pending selection is stale once the board may have shifted
        self.selections.clear()
        return SetResult(is_valid=valid, player_name=player.name, cards=cards, score=player.score)

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------
    def winner(self) -> Optional[Player]:
        if not self.game_over or not self.players:
            return None
        best = self.players[0]
        for player in self.players[1:]:
            if player.score > best.score:
                best = player
        return best

    def to_state(self) -> GameState:
        winner = self.winner()
        return GameState(
            room_id=self.id,
            players=[p.model_copy() for p in self.players],
            board=list(self.board),
            deck_size=len(self.deck),
            game_started=self.game_started,
            game_over=self.game_over,
            winner=winner.model_copy() if winner else None,
            selections={pid: list(indices) for pid, indices in self.selections.items()},
        )


class RoomRegistry:
    """Owns every live room plus the player -> room reverse index.

    All methods are synchronous and never raise on bad input: failures come
    back as result models with ``success=False`` or as ``None`` for lookups.
    """

    def __init__(
        self,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
        room_ttl: float = ROOM_TTL_SECONDS,
    ):
        self.rooms: Dict[str, Room] = {}
        self.player_rooms: Dict[str, str] = {}
        self.rng = rng or random.Random()
        self.clock = clock
        self.room_ttl = room_ttl

    # ------------------------------------------------------------------
    # Room lifecycle
    # ------------------------------------------------------------------
    def _generate_room_id(self) -> str:
        while True:
            room_id = "".join(self.rng.choice(ROOM_ID_ALPHABET) for _ in range(ROOM_ID_LENGTH))
            if room_id not in self.rooms:
                return room_id
            logger.warning("Room id collision on %s, regenerating", room_id)

    def create_room(self) -> str:
        room_id = self._generate_room_id()
        self.rooms[room_id] = Room(room_id, self.clock())
        logger.info("Room %s created", room_id)
        return room_id

    def get_room(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def get_room_count(self) -> int:
        return len(self.rooms)

    def add_player_to_room(self, room_id: str, player_id: str, name: str) -> Optional[Player]:
        room = self.rooms.get(room_id)
        if room is None:
            return None
        player = room.add_player(player_id, name)
        room.last_activity = self.clock()
        self.player_rooms[player_id] = room_id
        logger.info("Player %s (%s) joined room %s", player_id, name, room_id)
        return player

    def remove_player(self, player_id: str) -> Optional[str]:
        room_id = self.player_rooms.pop(player_id, None)
        if room_id is None:
            return None
        room = self.rooms.get(room_id)
        if room is not None:
            room.remove_player(player_id)
            room.last_activity = self.clock()
            if not room.players:
                del self.rooms[room_id]
                logger.info("Room %s removed after last player left", room_id)
        return room_id

    def cleanup_stale_rooms(self, now: Optional[float] = None) -> List[str]:
        now = self.clock() if now is None else now
        evicted = []
        for room_id, room in list(self.rooms.items()):
            if now - room.last_activity > self.room_ttl:
                for player in room.players:
                    self.player_rooms.pop(player.id, None)
                del self.rooms[room_id]
                evicted.append(room_id)
                logger.info("Cleaned up stale room %s", room_id)
        return evicted

    # ------------------------------------------------------------------
    # Game commands
    # ------------------------------------------------------------------
    def start_game(self, room_id: str):
        room = self.rooms.get(room_id)
        if room is None:
            logger.debug("start_game ignored for unknown room %s", room_id)
            return
        room.start(create_deck(self.rng), self.clock())
        logger.info("Game started in room %s with %d players", room_id, len(room.players))

    def select_card(self, room_id: str, player_id: str, card_index) -> SelectResult:
        room = self.rooms.get(room_id)
        if room is None:
            return SelectResult(success=False, message="Game not started", error=ErrorKind.GAME_NOT_STARTED)
        try:
            selected = room.toggle_selection(player_id, card_index, self.clock())
        except GameError as exc:
            logger.debug("select_card rejected in room %s: %s", room_id, exc.message)
            return SelectResult(success=False, message=exc.message, error=exc.kind)
        return SelectResult(success=True, selected_cards=selected)

    def check_set(self, room_id: str, player_id: str) -> SetResult:
        room = self.rooms.get(room_id)
        if room is None:
            return SetResult(is_valid=False)
        result = room.resolve_selection(player_id, self.clock())
        if result.player_name is not None:
            logger.info(
                "Room %s: %s checked a %s set (score=%s)",
                room_id,
                result.player_name,
                "valid" if result.is_valid else "invalid",
                result.score,
            )
        if room.game_over:
            logger.info("Room %s: game over", room_id)
        return result

    def add_3_cards(self, room_id: str) -> ActionResult:
        room = self.rooms.get(room_id)
        if room is None:
            return ActionResult(success=False, message="Room not found", error=ErrorKind.ROOM_NOT_FOUND)
        try:
            room.add_cards(self.clock())
        except GameError as exc:
            return ActionResult(success=False, message=exc.message, error=exc.kind)
        return ActionResult(success=True)

    def get_hint(self, room_id: str) -> Optional[Triple]:
        room = self.rooms.get(room_id)
        if room is None:
            return None
        sets = find_sets(room.board)
        return sets[0] if sets else None

    def get_game_state(self, room_id: str) -> Optional[GameState]:
        room = self.rooms.get(room_id)
        if room is None:
            return None
        return room.to_state()
