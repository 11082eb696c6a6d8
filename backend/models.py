from __future__ import annotations
from enum import Enum
from typing import Dict, List, Literal, Optional, Tuple
from pydantic import BaseModel, Field, ConfigDict

Number = Literal[1, 2, 3]
Shape = Literal["diamond", "oval", "squiggle"]
Color = Literal["red", "green", "purple"]
Shading = Literal["solid", "striped", "empty"]

NUMBERS: Tuple[int, ...] = (1, 2, 3)
SHAPES: Tuple[str, ...] = ("diamond", "oval", "squiggle")
COLORS: Tuple[str, ...] = ("red", "green", "purple")
SHADINGS: Tuple[str, ...] = ("solid", "striped", "empty")

CARD_ATTRIBUTES = ("number", "shape", "color", "shading")

PLAYER_COLORS: Tuple[str, ...] = (
    "#667eea",
    "#f093fb",
    "#4facfe",
    "#43e97b",
    "#fa709a",
    "#feca57",
)


class ErrorKind(str, Enum):
    ROOM_NOT_FOUND = "room_not_found"
    GAME_NOT_STARTED = "game_not_started"
    INVALID_CARD_INDEX = "invalid_card_index"
    SELECTION_LIMIT_EXCEEDED = "selection_limit_exceeded"
    INSUFFICIENT_DECK = "insufficient_deck"
    ROOM_FULL = "room_full"  # enforced by the transport


class Card(BaseModel):
    number: Number
    shape: Shape
    color: Color
    shading: Shading

    model_config = ConfigDict(frozen=True)


class Player(BaseModel):
    id: str
    name: str
    score: int = Field(0, ge=0)
    color: str


class ActionResult(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[ErrorKind] = None

    model_config = ConfigDict(populate_by_name=True)


class SelectResult(ActionResult):
    selected_cards: Optional[List[int]] = Field(default=None, alias="selectedCards")


class SetResult(BaseModel):
    is_valid: bool = Field(alias="isValid")
    player_name: Optional[str] = Field(default=None, alias="playerName")
    cards: List[Card] = Field(default_factory=list)
    score: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)


class GameState(BaseModel):
    room_id: str = Field(alias="roomId")
    players: List[Player]
    board: List[Card]
    deck_size: int = Field(alias="deckSize")
    game_started: bool = Field(alias="gameStarted")
    game_over: bool = Field(alias="gameOver")
    winner: Optional[Player] = None
    selections: Dict[str, List[int]] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)
