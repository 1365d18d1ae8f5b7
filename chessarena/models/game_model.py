from datetime import datetime
from typing import List, Optional, Dict
from uuid import uuid4
from enum import Enum

from pydantic import BaseModel, Field

from chessarena.core.config import settings

STARTING_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"

class GameStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    FINISHED = "finished"

class GameType(str, Enum):
    CASUAL = "casual"
    RANKED = "ranked"
    TOURNAMENT = "tournament"

class WinReason(str, Enum):
    CHECKMATE = "checkmate"
    STALEMATE = "stalemate"
    DRAW = "draw"
    THREEFOLD = "threefold"
    INSUFFICIENT_MATERIAL = "insufficientMaterial"
    FIFTY_MOVE = "fiftyMove"
    RESIGNATION = "resignation"
    TIMEOUT = "timeout"
    NO_SHOW = "no-show"
    FORFEIT_TIME = "forfeit-time"

# Reasons that finish a game without a winner
DRAW_REASONS = {
    WinReason.STALEMATE.value,
    WinReason.DRAW.value,
    WinReason.THREEFOLD.value,
    WinReason.INSUFFICIENT_MATERIAL.value,
    WinReason.FIFTY_MOVE.value,
}

class DrawOfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"

class MoveRecord(BaseModel):
    san: str
    from_square: str
    to_square: str
    piece: str
    captured: Optional[str] = None
    promotion: Optional[str] = None
    flags: str = "n"
    fen: str # Position after this move
    timestamp: datetime = Field(default_factory=datetime.utcnow)

class GameStateFlags(BaseModel):
    in_check: bool = False
    in_checkmate: bool = False
    in_stalemate: bool = False
    in_draw: bool = False
    insufficient_material: bool = False
    in_threefold_repetition: bool = False
    fifty_move_rule: bool = False

class ClockState(BaseModel):
    w: float = settings.DEFAULT_TIME_SECONDS
    b: float = settings.DEFAULT_TIME_SECONDS

class TimeControl(BaseModel):
    initial: int = settings.DEFAULT_TIME_SECONDS # seconds
    increment: int = 0 # seconds per move

class DrawOffer(BaseModel):
    offered_by: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)

class DrawOfferEntry(DrawOffer):
    status: DrawOfferStatus = DrawOfferStatus.PENDING

    class Config:
        use_enum_values = True
        validate_assignment = True
        validate_default = True

class TournamentLink(BaseModel):
    id: str
    round: int
    match_index: int

class GameModel(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    host: str # User id, plays white
    opponent: Optional[str] = None # User id, plays black; set at most once
    status: GameStatus = GameStatus.WAITING

    moves: List[MoveRecord] = Field(default_factory=list)
    fen: str = STARTING_FEN
    turn: str = "w"
    time_left: ClockState = Field(default_factory=ClockState)
    time_control: TimeControl = Field(default_factory=TimeControl)
    game_state: GameStateFlags = Field(default_factory=GameStateFlags)

    winner: Optional[str] = None
    win_reason: Optional[WinReason] = None

    current_draw_offer: Optional[DrawOffer] = None
    draw_offers: List[DrawOfferEntry] = Field(default_factory=list)

    game_type: GameType = GameType.CASUAL
    tournament: Optional[TournamentLink] = None
    scheduled_start_time: Optional[datetime] = None
    start_time: Optional[datetime] = None
    ready_players: List[str] = Field(default_factory=list) # Tournament readiness confirmations

    watches: int = 0
    rating_change: Optional[Dict[str, int]] = None # {"w": +12, "b": -12} for ranked games

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        from_attributes = True
        use_enum_values = True
        validate_assignment = True
        validate_default = True

    def is_player(self, user_id: str) -> bool:
        return user_id == self.host or (self.opponent is not None and user_id == self.opponent)

    def color_of(self, user_id: str) -> Optional[str]:
        if user_id == self.host:
            return "w"
        if self.opponent is not None and user_id == self.opponent:
            return "b"
        return None

    def player_for(self, color: str) -> Optional[str]:
        return self.host if color == "w" else self.opponent

    def last_move_at(self) -> Optional[datetime]:
        return self.moves[-1].timestamp if self.moves else None

    @property
    def is_draw(self) -> bool:
        return self.status == GameStatus.FINISHED and self.winner is None and self.win_reason in DRAW_REASONS
