from datetime import datetime
from typing import Optional, List
from uuid import uuid4
from enum import Enum

from pydantic import BaseModel, Field, validator

from chessarena.core.config import settings

class TournamentType(str, Enum):
    SINGLE_ELIMINATION = "single-elimination"
    ROUND_ROBIN = "round-robin"
    SWISS = "swiss"
    SEASONAL = "seasonal"

class TournamentFormat(str, Enum):
    BLITZ = "blitz"
    RAPID = "rapid"
    CLASSICAL = "classical"

class TournamentStatus(str, Enum):
    UPCOMING = "upcoming"
    REGISTRATION = "registration"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

# Forward-only lifecycle; CANCELLED is reachable from any non-terminal status
STATUS_ORDER = ["upcoming", "registration", "active", "completed"]
TERMINAL_STATUSES = {"completed", "cancelled"}

class PairingResult(str, Enum):
    PENDING = "pending"
    WHITE = "white"
    BLACK = "black"
    DRAW = "draw"

class Tiebreakers(BaseModel):
    buchholz: float = 0.0
    sonneborn: float = 0.0

class ParticipantModel(BaseModel):
    player: str # User id
    registered_at: datetime = Field(default_factory=datetime.utcnow)
    seed: Optional[int] = None
    rating: int = settings.DEFAULT_RATING # Snapshot used for seeding
    score: float = 0.0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    tiebreakers: Tiebreakers = Field(default_factory=Tiebreakers)
    eliminated: bool = False
    final_rank: Optional[int] = None
    bye_rounds: List[int] = Field(default_factory=list)

class PairingModel(BaseModel):
    round: int
    match_index: int
    white: str
    black: str
    game: Optional[str] = None # Game id
    result: PairingResult = PairingResult.PENDING
    scheduled_time: Optional[datetime] = None
    reminder_sent: bool = False

    class Config:
        use_enum_values = True
        validate_assignment = True
        validate_default = True

    @property
    def is_decided(self) -> bool:
        return self.result != PairingResult.PENDING

    def involves(self, player_id: str) -> bool:
        return player_id in (self.white, self.black)

class RoundModel(BaseModel):
    games: List[PairingModel] = Field(default_factory=list)
    byes: List[str] = Field(default_factory=list) # Players without an opponent this round

    @property
    def is_complete(self) -> bool:
        return all(g.is_decided for g in self.games)

class TimeControlConfig(BaseModel):
    initial: int = 600 # seconds
    increment: int = 5 # seconds

class TournamentModel(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(min_length=3, max_length=100)
    description: Optional[str] = None
    type: TournamentType = TournamentType.SINGLE_ELIMINATION
    format: TournamentFormat = TournamentFormat.RAPID
    time_control: TimeControlConfig = Field(default_factory=TimeControlConfig)
    status: TournamentStatus = TournamentStatus.UPCOMING

    registration_start: Optional[datetime] = None
    registration_end: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    participants: List[ParticipantModel] = Field(default_factory=list)
    rounds: List[RoundModel] = Field(default_factory=list)
    current_round: int = 0
    total_rounds: Optional[int] = None

    min_participants: int = Field(default=4, ge=2)
    max_participants: int = Field(default=32, ge=2)

    organizer: Optional[str] = None # User id
    winner: Optional[str] = None
    starting_notice_sent: bool = False

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        from_attributes = True
        use_enum_values = True
        validate_assignment = True
        validate_default = True

    @validator('max_participants')
    def max_not_below_min(cls, v, values, **kwargs):
        if values.get('min_participants') and v < values['min_participants']:
            raise ValueError('max_participants must be at least min_participants')
        return v

    def participant(self, player_id: str) -> Optional[ParticipantModel]:
        return next((p for p in self.participants if p.player == player_id), None)

    def round_at(self, round_number: int) -> Optional[RoundModel]:
        if 1 <= round_number <= len(self.rounds):
            return self.rounds[round_number - 1]
        return None

    def is_round_complete(self, round_number: int) -> bool:
        round_model = self.round_at(round_number)
        return round_model is not None and round_model.is_complete
