from pydantic import BaseModel, Field, validator
from typing import Optional, Dict
from datetime import datetime

from chessarena.models.tournament_model import TournamentType, TournamentFormat, TimeControlConfig

class TournamentCreate(BaseModel):
    name: str = Field(min_length=3, max_length=100)
    description: Optional[str] = None
    type: TournamentType = TournamentType.SINGLE_ELIMINATION
    format: TournamentFormat = TournamentFormat.RAPID
    time_control: Optional[TimeControlConfig] = None
    registration_start: Optional[datetime] = None
    registration_end: Optional[datetime] = None
    start_date: Optional[datetime] = None
    min_participants: int = Field(default=4, ge=2)
    max_participants: int = Field(default=32, ge=2)
    open_registration: bool = False # Skip "upcoming" and accept players right away

    @validator('max_participants')
    def max_not_below_min(cls, v, values, **kwargs):
        if values.get('min_participants') and v < values['min_participants']:
            raise ValueError('max_participants must be at least min_participants')
        return v

class SeedUpdate(BaseModel):
    seeds: Dict[str, Optional[int]]

class ByeRequest(BaseModel):
    player_id: str
