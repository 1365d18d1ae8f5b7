from pydantic import BaseModel, Field
from typing import Optional, Dict

from chessarena.models.game_model import GameType, TimeControl

class GameCreate(BaseModel):
    game_type: GameType = GameType.CASUAL
    time_control: Optional[TimeControl] = None

class MoveRequest(BaseModel):
    # Either san, or from/to with an optional promotion piece
    san: Optional[str] = None
    from_square: Optional[str] = Field(default=None, alias="from")
    to_square: Optional[str] = Field(default=None, alias="to")
    promotion: Optional[str] = None
    time_left: Optional[Dict[str, float]] = None

    class Config:
        populate_by_name = True

    def to_spec(self) -> Dict[str, str]:
        if self.san:
            return {"san": self.san}
        spec = {"from": self.from_square, "to": self.to_square}
        if self.promotion:
            spec["promotion"] = self.promotion
        return spec

class DrawResponse(BaseModel):
    accept: bool

class TimeoutReport(BaseModel):
    loser_color: str = Field(pattern="^[wb]$")
