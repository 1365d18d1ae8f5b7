from .document import DocumentRecord
from .game_model import GameModel, GameStatus, GameType, WinReason, MoveRecord, STARTING_FEN
from .tournament_model import (
    TournamentModel,
    TournamentType,
    TournamentStatus,
    ParticipantModel,
    PairingModel,
    PairingResult,
    RoundModel,
)
from .user_model import UserModel
