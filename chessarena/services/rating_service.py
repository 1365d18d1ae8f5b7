import logging
from typing import Dict, Optional

from chessarena.core.config import settings
from chessarena.models.game_model import GameModel
from chessarena.services.user_service import UserService

logger = logging.getLogger(__name__)


def expected_score(rating: float, opponent_rating: float) -> float:
    return 1 / (1 + 10 ** ((opponent_rating - rating) / 400))


def rating_delta(rating: float, opponent_rating: float, score: float, k_factor: int = settings.ELO_K_FACTOR) -> int:
    """Elo change for one player; ``score`` is 1, 0.5 or 0."""
    return round(k_factor * (score - expected_score(rating, opponent_rating)))


class RatingService:
    def __init__(self, user_service: UserService, k_factor: int = settings.ELO_K_FACTOR):
        self.user_service = user_service
        self.k_factor = k_factor

    def update_for_game(self, game: GameModel) -> Optional[Dict[str, int]]:
        """Applies the Elo update for a finished game and returns {"w": delta, "b": delta}."""
        if game.opponent is None:
            return None
        if game.is_draw:
            white_score = 0.5
        elif game.winner == game.host:
            white_score = 1.0
        else:
            white_score = 0.0

        ratings = self.user_service.ratings([game.host, game.opponent])
        white_rating, black_rating = ratings[game.host], ratings[game.opponent]
        change = {
            "w": rating_delta(white_rating, black_rating, white_score, self.k_factor),
            "b": rating_delta(black_rating, white_rating, 1 - white_score, self.k_factor),
        }
        self.user_service.adjust_rating(game.host, change["w"])
        self.user_service.adjust_rating(game.opponent, change["b"])
        logger.info("Rated game %s: white %+d, black %+d", game.id, change["w"], change["b"])
        return change
