from functools import lru_cache
from typing import Optional

from fastapi import Header

from chessarena.core.config import settings
from chessarena.core.database import SessionLocal
from chessarena.core.errors import UnauthorizedError
from chessarena.services.game_service import GameService
from chessarena.services.notification_service import NotificationService
from chessarena.services.rating_service import RatingService
from chessarena.services.reaper_service import ReaperService
from chessarena.services.store import DocumentStore
from chessarena.services.tournament_service import TournamentService
from chessarena.services.user_service import UserService


class Services:
    """Wires the services together once per process."""

    def __init__(self, store: DocumentStore, notifications: Optional[NotificationService] = None):
        self.store = store
        self.notifications = notifications or NotificationService()
        self.users = UserService(store)
        self.ratings = RatingService(self.users)
        self.games = GameService(store, self.notifications, rating_service=self.ratings, user_service=self.users)
        self.tournaments = TournamentService(store, self.notifications, self.games, self.users,
                                             tiebreak=settings.ELIMINATION_TIEBREAK)
        self.reaper = ReaperService(store)
        self.games.on_tournament_game_finished = self.tournaments.record_game_result

    def run_maintenance(self):
        """Short-interval sweep: forfeits, starting notices and match reminders."""
        self.games.award_overdue_forfeits()
        self.tournaments.notify_tournaments_starting()
        self.tournaments.send_match_reminders()


@lru_cache()
def get_services() -> Services:
    return Services(DocumentStore(SessionLocal))


def get_game_service() -> GameService:
    return get_services().games


def get_tournament_service() -> TournamentService:
    return get_services().tournaments


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    # Authentication happens upstream; the gateway forwards the caller id
    if not x_user_id:
        raise UnauthorizedError("Missing X-User-Id header")
    return x_user_id
