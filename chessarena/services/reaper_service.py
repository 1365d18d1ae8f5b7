import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from chessarena.core.config import settings
from chessarena.models.game_model import GameModel, GameStatus
from chessarena.services.store import GAMES, DocumentStore

logger = logging.getLogger(__name__)

UNSTARTED = "unstarted"
ABANDONED = "abandoned"
WAITING_EXPIRED = "waiting-expired"


class StaleGame(BaseModel):
    id: str
    rule: str
    status: str
    version: int
    created_at: datetime
    last_move_at: Optional[datetime] = None
    host: str
    opponent: Optional[str] = None
    moves: int = 0


class ReaperReport(BaseModel):
    unstarted_games: int = 0
    abandoned_games: int = 0
    waiting_games: int = 0
    total_deleted: int = 0
    deleted_ids: List[str] = Field(default_factory=list)
    skipped_ids: List[str] = Field(default_factory=list) # Changed after classification
    message: str = ""


def classify(game: GameModel, cutoff: datetime) -> Optional[str]:
    """Which stale rule a game falls under, if any. Finished games never qualify."""
    if game.status == GameStatus.ACTIVE:
        if not game.moves:
            return UNSTARTED if game.created_at <= cutoff else None
        return ABANDONED if game.last_move_at() <= cutoff else None
    if game.status == GameStatus.WAITING and game.opponent is None:
        return WAITING_EXPIRED if game.created_at <= cutoff else None
    return None


class ReaperService:
    def __init__(self, store: DocumentStore, threshold_hours: int = settings.STALE_GAME_HOURS,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.store = store
        self.threshold = timedelta(hours=threshold_hours)
        self.clock = clock

    def find_stale_games(self, now: Optional[datetime] = None) -> List[StaleGame]:
        cutoff = (now or self.clock()) - self.threshold
        stale = []
        for doc in self.store.find(GAMES, status=[GameStatus.ACTIVE.value, GameStatus.WAITING.value]):
            game = GameModel(**doc.data)
            rule = classify(game, cutoff)
            if rule is None:
                continue
            stale.append(StaleGame(
                id=game.id,
                rule=rule,
                status=game.status,
                version=doc.version,
                created_at=game.created_at,
                last_move_at=game.last_move_at(),
                host=game.host,
                opponent=game.opponent,
                moves=len(game.moves),
            ))
        return stale

    def cleanup_stale_games(self, now: Optional[datetime] = None) -> ReaperReport:
        stale = self.find_stale_games(now)
        if not stale:
            logger.info("No stale games found to clean up")
            return ReaperReport(message="No games to clean up")

        for game in stale:
            logger.debug("Stale %s game %s (status=%s, moves=%d, last move=%s)",
                         game.rule, game.id, game.status, game.moves, game.last_move_at)

        # Only delete documents that still have the version we classified
        deleted = self.store.delete_many(GAMES, {g.id: g.version for g in stale})
        deleted_set = set(deleted)
        counted = [g for g in stale if g.id in deleted_set]
        report = ReaperReport(
            unstarted_games=sum(1 for g in counted if g.rule == UNSTARTED),
            abandoned_games=sum(1 for g in counted if g.rule == ABANDONED),
            waiting_games=sum(1 for g in counted if g.rule == WAITING_EXPIRED),
            total_deleted=len(deleted),
            deleted_ids=deleted,
            skipped_ids=[g.id for g in stale if g.id not in deleted_set],
            message=f"Cleaned up {len(deleted)} stale games",
        )
        logger.info("Cleaned up %d stale games (unstarted=%d, abandoned=%d, waiting=%d, skipped=%d)",
                    report.total_deleted, report.unstarted_games, report.abandoned_games,
                    report.waiting_games, len(report.skipped_ids))
        return report
