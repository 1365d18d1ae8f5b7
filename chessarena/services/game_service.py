import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from chessarena.core.config import settings
from chessarena.core.errors import (
    ChessArenaError,
    ConflictError,
    IllegalMoveError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)
from chessarena.models.game_model import (
    ClockState,
    DrawOffer,
    DrawOfferEntry,
    DrawOfferStatus,
    GameModel,
    GameStatus,
    GameType,
    MoveRecord,
    TimeControl,
    TournamentLink,
    WinReason,
)
from chessarena.models.user_model import UserModel
from chessarena.services.notification_service import NotificationService
from chessarena.services.rating_service import RatingService
from chessarena.services.rules_engine import IllegalMove, RulesEngine
from chessarena.services.store import GAMES, DocumentStore
from chessarena.services.user_service import UserService

logger = logging.getLogger(__name__)


class JoinResult(BaseModel):
    game: GameModel
    outcome: str # joined, started, ready, already_in_game, spectating, no-show-win, no-show-loss


class GameView(BaseModel):
    game: GameModel
    role: str # player or spectator
    color: Optional[str] = None
    players: Dict[str, UserModel] = Field(default_factory=dict)


class LegalMovesView(BaseModel):
    turn: str
    moves: List[str]
    verbose: List[Dict[str, Any]]


class GameService:
    def __init__(self, store: DocumentStore, notifications: NotificationService,
                 rating_service: Optional[RatingService] = None,
                 user_service: Optional[UserService] = None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.store = store
        self.notifications = notifications
        self.rating_service = rating_service
        self.user_service = user_service
        self.clock = clock
        # Set by the tournament service so finished tournament games feed standings
        self.on_tournament_game_finished: Optional[Callable[[GameModel], Any]] = None

    # Persistence helpers

    def _load(self, game_id: str) -> Tuple[GameModel, int]:
        doc = self.store.get(GAMES, game_id)
        if doc is None:
            raise NotFoundError("Game not found", context={"game_id": game_id})
        return GameModel(**doc.data), doc.version

    def _save(self, game: GameModel, version: int) -> GameModel:
        game.updated_at = self.clock()
        doc = self.store.replace(GAMES, game.id, game.model_dump(mode="json"), version)
        return GameModel(**doc.data)

    def _engine_for(self, game: GameModel) -> RulesEngine:
        """Replays the move list so repetition history is available; falls back to the bare fen."""
        try:
            engine = RulesEngine.replay([m.san for m in game.moves])
        except ValueError:
            return RulesEngine(game.fen)
        if engine.fen() != game.fen:
            engine.load(game.fen)
        return engine

    def _require_active(self, game: GameModel) -> None:
        if game.status != GameStatus.ACTIVE:
            raise InvalidStateError("Game is not active", context={"game_id": game.id, "status": game.status})

    def _require_player(self, game: GameModel, user_id: str) -> None:
        if not game.is_player(user_id):
            raise UnauthorizedError("You are not a player in this game",
                                    context={"game_id": game.id, "user_id": user_id})

    def _finish(self, game: GameModel, winner: Optional[str], reason: WinReason, now: datetime) -> None:
        game.status = GameStatus.FINISHED
        game.winner = winner
        game.win_reason = reason
        game.current_draw_offer = None
        # A pending offer lapses when the game ends some other way
        for entry in game.draw_offers:
            if entry.status == DrawOfferStatus.PENDING:
                entry.status = DrawOfferStatus.DECLINED
        game.updated_at = now

    def _after_finish(self, game: GameModel) -> GameModel:
        logger.info("Game %s finished: winner=%s reason=%s", game.id, game.winner, game.win_reason)
        if game.game_type == GameType.RANKED and self.rating_service is not None:
            try:
                change = self.rating_service.update_for_game(game)
                if change:
                    def set_change(data):
                        data["rating_change"] = change
                        return data
                    game = GameModel(**self.store.update(GAMES, game.id, set_change).data)
            except ChessArenaError:
                logger.exception("Rating update failed for game %s", game.id)

        self.notifications.game_end(game.id, game.winner, game.win_reason, game.rating_change)

        if game.game_type == GameType.TOURNAMENT and game.tournament and self.on_tournament_game_finished:
            try:
                self.on_tournament_game_finished(game)
            except ChessArenaError:
                # Left pending; reconcile_results picks it up later
                logger.exception("Tournament result hook failed for game %s", game.id)
        return game

    @staticmethod
    def _termination(engine: RulesEngine, mover: str) -> Optional[Tuple[Optional[str], WinReason]]:
        if engine.is_checkmate():
            return mover, WinReason.CHECKMATE
        if engine.is_stalemate():
            return None, WinReason.STALEMATE
        if engine.is_insufficient_material():
            return None, WinReason.INSUFFICIENT_MATERIAL
        if engine.is_threefold_repetition():
            return None, WinReason.THREEFOLD
        if engine.is_fifty_moves():
            return None, WinReason.FIFTY_MOVE
        if engine.is_draw():
            return None, WinReason.DRAW
        return None

    # Creation

    def create(self, host_id: str, game_type: GameType = GameType.CASUAL,
               time_control: Optional[TimeControl] = None) -> GameModel:
        if game_type == GameType.TOURNAMENT:
            raise InvalidStateError("Tournament games are created by their tournament",
                                    context={"game_type": game_type})
        time_control = time_control or TimeControl()
        game = GameModel(
            host=host_id,
            game_type=game_type,
            time_control=time_control,
            time_left=ClockState(w=time_control.initial, b=time_control.initial),
        )
        self.store.insert(GAMES, game.id, game.model_dump(mode="json"))
        logger.info("Game %s created by %s (%s)", game.id, host_id, game.game_type)
        return game

    def build_tournament_game(self, white: str, black: str, tournament_id: str, round_number: int,
                              match_index: int, scheduled_start_time: Optional[datetime],
                              time_control: Optional[TimeControl] = None) -> GameModel:
        time_control = time_control or TimeControl()
        return GameModel(
            host=white,
            opponent=black,
            game_type=GameType.TOURNAMENT,
            tournament=TournamentLink(id=tournament_id, round=round_number, match_index=match_index),
            scheduled_start_time=scheduled_start_time,
            time_control=time_control,
            time_left=ClockState(w=time_control.initial, b=time_control.initial),
        )

    def create_tournament_game(self, white: str, black: str, tournament_id: str, round_number: int,
                               match_index: int, scheduled_start_time: Optional[datetime],
                               time_control: Optional[TimeControl] = None) -> GameModel:
        game = self.build_tournament_game(white, black, tournament_id, round_number, match_index,
                                          scheduled_start_time, time_control)
        self.store.insert(GAMES, game.id, game.model_dump(mode="json"))
        return game

    # Reads

    def get(self, game_id: str) -> GameModel:
        return self._load(game_id)[0]

    def get_view(self, game_id: str, user_id: Optional[str] = None) -> GameView:
        game = self.get(game_id)
        color = game.color_of(user_id) if user_id else None
        players = {}
        if self.user_service is not None:
            players = self.user_service.get_users([game.host, game.opponent])
        return GameView(game=game, role="player" if color else "spectator", color=color, players=players)

    def list_games(self, status: Optional[str] = None) -> List[GameModel]:
        return [GameModel(**doc.data) for doc in self.store.find(GAMES, status=status)]

    def legal_moves(self, game_id: str) -> LegalMovesView:
        game = self.get(game_id)
        self._require_active(game)
        engine = self._engine_for(game)
        return LegalMovesView(turn=engine.turn(), moves=engine.legal_moves(), verbose=engine.legal_moves(verbose=True))

    # Joining

    def join(self, game_id: str, user_id: str, now: Optional[datetime] = None) -> JoinResult:
        now = now or self.clock()
        game, _ = self._load(game_id)

        if game.game_type == GameType.TOURNAMENT and game.status == GameStatus.WAITING:
            return self._join_tournament_game(game, user_id, now)

        if game.is_player(user_id):
            return JoinResult(game=game, outcome="already_in_game")

        if game.status == GameStatus.FINISHED:
            raise InvalidStateError("Game is already finished", context={"game_id": game_id, "status": game.status})

        if game.status == GameStatus.ACTIVE:
            def add_watcher(data):
                data["watches"] = data.get("watches", 0) + 1
                return data
            doc = self.store.update(GAMES, game_id, add_watcher)
            return JoinResult(game=GameModel(**doc.data), outcome="spectating")

        def seat_open(data):
            return data.get("opponent") is None and data.get("status") == GameStatus.WAITING.value

        def take_seat(data):
            seated = GameModel(**data)
            seated.opponent = user_id
            seated.status = GameStatus.ACTIVE
            seated.start_time = now
            seated.updated_at = now
            return seated.model_dump(mode="json")

        doc = self.store.compare_and_set(GAMES, game_id, seat_open, take_seat)
        if doc is None:
            current = self.get(game_id)
            raise ConflictError("Game is full", context={"game_id": game_id, "status": current.status})

        game = GameModel(**doc.data)
        logger.info("User %s joined game %s", user_id, game_id)
        self.notifications.game_start(game.id, game.host, game.opponent)
        return JoinResult(game=game, outcome="joined")

    def _join_tournament_game(self, game: GameModel, user_id: str, now: datetime) -> JoinResult:
        if not game.is_player(user_id):
            raise UnauthorizedError("You are not assigned to this tournament game",
                                    context={"game_id": game.id, "user_id": user_id})

        scheduled = game.scheduled_start_time
        if scheduled and now < scheduled:
            minutes = math.ceil((scheduled - now).total_seconds() / 60)
            raise InvalidStateError(
                f"Game starts in {minutes} minute(s)",
                context={"status": game.status, "scheduled_start_time": scheduled.isoformat(),
                         "minutes_until_start": minutes},
            )

        def still_waiting(data):
            return data.get("status") == GameStatus.WAITING.value

        grace = timedelta(minutes=settings.FORFEIT_GRACE_MINUTES)
        if scheduled and now > scheduled + grace:
            other = game.player_for("b" if game.color_of(user_id) == "w" else "w")
            # Only the opponent confirmed in time, so the late caller is the no-show
            winner = other if other in game.ready_players and user_id not in game.ready_players else user_id

            def award(data):
                forfeited = GameModel(**data)
                self._finish(forfeited, winner, WinReason.NO_SHOW, now)
                return forfeited.model_dump(mode="json")

            doc = self.store.compare_and_set(GAMES, game.id, still_waiting, award)
            if doc is None:
                return JoinResult(game=self.get(game.id), outcome="already_in_game")
            finished = self._after_finish(GameModel(**doc.data))
            return JoinResult(game=finished, outcome="no-show-win" if winner == user_id else "no-show-loss")

        def confirm(data):
            pending = GameModel(**data)
            if user_id not in pending.ready_players:
                pending.ready_players = pending.ready_players + [user_id]
            if pending.host in pending.ready_players and pending.opponent in pending.ready_players:
                pending.status = GameStatus.ACTIVE
                pending.start_time = now
            pending.updated_at = now
            return pending.model_dump(mode="json")

        doc = self.store.compare_and_set(GAMES, game.id, still_waiting, confirm)
        if doc is None:
            return JoinResult(game=self.get(game.id), outcome="already_in_game")

        game = GameModel(**doc.data)
        if game.status == GameStatus.ACTIVE:
            logger.info("Tournament game %s started", game.id)
            self.notifications.game_start(game.id, game.host, game.opponent)
            return JoinResult(game=game, outcome="started")
        return JoinResult(game=game, outcome="ready")

    # Moves and endings

    def move(self, game_id: str, user_id: str, move_spec: Dict[str, Any],
             time_left: Optional[Dict[str, float]] = None) -> GameModel:
        game, version = self._load(game_id)
        self._require_active(game)
        self._require_player(game, user_id)

        engine = self._engine_for(game)
        turn = engine.turn()
        if game.color_of(user_id) != turn:
            raise InvalidStateError("Not your turn", context={"game_id": game_id, "turn": turn, "fen": game.fen})

        result = engine.apply_move(move_spec)
        if isinstance(result, IllegalMove):
            logger.debug("Illegal move in game %s: %s", game_id, result.reason)
            raise IllegalMoveError("Illegal move", detail=result.reason, board=engine.ascii(), fen=game.fen)

        now = self.clock()
        record = MoveRecord(
            san=result.san,
            from_square=result.from_square,
            to_square=result.to_square,
            piece=result.piece,
            captured=result.captured,
            promotion=result.promotion,
            flags=result.flags,
            fen=result.fen,
            timestamp=now,
        )
        game.moves = game.moves + [record]
        game.fen = result.fen
        game.turn = engine.turn()
        game.game_state = engine.state_flags()
        if time_left:
            game.time_left = ClockState(**{**game.time_left.model_dump(), **time_left})

        ending = self._termination(engine, user_id)
        if ending:
            self._finish(game, ending[0], ending[1], now)

        saved = self._save(game, version)
        if saved.status == GameStatus.FINISHED:
            return self._after_finish(saved)

        self.notifications.move(saved.id, record.model_dump(mode="json"), saved.fen, saved.turn,
                                saved.game_state.model_dump(), saved.time_left.model_dump())
        return saved

    def resign(self, game_id: str, user_id: str) -> GameModel:
        game, version = self._load(game_id)
        self._require_active(game)
        self._require_player(game, user_id)
        winner = game.opponent if user_id == game.host else game.host
        self._finish(game, winner, WinReason.RESIGNATION, self.clock())
        return self._after_finish(self._save(game, version))

    def offer_draw(self, game_id: str, user_id: str) -> GameModel:
        game, version = self._load(game_id)
        self._require_active(game)
        self._require_player(game, user_id)
        if game.current_draw_offer is not None:
            raise InvalidStateError("A draw offer is already pending",
                                    context={"offered_by": game.current_draw_offer.offered_by})
        now = self.clock()
        game.current_draw_offer = DrawOffer(offered_by=user_id, timestamp=now)
        game.draw_offers = game.draw_offers + [DrawOfferEntry(offered_by=user_id, timestamp=now)]
        saved = self._save(game, version)
        self.notifications.draw_offer(saved.id, user_id)
        return saved

    def respond_draw(self, game_id: str, user_id: str, accept: bool) -> GameModel:
        game, version = self._load(game_id)
        self._require_active(game)
        self._require_player(game, user_id)
        offer = game.current_draw_offer
        if offer is None:
            raise InvalidStateError("No pending draw offer", context={"game_id": game_id})
        if offer.offered_by == user_id:
            raise InvalidStateError("Cannot respond to your own draw offer", context={"offered_by": offer.offered_by})

        for entry in reversed(game.draw_offers):
            if entry.status == DrawOfferStatus.PENDING:
                entry.status = DrawOfferStatus.ACCEPTED if accept else DrawOfferStatus.DECLINED
                break
        game.current_draw_offer = None

        if accept:
            self._finish(game, None, WinReason.DRAW, self.clock())
            return self._after_finish(self._save(game, version))

        saved = self._save(game, version)
        self.notifications.draw_declined(saved.id, user_id)
        return saved

    def timeout(self, game_id: str, user_id: str, loser_color: str) -> GameModel:
        if loser_color not in ("w", "b"):
            raise InvalidStateError("loser_color must be 'w' or 'b'", context={"loser_color": loser_color})
        game, version = self._load(game_id)
        self._require_active(game)
        self._require_player(game, user_id)
        winner = game.player_for("b" if loser_color == "w" else "w")
        clocks = game.time_left.model_dump()
        clocks[loser_color] = 0
        game.time_left = ClockState(**clocks)
        self._finish(game, winner, WinReason.TIMEOUT, self.clock())
        return self._after_finish(self._save(game, version))

    # Maintenance

    def award_overdue_forfeits(self, now: Optional[datetime] = None) -> List[GameModel]:
        """Finishes tournament games still waiting past their grace window."""
        now = now or self.clock()
        deadline = now - timedelta(minutes=settings.FORFEIT_GRACE_MINUTES)
        awarded = []
        for doc in self.store.find(GAMES, status=GameStatus.WAITING.value):
            game = GameModel(**doc.data)
            if game.game_type != GameType.TOURNAMENT or not game.scheduled_start_time:
                continue
            if game.scheduled_start_time > deadline:
                continue
            ready = [p for p in game.ready_players if game.is_player(p)]
            winner = ready[0] if len(set(ready)) == 1 else game.host

            def award(data, winner=winner):
                forfeited = GameModel(**data)
                self._finish(forfeited, winner, WinReason.FORFEIT_TIME, now)
                return forfeited.model_dump(mode="json")

            updated = self.store.compare_and_set(
                GAMES, game.id, lambda data: data.get("status") == GameStatus.WAITING.value, award)
            if updated is None:
                continue
            awarded.append(self._after_finish(GameModel(**updated.data)))

        if awarded:
            logger.info("Awarded %d forfeit(s) for overdue tournament games", len(awarded))
        return awarded
