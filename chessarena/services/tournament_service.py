import functools
import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from chessarena.core.config import settings
from chessarena.core.errors import ChessArenaError, InvalidStateError, NotFoundError, UnauthorizedError
from chessarena.models.game_model import GameModel, GameStatus, TimeControl
from chessarena.models.tournament_model import (
    STATUS_ORDER,
    TERMINAL_STATUSES,
    PairingModel,
    PairingResult,
    ParticipantModel,
    RoundModel,
    TournamentModel,
    TournamentStatus,
    TournamentType,
)
from chessarena.models.user_model import UserModel
from chessarena.services import bracket_service
from chessarena.services.game_service import GameService
from chessarena.services.notification_service import NotificationService
from chessarena.services.store import GAMES, TOURNAMENTS, DocumentStore
from chessarena.services.user_service import UserService

logger = logging.getLogger(__name__)


class BracketView(BaseModel):
    tournament_id: str
    type: str
    status: str
    current_round: int
    total_rounds: Optional[int] = None
    rounds: List[RoundModel] = Field(default_factory=list)
    players: Dict[str, UserModel] = Field(default_factory=dict)
    games: Dict[str, GameModel] = Field(default_factory=dict)


class TournamentService:
    def __init__(self, store: DocumentStore, notifications: NotificationService,
                 game_service: GameService, user_service: UserService,
                 tiebreak: Optional[str] = None, rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.store = store
        self.notifications = notifications
        self.game_service = game_service
        self.user_service = user_service
        self.rng = rng or random.Random()
        policy_name = tiebreak or settings.ELIMINATION_TIEBREAK
        policy = bracket_service.get_tiebreak_policy(policy_name)
        if policy is bracket_service.random_tiebreak:
            policy = functools.partial(bracket_service.random_tiebreak, rng=self.rng)
        self.tiebreak = policy
        self.clock = clock

    # Helpers

    def _load(self, tournament_id: str) -> Tuple[TournamentModel, int]:
        doc = self.store.get(TOURNAMENTS, tournament_id)
        if doc is None:
            raise NotFoundError("Tournament not found", context={"tournament_id": tournament_id})
        return TournamentModel(**doc.data), doc.version

    @staticmethod
    def _dump(tournament: TournamentModel) -> dict:
        return tournament.model_dump(mode="json")

    def _authorize(self, tournament: TournamentModel, user_id: str) -> None:
        if user_id == tournament.organizer or self.user_service.is_admin(user_id):
            return
        raise UnauthorizedError("Only the organizer or an admin can manage this tournament",
                                context={"tournament_id": tournament.id, "user_id": user_id})

    @staticmethod
    def _require_status(tournament: TournamentModel, *allowed: str) -> None:
        if tournament.status not in [str(getattr(s, "value", s)) for s in allowed]:
            raise InvalidStateError(f"Tournament is {tournament.status}",
                                    context={"tournament_id": tournament.id, "status": tournament.status})

    @staticmethod
    def _can_move_to(current: str, target: str) -> bool:
        if current in TERMINAL_STATUSES:
            return False
        if target == TournamentStatus.CANCELLED.value:
            return True
        return STATUS_ORDER.index(target) > STATUS_ORDER.index(current)

    def _set_status(self, tournament: TournamentModel, target: TournamentStatus) -> None:
        if not self._can_move_to(tournament.status, target.value):
            raise InvalidStateError(f"Cannot move tournament from {tournament.status} to {target.value}",
                                    context={"tournament_id": tournament.id, "status": tournament.status})
        tournament.status = target

    def _time_control(self, tournament: TournamentModel) -> TimeControl:
        return TimeControl(initial=tournament.time_control.initial, increment=tournament.time_control.increment)

    def _open_round(self, tournament: TournamentModel, round_number: int, now: datetime) -> List[GameModel]:
        """Creates Game documents for a round's pairings and credits its byes."""
        round_model = tournament.round_at(round_number)
        first_start = now + timedelta(minutes=settings.TOURNAMENT_FIRST_GAME_DELAY_MINUTES)
        stagger = timedelta(minutes=settings.TOURNAMENT_GAME_STAGGER_MINUTES)
        games = []
        for index, pairing in enumerate(round_model.games):
            pairing.scheduled_time = first_start + stagger * index
            game = self.game_service.build_tournament_game(
                pairing.white, pairing.black, tournament.id, round_number, pairing.match_index,
                pairing.scheduled_time, self._time_control(tournament),
            )
            pairing.game = game.id
            games.append(game)

        # Round-robin sit-outs score nothing; elimination and swiss byes count as a win
        if tournament.type not in (TournamentType.ROUND_ROBIN, TournamentType.SEASONAL):
            for player_id in round_model.byes:
                participant = tournament.participant(player_id)
                if participant and round_number not in participant.bye_rounds:
                    bracket_service.award_bye_points(participant, round_number)
            bracket_service.refresh_tiebreakers(tournament)
        return games

    @staticmethod
    def _round_from_plan(plan: bracket_service.RoundPlan, round_number: int) -> RoundModel:
        return RoundModel(
            games=[PairingModel(round=round_number, match_index=i, white=w, black=b)
                   for i, (w, b) in enumerate(plan.pairs)],
            byes=list(plan.byes),
        )

    def _announce_round(self, tournament: TournamentModel, round_number: int) -> None:
        round_model = tournament.round_at(round_number)
        for pairing in round_model.games:
            for player_id, opponent, color in ((pairing.white, pairing.black, "w"), (pairing.black, pairing.white, "b")):
                self.notifications.match_scheduled(tournament.id, player_id, pairing.game, opponent,
                                                   color, round_number, pairing.scheduled_time)

    def _active_players(self, tournament: TournamentModel) -> List[str]:
        return [p.player for p in tournament.participants if not p.eliminated]

    # CRUD and registration

    def create_tournament(self, tournament: TournamentModel) -> TournamentModel:
        self._require_status(tournament, TournamentStatus.UPCOMING, TournamentStatus.REGISTRATION)
        if tournament.participants or tournament.rounds:
            raise InvalidStateError("New tournaments start without participants or rounds")
        self.store.insert(TOURNAMENTS, tournament.id, self._dump(tournament))
        logger.info("Tournament %s (%s) created by %s", tournament.id, tournament.type, tournament.organizer)
        return tournament

    def get_tournament(self, tournament_id: str) -> TournamentModel:
        return self._load(tournament_id)[0]

    def list_tournaments(self, status: Optional[str] = None) -> List[TournamentModel]:
        return [TournamentModel(**doc.data) for doc in self.store.find(TOURNAMENTS, status=status)]

    def open_registration(self, tournament_id: str, user_id: str) -> TournamentModel:
        tournament, version = self._load(tournament_id)
        self._authorize(tournament, user_id)
        self._set_status(tournament, TournamentStatus.REGISTRATION)
        tournament.updated_at = self.clock()
        self.store.replace(TOURNAMENTS, tournament.id, self._dump(tournament), version)
        logger.info("Registration opened for tournament %s", tournament_id)
        return tournament

    def _registration_problem(self, tournament: TournamentModel, player_id: str, now: datetime) -> Optional[ChessArenaError]:
        context = {"tournament_id": tournament.id, "status": tournament.status}
        if tournament.status != TournamentStatus.REGISTRATION:
            return InvalidStateError("Tournament is not open for registration", context=context)
        if tournament.registration_start and now < tournament.registration_start:
            return InvalidStateError("Registration has not opened yet", context=context)
        if tournament.registration_end and now > tournament.registration_end:
            return InvalidStateError("Registration has closed", context=context)
        if tournament.participant(player_id):
            return InvalidStateError("Already registered for this tournament", context=context)
        if len(tournament.participants) >= tournament.max_participants:
            return InvalidStateError("Tournament is full",
                                     context={**context, "max_participants": tournament.max_participants})
        return None

    def register(self, tournament_id: str, player_id: str, now: Optional[datetime] = None) -> TournamentModel:
        now = now or self.clock()
        rating = self.user_service.ratings([player_id])[player_id]

        def acceptable(data):
            return self._registration_problem(TournamentModel(**data), player_id, now) is None

        def add_participant(data):
            tournament = TournamentModel(**data)
            tournament.participants = tournament.participants + [
                ParticipantModel(player=player_id, registered_at=now, rating=rating)
            ]
            tournament.updated_at = now
            return self._dump(tournament)

        doc = self.store.compare_and_set(TOURNAMENTS, tournament_id, acceptable, add_participant)
        if doc is None:
            tournament, _ = self._load(tournament_id)
            raise self._registration_problem(tournament, player_id, now)

        tournament = TournamentModel(**doc.data)
        logger.info("Player %s registered for tournament %s", player_id, tournament_id)
        self.notifications.registration_confirmed(tournament.id, tournament.name, player_id)
        return tournament

    def unregister(self, tournament_id: str, player_id: str) -> TournamentModel:
        def removable(data):
            tournament = TournamentModel(**data)
            return tournament.status == TournamentStatus.REGISTRATION and tournament.participant(player_id) is not None

        def remove_participant(data):
            tournament = TournamentModel(**data)
            tournament.participants = [p for p in tournament.participants if p.player != player_id]
            tournament.updated_at = self.clock()
            return self._dump(tournament)

        doc = self.store.compare_and_set(TOURNAMENTS, tournament_id, removable, remove_participant)
        if doc is None:
            tournament, _ = self._load(tournament_id)
            if tournament.status != TournamentStatus.REGISTRATION:
                raise InvalidStateError("Registration is closed",
                                        context={"tournament_id": tournament_id, "status": tournament.status})
            raise NotFoundError("Player is not registered", context={"tournament_id": tournament_id, "player": player_id})

        tournament = TournamentModel(**doc.data)
        self.notifications.registration_cancelled(tournament.id, tournament.name, player_id)
        return tournament

    def update_seeds(self, tournament_id: str, user_id: str, seeds: Dict[str, Optional[int]]) -> TournamentModel:
        tournament, version = self._load(tournament_id)
        self._authorize(tournament, user_id)
        self._require_status(tournament, TournamentStatus.UPCOMING, TournamentStatus.REGISTRATION)
        for player_id, seed in seeds.items():
            participant = tournament.participant(player_id)
            if participant is None:
                raise NotFoundError("Player is not registered", context={"player": player_id})
            participant.seed = seed
        tournament.updated_at = self.clock()
        self.store.replace(TOURNAMENTS, tournament.id, self._dump(tournament), version)
        return tournament

    # Bracket lifecycle

    def start_tournament(self, tournament_id: str, user_id: str, now: Optional[datetime] = None) -> TournamentModel:
        now = now or self.clock()
        tournament, version = self._load(tournament_id)
        self._authorize(tournament, user_id)
        self._require_status(tournament, TournamentStatus.REGISTRATION)

        required = max(2, tournament.min_participants)
        if len(tournament.participants) < required:
            raise InvalidStateError(
                f"At least {required} participants are needed to start",
                context={"status": tournament.status, "participants": len(tournament.participants)},
            )

        order = bracket_service.seed_participants(tournament.participants)
        for position, player_id in enumerate(order, start=1):
            tournament.participant(player_id).seed = position

        tournament.total_rounds = bracket_service.total_rounds(tournament.type, len(order))
        if tournament.type == TournamentType.SINGLE_ELIMINATION:
            tournament.rounds = [self._round_from_plan(bracket_service.single_elimination_round(order), 1)]
        elif tournament.type == TournamentType.SWISS:
            plan = bracket_service.swiss_round(order, 1, set(), set(), self.rng)
            tournament.rounds = [self._round_from_plan(plan, 1)]
        else:
            schedule = bracket_service.round_robin_schedule(order)
            tournament.rounds = [self._round_from_plan(plan, n) for n, plan in enumerate(schedule, start=1)]

        self._set_status(tournament, TournamentStatus.ACTIVE)
        tournament.current_round = 1
        tournament.start_date = tournament.start_date or now
        tournament.updated_at = now
        games = self._open_round(tournament, 1, now)

        self.store.commit(
            inserts=[(GAMES, g.id, g.model_dump(mode="json")) for g in games],
            replaces=[(TOURNAMENTS, tournament.id, self._dump(tournament), version)],
        )
        logger.info("Tournament %s started with %d players over %d rounds",
                    tournament.id, len(order), tournament.total_rounds)

        self.notifications.tournament_started(tournament.id, tournament.name, order, tournament.total_rounds)
        self._announce_round(tournament, 1)
        return tournament

    def _settle_pairing(self, tournament_id: str, round_number: int, match_index: int,
                        game_id: str, result: str) -> Optional[TournamentModel]:
        """Writes one pairing result and the players' records; None when it was already decided."""
        def pairing_in(tournament: TournamentModel) -> Optional[PairingModel]:
            round_model = tournament.round_at(round_number)
            if round_model is None:
                return None
            return next((p for p in round_model.games
                         if p.match_index == match_index and p.game in (None, game_id)), None)

        def pending(data):
            pairing = pairing_in(TournamentModel(**data))
            return pairing is not None and pairing.result == PairingResult.PENDING

        def apply(data):
            tournament = TournamentModel(**data)
            pairing = pairing_in(tournament)
            pairing.result = result
            pairing.game = game_id
            bracket_service.apply_result(tournament.participants, pairing.white, pairing.black, result)
            bracket_service.refresh_tiebreakers(tournament)
            tournament.updated_at = self.clock()
            return self._dump(tournament)

        doc = self.store.compare_and_set(TOURNAMENTS, tournament_id, pending, apply)
        if doc is None:
            return None
        logger.info("Recorded %s for tournament %s round %d match %d",
                    result, tournament_id, round_number, match_index)
        tournament = TournamentModel(**doc.data)
        if tournament.is_round_complete(round_number):
            logger.info("Tournament %s round %d is fully decided", tournament_id, round_number)
            self.notifications.round_completed(tournament.id, tournament.name, tournament.organizer, round_number)
        return tournament

    def record_game_result(self, game: GameModel) -> bool:
        """
        Completion hook for finished tournament games.
        Returns True when the game's round is now fully decided. Applying the
        same game twice is a no-op.
        """
        link = game.tournament
        if link is None or game.status != GameStatus.FINISHED:
            return False

        if game.winner is None:
            result = PairingResult.DRAW.value
        elif game.winner == game.host:
            result = PairingResult.WHITE.value
        else:
            result = PairingResult.BLACK.value

        tournament = self._settle_pairing(link.id, link.round, link.match_index, game.id, result)
        if tournament is None:
            logger.debug("Result for game %s already recorded or pairing missing", game.id)
            tournament = self.get_tournament(link.id)
        return tournament.is_round_complete(link.round)

    def award_bye(self, tournament_id: str, user_id: str, player_id: str) -> TournamentModel:
        tournament, version = self._load(tournament_id)
        self._authorize(tournament, user_id)
        self._require_status(tournament, TournamentStatus.ACTIVE)
        participant = tournament.participant(player_id)
        if participant is None or participant.eliminated:
            raise InvalidStateError("Player is not an active participant", context={"player": player_id})

        round_model = tournament.round_at(tournament.current_round)
        if player_id in round_model.byes or any(p.involves(player_id) for p in round_model.games):
            raise InvalidStateError("Player already has a pairing or bye this round",
                                    context={"player": player_id, "round": tournament.current_round})

        round_model.byes = round_model.byes + [player_id]
        bracket_service.award_bye_points(participant, tournament.current_round)
        bracket_service.refresh_tiebreakers(tournament)
        tournament.updated_at = self.clock()
        self.store.replace(TOURNAMENTS, tournament.id, self._dump(tournament), version)
        logger.info("Bye awarded to %s in tournament %s round %d", player_id, tournament_id, tournament.current_round)
        return tournament

    def advance_round(self, tournament_id: str, user_id: str, now: Optional[datetime] = None) -> TournamentModel:
        now = now or self.clock()
        tournament, version = self._load(tournament_id)
        self._authorize(tournament, user_id)
        self._require_status(tournament, TournamentStatus.ACTIVE)

        current = tournament.round_at(tournament.current_round)
        if not tournament.is_round_complete(tournament.current_round):
            pending = [p.match_index for p in current.games if not p.is_decided]
            raise InvalidStateError("Current round is not complete",
                                    context={"round": tournament.current_round, "pending_matches": pending})

        next_round = tournament.current_round + 1
        champion = None
        if tournament.type == TournamentType.SINGLE_ELIMINATION:
            seeds = {p.player: p.seed for p in tournament.participants if p.seed is not None}
            winners, losers = bracket_service.advancing_players(current, seeds, self.tiebreak)
            for player_id in losers:
                tournament.participant(player_id).eliminated = True
            if len(winners) <= 1:
                champion = winners[0] if winners else None
            else:
                had_bye = {p.player for p in tournament.participants if p.bye_rounds}
                plan = bracket_service.single_elimination_round(winners, had_bye)
                tournament.rounds = tournament.rounds + [self._round_from_plan(plan, next_round)]
        elif tournament.type == TournamentType.SWISS:
            if next_round <= tournament.total_rounds:
                ranked = [p.player for p in bracket_service.standings(tournament.participants)]
                had_bye = {p.player for p in tournament.participants if p.bye_rounds}
                plan = bracket_service.swiss_round(ranked, next_round, bracket_service.played_pairs(tournament),
                                                   had_bye, self.rng)
                tournament.rounds = tournament.rounds + [self._round_from_plan(plan, next_round)]

        finished = tournament.round_at(next_round) is None
        games = []
        if finished:
            ranking = bracket_service.final_ranking(tournament, champion)
            for rank, player_id in enumerate(ranking, start=1):
                tournament.participant(player_id).final_rank = rank
            tournament.winner = ranking[0] if ranking else None
            self._set_status(tournament, TournamentStatus.COMPLETED)
            tournament.end_date = now
        else:
            tournament.current_round = next_round
            games = self._open_round(tournament, next_round, now)
        tournament.updated_at = now

        self.store.commit(
            inserts=[(GAMES, g.id, g.model_dump(mode="json")) for g in games],
            replaces=[(TOURNAMENTS, tournament.id, self._dump(tournament), version)],
        )

        players = [p.player for p in tournament.participants]
        if finished:
            logger.info("Tournament %s completed, winner %s", tournament.id, tournament.winner)
            ranks = {p.player: p.final_rank for p in tournament.participants}
            self.notifications.tournament_completed(tournament.id, tournament.name, players, tournament.winner, ranks)
        else:
            logger.info("Tournament %s advanced to round %d", tournament.id, next_round)
            self.notifications.round_advanced(tournament.id, tournament.name,
                                              self._active_players(tournament), next_round)
            self._announce_round(tournament, next_round)
        return tournament

    def cancel_tournament(self, tournament_id: str, user_id: str) -> TournamentModel:
        tournament, version = self._load(tournament_id)
        self._authorize(tournament, user_id)
        self._set_status(tournament, TournamentStatus.CANCELLED)
        tournament.updated_at = self.clock()
        self.store.replace(TOURNAMENTS, tournament.id, self._dump(tournament), version)
        logger.info("Tournament %s cancelled by %s", tournament_id, user_id)
        return tournament

    # Read projections

    def leaderboard(self, tournament_id: str) -> List[ParticipantModel]:
        return bracket_service.standings(self.get_tournament(tournament_id).participants)

    def get_bracket(self, tournament_id: str) -> BracketView:
        tournament = self.get_tournament(tournament_id)
        game_ids = [g.game for r in tournament.rounds for g in r.games if g.game]
        games = self.store.get_many(GAMES, game_ids)
        return BracketView(
            tournament_id=tournament.id,
            type=tournament.type,
            status=tournament.status,
            current_round=tournament.current_round,
            total_rounds=tournament.total_rounds,
            rounds=tournament.rounds,
            players=self.user_service.get_users(p.player for p in tournament.participants),
            games={game_id: GameModel(**doc.data) for game_id, doc in games.items()},
        )

    # Maintenance

    def reconcile_results(self, tournament_id: str) -> int:
        """
        Re-applies finished games whose pairing is still pending. A pairing
        whose game was reaped without a move is settled as a draw. Returns
        how many pairings were settled.
        """
        tournament = self.get_tournament(tournament_id)
        pending = {g.game: g for r in tournament.rounds for g in r.games
                   if g.game and g.result == PairingResult.PENDING}
        docs = self.store.get_many(GAMES, pending)
        applied = 0
        for doc in docs.values():
            game = GameModel(**doc.data)
            if game.status == GameStatus.FINISHED:
                self.record_game_result(game)
                applied += 1
        for game_id in [g for g in pending if g not in docs]:
            pairing = pending[game_id]
            logger.warning("Game %s for tournament %s round %d match %d no longer exists",
                           game_id, tournament_id, pairing.round, pairing.match_index)
            if self._settle_pairing(tournament_id, pairing.round, pairing.match_index,
                                    game_id, PairingResult.DRAW.value) is not None:
                applied += 1
        if applied:
            logger.info("Reconciled %d result(s) for tournament %s", applied, tournament_id)
        return applied

    def notify_tournaments_starting(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        lead = timedelta(minutes=settings.REMINDER_LEAD_MINUTES)
        notified = 0
        statuses = [TournamentStatus.UPCOMING.value, TournamentStatus.REGISTRATION.value]
        for doc in self.store.find(TOURNAMENTS, status=statuses):
            tournament = TournamentModel(**doc.data)
            if tournament.starting_notice_sent or not tournament.start_date:
                continue
            if not (now <= tournament.start_date <= now + lead):
                continue

            def mark(data):
                data["starting_notice_sent"] = True
                return data

            if self.store.compare_and_set(TOURNAMENTS, tournament.id,
                                          lambda data: not data.get("starting_notice_sent"), mark) is None:
                continue
            self.notifications.tournament_starting(tournament.id, tournament.name,
                                                   [p.player for p in tournament.participants],
                                                   tournament.start_date)
            notified += 1
        return notified

    def send_match_reminders(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        lead = timedelta(minutes=settings.REMINDER_LEAD_MINUTES)
        sent = 0
        for doc in self.store.find(TOURNAMENTS, status=TournamentStatus.ACTIVE.value):
            tournament = TournamentModel(**doc.data)
            round_model = tournament.round_at(tournament.current_round)
            if round_model is None:
                continue
            due = [p.match_index for p in round_model.games
                   if not p.is_decided and not p.reminder_sent and p.scheduled_time
                   and now <= p.scheduled_time <= now + lead]
            if not due:
                continue

            def mark(data, round_number=tournament.current_round, due=due):
                marked = TournamentModel(**data)
                for pairing in marked.round_at(round_number).games:
                    if pairing.match_index in due:
                        pairing.reminder_sent = True
                return self._dump(marked)

            def still_due(data, round_number=tournament.current_round, due=due):
                unsent = TournamentModel(**data).round_at(round_number).games
                return all(not p.reminder_sent for p in unsent if p.match_index in due)

            if self.store.compare_and_set(TOURNAMENTS, tournament.id, still_due, mark) is None:
                continue
            for pairing in round_model.games:
                if pairing.match_index in due:
                    for player_id in (pairing.white, pairing.black):
                        self.notifications.match_reminder(tournament.id, player_id, pairing.game,
                                                          pairing.scheduled_time)
                    sent += 1
        return sent
