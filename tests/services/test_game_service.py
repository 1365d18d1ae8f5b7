import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

from chessarena.core.errors import (
    ConflictError,
    IllegalMoveError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)
from chessarena.models.game_model import STARTING_FEN, GameModel, GameStatus, GameType
from chessarena.models.user_model import UserModel
from chessarena.services.game_service import GameService
from chessarena.services.notification_service import NotificationService
from chessarena.services.rules_engine import RulesEngine
from chessarena.services.store import GAMES

SCHOLARS_MATE = ["e4", "e5", "Qh5", "Nc6", "Bc4", "Nf6", "Qxf7#"]
FOOLS_MATE = ["f3", "e5", "g4", "Qh4#"]


def start_game(game_service: GameService, host="alice", opponent="bob", game_type=GameType.CASUAL) -> GameModel:
    game = game_service.create(host, game_type=game_type)
    return game_service.join(game.id, opponent).game


def play(game_service: GameService, game: GameModel, sans):
    for san in sans:
        current = game_service.get(game.id)
        mover = current.host if current.turn == "w" else current.opponent
        game = game_service.move(game.id, mover, {"san": san})
    return game


def insert_position(store, fen, host="alice", opponent="bob") -> GameModel:
    turn = fen.split()[1]
    game = GameModel(host=host, opponent=opponent, status=GameStatus.ACTIVE, fen=fen, turn=turn)
    store.insert(GAMES, game.id, game.model_dump(mode="json"))
    return game


class TestCreateAndJoin:

    def test_create_defaults(self, game_service: GameService):
        game = game_service.create("alice")
        assert game.status == GameStatus.WAITING
        assert game.opponent is None
        assert game.fen == STARTING_FEN
        assert game.moves == []
        assert game.time_left.w == 300 and game.time_left.b == 300

    def test_create_rejects_tournament_type(self, game_service: GameService):
        with pytest.raises(InvalidStateError):
            game_service.create("alice", game_type=GameType.TOURNAMENT)

    def test_join_activates_and_notifies(self, game_service: GameService, broker):
        game = game_service.create("alice")
        result = game_service.join(game.id, "bob")
        assert result.outcome == "joined"
        assert result.game.status == GameStatus.ACTIVE
        assert result.game.opponent == "bob"
        assert result.game.start_time is not None

        events = broker.history(channel=f"game-{game.id}", event="gameStart")
        assert len(events) == 1
        assert events[0]["payload"]["data"] == {"white": "alice", "black": "bob"}
        assert events[0]["payload"]["id"] == game.id

    def test_host_join_is_idempotent(self, game_service: GameService):
        game = game_service.create("alice")
        result = game_service.join(game.id, "alice")
        assert result.outcome == "already_in_game"
        assert result.game.status == GameStatus.WAITING

    def test_third_user_becomes_spectator(self, game_service: GameService):
        game = start_game(game_service)
        result = game_service.join(game.id, "carol")
        assert result.outcome == "spectating"
        assert result.game.opponent == "bob"
        assert result.game.watches == 1

    def test_join_race_loser_gets_conflict(self, game_service: GameService):
        game = game_service.create("alice")
        stale = game_service.get(game.id)
        game_service.join(game.id, "bob")

        # carol read the game before bob's join landed
        with patch.object(game_service, "_load", return_value=(stale, 1)):
            with pytest.raises(ConflictError) as exc_info:
                game_service.join(game.id, "carol")
        assert exc_info.value.message == "Game is full"
        assert game_service.get(game.id).opponent == "bob"

    def test_join_finished_game(self, game_service: GameService):
        game = start_game(game_service)
        game_service.resign(game.id, "bob")
        with pytest.raises(InvalidStateError):
            game_service.join(game.id, "carol")

    def test_join_unknown_game(self, game_service: GameService):
        with pytest.raises(NotFoundError):
            game_service.join("missing", "bob")

    def test_get_view_roles_and_players(self, game_service: GameService, user_service):
        user_service.create_user(UserModel(id="alice", username="alice"))
        user_service.create_user(UserModel(id="bob", username="bob"))
        game = start_game(game_service)

        view = game_service.get_view(game.id, "bob")
        assert view.role == "player" and view.color == "b"
        assert set(view.players) == {"alice", "bob"}
        assert game_service.get_view(game.id, "carol").role == "spectator"


class TestMoves:

    def test_move_records_history(self, game_service: GameService, broker):
        game = start_game(game_service)
        game = game_service.move(game.id, "alice", {"from": "e2", "to": "e4"})
        assert len(game.moves) == 1
        assert game.moves[0].san == "e4"
        assert game.moves[0].fen == game.fen
        assert game.turn == "b"
        assert len(broker.history(event="move")) == 1

    def test_move_fens_round_trip(self, game_service: GameService):
        game = play(game_service, start_game(game_service), ["e4", "c5", "Nf3", "d6", "d4", "cxd4", "Nxd4"])
        previous = STARTING_FEN
        for record in game.moves:
            engine = RulesEngine(previous)
            assert engine.apply_move({"san": record.san}).fen == record.fen
            previous = record.fen
        assert game.fen == game.moves[-1].fen

    def test_wrong_turn_is_rejected_without_changes(self, game_service: GameService):
        game = start_game(game_service)
        with pytest.raises(InvalidStateError) as exc_info:
            game_service.move(game.id, "bob", {"san": "e5"})
        assert exc_info.value.context["turn"] == "w"
        after = game_service.get(game.id)
        assert after.moves == []
        assert after.fen == STARTING_FEN

    def test_turn_comes_from_position_not_cached_field(self, game_service: GameService, store):
        game = start_game(game_service)
        doc = store.get(GAMES, game.id)
        store.replace(GAMES, game.id, {**doc.data, "turn": "b"}, doc.version)
        with pytest.raises(InvalidStateError):
            game_service.move(game.id, "bob", {"san": "e5"})
        assert game_service.move(game.id, "alice", {"san": "e4"}).turn == "b"

    def test_spectator_cannot_move(self, game_service: GameService):
        game = start_game(game_service)
        with pytest.raises(UnauthorizedError):
            game_service.move(game.id, "carol", {"san": "e4"})

    def test_move_on_waiting_game(self, game_service: GameService):
        game = game_service.create("alice")
        with pytest.raises(InvalidStateError) as exc_info:
            game_service.move(game.id, "alice", {"san": "e4"})
        assert exc_info.value.context["status"] == "waiting"

    def test_illegal_move_carries_board(self, game_service: GameService):
        game = start_game(game_service)
        with pytest.raises(IllegalMoveError) as exc_info:
            game_service.move(game.id, "alice", {"from": "e2", "to": "e5"})
        assert exc_info.value.board.startswith("r n b q k b n r")
        assert exc_info.value.fen == STARTING_FEN
        assert game_service.get(game.id).moves == []

    def test_stale_write_is_a_conflict(self, game_service: GameService):
        game = start_game(game_service)
        stale = game_service.get(game.id)
        game_service.move(game.id, "alice", {"san": "e4"})
        # A request that read before e4 landed still thinks it is white's move
        with patch.object(game_service, "_load", return_value=(stale, 2)):
            with pytest.raises(ConflictError):
                game_service.move(game.id, "alice", {"san": "d4"})
        assert [m.san for m in game_service.get(game.id).moves] == ["e4"]

    def test_client_clock_is_stored(self, game_service: GameService):
        game = start_game(game_service)
        game = game_service.move(game.id, "alice", {"san": "e4"}, time_left={"w": 291.5})
        assert game.time_left.w == 291.5
        assert game.time_left.b == 300

    def test_legal_moves(self, game_service: GameService):
        game = start_game(game_service)
        view = game_service.legal_moves(game.id)
        assert view.turn == "w"
        assert "Nf3" in view.moves
        assert len(view.verbose) == 20


class TestTermination:

    def test_white_checkmate(self, game_service: GameService, broker):
        game = play(game_service, start_game(game_service), SCHOLARS_MATE)
        assert game.status == GameStatus.FINISHED
        assert game.winner == "alice"
        assert game.win_reason == "checkmate"
        assert game.game_state.in_checkmate

        with pytest.raises(InvalidStateError):
            game_service.move(game.id, "bob", {"san": "Ke7"})
        assert len(game_service.get(game.id).moves) == len(SCHOLARS_MATE)

        end = broker.history(event="gameEnd")
        assert len(end) == 1
        assert end[0]["payload"]["data"]["winner"] == "alice"

    def test_black_checkmate(self, game_service: GameService):
        game = play(game_service, start_game(game_service), FOOLS_MATE)
        assert game.winner == "bob"
        assert game.win_reason == "checkmate"

    def test_stalemate(self, game_service: GameService, store):
        game = insert_position(store, "7k/5Q2/8/6K1/8/8/8/8 w - - 0 1")
        game = game_service.move(game.id, "alice", {"san": "Kg6"})
        assert game.status == GameStatus.FINISHED
        assert game.winner is None
        assert game.win_reason == "stalemate"
        assert game.is_draw

    def test_insufficient_material(self, game_service: GameService, store):
        game = insert_position(store, "4k3/8/8/3p4/8/2N5/8/4K3 w - - 0 1")
        game = game_service.move(game.id, "alice", {"san": "Nxd5"})
        assert game.win_reason == "insufficientMaterial"
        assert game.winner is None

    def test_threefold_repetition(self, game_service: GameService):
        game = play(game_service, start_game(game_service), ["Nf3", "Nf6", "Ng1", "Ng8"] * 2)
        assert game.status == GameStatus.FINISHED
        assert game.win_reason == "threefold"

    def test_fifty_move_rule(self, game_service: GameService, store):
        game = insert_position(store, "4k3/8/8/8/8/8/4P3/R3K3 w - - 99 80")
        game = game_service.move(game.id, "alice", {"san": "Ra2"})
        assert game.win_reason == "fiftyMove"

    def test_resign(self, game_service: GameService):
        game = start_game(game_service)
        game = game_service.resign(game.id, "alice")
        assert game.winner == "bob"
        assert game.win_reason == "resignation"

    def test_resign_requires_player(self, game_service: GameService):
        game = start_game(game_service)
        with pytest.raises(UnauthorizedError):
            game_service.resign(game.id, "carol")

    def test_timeout(self, game_service: GameService):
        game = start_game(game_service)
        game = game_service.timeout(game.id, "bob", "w")
        assert game.winner == "bob"
        assert game.win_reason == "timeout"
        assert game.time_left.w == 0

    def test_timeout_bad_color(self, game_service: GameService):
        game = start_game(game_service)
        with pytest.raises(InvalidStateError):
            game_service.timeout(game.id, "bob", "x")

    def test_ranked_game_updates_ratings(self, game_service: GameService, user_service):
        user_service.create_user(UserModel(id="alice", username="alice", rating=1200))
        user_service.create_user(UserModel(id="bob", username="bob", rating=1200))
        game = start_game(game_service, game_type=GameType.RANKED)
        game = game_service.resign(game.id, "bob")

        assert game.rating_change == {"w": 16, "b": -16}
        assert user_service.get_user("alice").rating == 1216
        assert user_service.get_user("bob").rating == 1184

    def test_casual_game_leaves_ratings(self, game_service: GameService, user_service):
        user_service.create_user(UserModel(id="alice", username="alice", rating=1200))
        game = start_game(game_service)
        game = game_service.resign(game.id, "bob")
        assert game.rating_change is None
        assert user_service.get_user("alice").rating == 1200

    def test_publish_failure_does_not_undo_transition(self, store):
        publisher = MagicMock()
        publisher.publish.side_effect = RuntimeError("socket closed")
        service = GameService(store, NotificationService(publisher))
        game = service.create("alice")
        result = service.join(game.id, "bob")
        assert result.game.status == GameStatus.ACTIVE
        assert service.get(game.id).opponent == "bob"


class TestDrawOffers:

    def test_accept(self, game_service: GameService, broker):
        game = start_game(game_service)
        game_service.offer_draw(game.id, "alice")
        assert len(broker.history(event="drawOffer")) == 1

        game = game_service.respond_draw(game.id, "bob", accept=True)
        assert game.status == GameStatus.FINISHED
        assert game.win_reason == "draw"
        assert game.winner is None
        assert game.current_draw_offer is None
        assert game.draw_offers[-1].status == "accepted"

    def test_decline(self, game_service: GameService, broker):
        game = start_game(game_service)
        game_service.offer_draw(game.id, "alice")
        game = game_service.respond_draw(game.id, "bob", accept=False)
        assert game.status == GameStatus.ACTIVE
        assert game.current_draw_offer is None
        assert game.draw_offers[-1].status == "declined"
        assert len(broker.history(event="drawDeclined")) == 1

    def test_cannot_respond_to_own_offer(self, game_service: GameService):
        game = start_game(game_service)
        game_service.offer_draw(game.id, "alice")
        with pytest.raises(InvalidStateError):
            game_service.respond_draw(game.id, "alice", accept=True)

    def test_only_one_pending_offer(self, game_service: GameService):
        game = start_game(game_service)
        game_service.offer_draw(game.id, "alice")
        with pytest.raises(InvalidStateError):
            game_service.offer_draw(game.id, "bob")

    def test_respond_without_offer(self, game_service: GameService):
        game = start_game(game_service)
        with pytest.raises(InvalidStateError):
            game_service.respond_draw(game.id, "bob", accept=True)

    def test_racing_responses_apply_once(self, game_service: GameService):
        game = start_game(game_service)
        game_service.offer_draw(game.id, "alice")
        stale = game_service.get(game.id)
        game_service.respond_draw(game.id, "bob", accept=False)

        with patch.object(game_service, "_load", return_value=(stale, 3)):
            with pytest.raises(ConflictError):
                game_service.respond_draw(game.id, "bob", accept=True)
        after = game_service.get(game.id)
        assert after.status == GameStatus.ACTIVE
        assert [e.status for e in after.draw_offers] == ["declined"]

    def test_pending_offer_lapses_on_resignation(self, game_service: GameService):
        game = start_game(game_service)
        game_service.offer_draw(game.id, "alice")
        game = game_service.resign(game.id, "bob")
        assert game.current_draw_offer is None
        assert game.draw_offers[-1].status == "declined"


class TestTournamentGames:
    SCHEDULED = datetime(2024, 3, 1, 12, 0, 0)

    def make_game(self, game_service: GameService) -> GameModel:
        return game_service.create_tournament_game("alice", "bob", "t1", 1, 0, self.SCHEDULED)

    def test_outsider_is_rejected(self, game_service: GameService):
        game = self.make_game(game_service)
        with pytest.raises(UnauthorizedError):
            game_service.join(game.id, "carol", now=self.SCHEDULED)

    def test_too_early(self, game_service: GameService):
        game = self.make_game(game_service)
        with pytest.raises(InvalidStateError) as exc_info:
            game_service.join(game.id, "alice", now=self.SCHEDULED - timedelta(minutes=7, seconds=30))
        assert exc_info.value.context["minutes_until_start"] == 8

    def test_both_players_must_confirm(self, game_service: GameService, broker):
        game = self.make_game(game_service)
        first = game_service.join(game.id, "alice", now=self.SCHEDULED)
        assert first.outcome == "ready"
        assert first.game.status == GameStatus.WAITING
        assert first.game.ready_players == ["alice"]

        again = game_service.join(game.id, "alice", now=self.SCHEDULED + timedelta(minutes=1))
        assert again.game.ready_players == ["alice"]

        second = game_service.join(game.id, "bob", now=self.SCHEDULED + timedelta(minutes=2))
        assert second.outcome == "started"
        assert second.game.status == GameStatus.ACTIVE
        assert len(broker.history(event="gameStart")) == 1

    def test_no_show_forfeit(self, game_service: GameService):
        game = self.make_game(game_service)
        result = game_service.join(game.id, "bob", now=self.SCHEDULED + timedelta(minutes=6))
        assert result.outcome == "no-show-win"
        assert result.game.status == GameStatus.FINISHED
        assert result.game.winner == "bob"
        assert result.game.win_reason == "no-show"

    def test_late_arrival_loses_to_confirmed_opponent(self, game_service: GameService):
        game = self.make_game(game_service)
        game_service.join(game.id, "alice", now=self.SCHEDULED)
        result = game_service.join(game.id, "bob", now=self.SCHEDULED + timedelta(minutes=6))
        assert result.outcome == "no-show-loss"
        assert result.game.winner == "alice"

    def test_overdue_sweep(self, game_service: GameService):
        nobody = self.make_game(game_service)
        only_black = self.make_game(game_service)
        game_service.join(only_black.id, "bob", now=self.SCHEDULED)
        later = game_service.create_tournament_game("carol", "dave", "t1", 1, 1,
                                                    self.SCHEDULED + timedelta(hours=1))

        awarded = game_service.award_overdue_forfeits(now=self.SCHEDULED + timedelta(minutes=10))
        assert {g.id for g in awarded} == {nobody.id, only_black.id}
        assert game_service.get(nobody.id).winner == "alice"
        assert game_service.get(only_black.id).winner == "bob"
        assert game_service.get(only_black.id).win_reason == "forfeit-time"
        assert game_service.get(later.id).status == GameStatus.WAITING

    def test_finish_invokes_tournament_hook(self, game_service: GameService):
        hook = MagicMock()
        game_service.on_tournament_game_finished = hook
        game = self.make_game(game_service)
        game_service.join(game.id, "alice", now=self.SCHEDULED)
        game_service.join(game.id, "bob", now=self.SCHEDULED)
        finished = game_service.resign(game.id, "bob")
        hook.assert_called_once()
        assert hook.call_args[0][0].id == finished.id
