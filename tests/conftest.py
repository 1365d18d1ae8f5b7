import random
from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from chessarena.core.database import init_db, make_engine
from chessarena.models.user_model import UserModel
from chessarena.services.game_service import GameService
from chessarena.services.notification_service import InMemoryBroker, NotificationService
from chessarena.services.rating_service import RatingService
from chessarena.services.reaper_service import ReaperService
from chessarena.services.store import DocumentStore
from chessarena.services.tournament_service import TournamentService
from chessarena.services.user_service import UserService

NOW = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return DocumentStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def notifications(broker):
    return NotificationService(broker)


@pytest.fixture
def user_service(store):
    return UserService(store)


@pytest.fixture
def rating_service(user_service):
    return RatingService(user_service, k_factor=32)


@pytest.fixture
def game_service(store, notifications, rating_service, user_service):
    return GameService(store, notifications, rating_service=rating_service, user_service=user_service)


@pytest.fixture
def tournament_service(store, notifications, game_service, user_service):
    service = TournamentService(store, notifications, game_service, user_service,
                                tiebreak="higher_seed", rng=random.Random(7), clock=lambda: NOW)
    game_service.on_tournament_game_finished = service.record_game_result
    return service


@pytest.fixture
def reaper_service(store):
    return ReaperService(store, threshold_hours=24)


@pytest.fixture
def make_users(user_service):
    """Creates users p1..pN with strictly decreasing ratings (p1 strongest)."""
    def _make(count, base_rating=2000):
        users = []
        for i in range(1, count + 1):
            user = UserModel(id=f"p{i}", username=f"player{i}", rating=base_rating - 10 * i)
            users.append(user_service.create_user(user))
        return [u.id for u in users]
    return _make
