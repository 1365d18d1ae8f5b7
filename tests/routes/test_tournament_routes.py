import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient

from chessarena.api.dependencies import get_game_service, get_tournament_service
from chessarena.core.errors import NotFoundError
from chessarena.main import app
from chessarena.services.tournament_service import TournamentService

ORGANIZER = {"X-User-Id": "org"}


@pytest.fixture
def client(tournament_service: TournamentService, game_service):
    app.dependency_overrides[get_tournament_service] = lambda: tournament_service
    app.dependency_overrides[get_game_service] = lambda: game_service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def mock_tournament_service():
    mock = MagicMock(spec=TournamentService)
    app.dependency_overrides[get_tournament_service] = lambda: mock
    yield mock
    app.dependency_overrides.clear()


def create_open_tournament(client: TestClient, **fields) -> str:
    payload = {"name": "Friday Blitz", "min_participants": 2, "open_registration": True}
    payload.update(fields)
    response = client.post("/api/tournaments/", json=payload, headers=ORGANIZER)
    assert response.status_code == 201
    return response.json()["id"]


class TestTournamentRoutes:

    def test_create(self, client: TestClient):
        response = client.post("/api/tournaments/", json={"name": "Autumn Swiss", "type": "swiss"}, headers=ORGANIZER)
        assert response.status_code == 201
        body = response.json()
        assert body["organizer"] == "org"
        assert body["status"] == "upcoming"
        assert body["type"] == "swiss"
        assert body["time_control"] == {"initial": 600, "increment": 5}

    def test_create_validates_capacity(self, client: TestClient):
        response = client.post("/api/tournaments/", json={"name": "Broken", "min_participants": 8,
                                                          "max_participants": 4}, headers=ORGANIZER)
        assert response.status_code == 422

    def test_open_registration(self, client: TestClient):
        tournament_id = client.post("/api/tournaments/", json={"name": "Later Cup"}, headers=ORGANIZER).json()["id"]
        response = client.post(f"/api/tournaments/{tournament_id}/open", headers=ORGANIZER)
        assert response.json()["status"] == "registration"

        forbidden = client.post(f"/api/tournaments/{tournament_id}/cancel", headers={"X-User-Id": "p1"})
        assert forbidden.status_code == 403

    def test_register_and_unregister(self, client: TestClient):
        tournament_id = create_open_tournament(client)
        response = client.post(f"/api/tournaments/{tournament_id}/register", headers={"X-User-Id": "p1"})
        assert [p["player"] for p in response.json()["participants"]] == ["p1"]

        again = client.post(f"/api/tournaments/{tournament_id}/register", headers={"X-User-Id": "p1"})
        assert again.status_code == 400

        response = client.delete(f"/api/tournaments/{tournament_id}/register", headers={"X-User-Id": "p1"})
        assert response.json()["participants"] == []

    def test_start_and_bracket(self, client: TestClient, make_users):
        players = make_users(4)
        tournament_id = create_open_tournament(client)
        for player_id in players:
            client.post(f"/api/tournaments/{tournament_id}/register", headers={"X-User-Id": player_id})

        client.put(f"/api/tournaments/{tournament_id}/seeds", json={"seeds": {"p3": 1}}, headers=ORGANIZER)
        started = client.post(f"/api/tournaments/{tournament_id}/start", headers=ORGANIZER)
        assert started.status_code == 200
        assert started.json()["status"] == "active"
        assert started.json()["current_round"] == 1

        bracket = client.get(f"/api/tournaments/{tournament_id}/bracket").json()
        assert len(bracket["rounds"][0]["games"]) == 2
        assert len(bracket["games"]) == 2
        assert bracket["rounds"][0]["games"][0]["white"] == "p3"

        leaderboard = client.get(f"/api/tournaments/{tournament_id}/leaderboard").json()
        assert len(leaderboard) == 4

        early = client.post(f"/api/tournaments/{tournament_id}/advance", headers=ORGANIZER)
        assert early.status_code == 400
        assert early.json()["context"]["round"] == 1

    def test_start_by_outsider(self, client: TestClient):
        tournament_id = create_open_tournament(client)
        response = client.post(f"/api/tournaments/{tournament_id}/start", headers={"X-User-Id": "p1"})
        assert response.status_code == 403

    def test_unknown_tournament(self, client: TestClient):
        assert client.get("/api/tournaments/missing").status_code == 404

    def test_list_by_status(self, client: TestClient):
        create_open_tournament(client)
        client.post("/api/tournaments/", json={"name": "Later Cup"}, headers=ORGANIZER)
        response = client.get("/api/tournaments/", params={"status": "registration"})
        assert [t["name"] for t in response.json()] == ["Friday Blitz"]


class TestTournamentRoutesWithMocks:

    def test_reconcile(self, mock_tournament_service: MagicMock):
        mock_tournament_service.reconcile_results.return_value = 2
        response = TestClient(app).post("/api/tournaments/t1/reconcile")
        assert response.status_code == 200
        assert response.json() == {"applied": 2}
        mock_tournament_service.reconcile_results.assert_called_once_with("t1")

    def test_award_bye_unknown_tournament(self, mock_tournament_service: MagicMock):
        mock_tournament_service.award_bye.side_effect = NotFoundError("Tournament not found")
        response = TestClient(app).post("/api/tournaments/t1/bye", json={"player_id": "p9"}, headers=ORGANIZER)
        assert response.status_code == 404
        mock_tournament_service.award_bye.assert_called_once_with("t1", "org", "p9")
