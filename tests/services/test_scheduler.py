import asyncio
from datetime import datetime
from unittest.mock import MagicMock

from chessarena.api.dependencies import Services
from chessarena.models.game_model import GameModel
from chessarena.services.scheduler import start_background_jobs, stop_background_jobs


class TestBackgroundJobs:

    def test_failing_run_does_not_stop_the_loop(self):
        calls = []

        def flaky():
            calls.append(datetime.utcnow())
            if len(calls) == 1:
                raise RuntimeError("database is locked")

        async def scenario():
            tasks = start_background_jobs([(flaky, 0.01, "flaky")])
            await asyncio.sleep(0.2)
            await stop_background_jobs(tasks)
            return tasks

        tasks = asyncio.run(scenario())
        assert len(calls) >= 2
        assert all(task.done() for task in tasks)


class TestServicesWiring:

    def test_tournament_hook_is_wired(self, store):
        services = Services(store)
        assert services.games.on_tournament_game_finished == services.tournaments.record_game_result

    def test_maintenance_runs_every_sweep(self, store):
        services = Services(store)
        services.games = MagicMock()
        services.tournaments = MagicMock()
        services.run_maintenance()
        services.games.award_overdue_forfeits.assert_called_once_with()
        services.tournaments.notify_tournaments_starting.assert_called_once_with()
        services.tournaments.send_match_reminders.assert_called_once_with()

    def test_default_publisher_keeps_history(self, store):
        services = Services(store)
        game = services.games.create("alice")
        services.games.join(game.id, "bob")
        assert isinstance(services.games.get(game.id), GameModel)
        assert len(services.notifications.publisher.history(event="gameStart")) == 1
