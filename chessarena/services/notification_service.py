import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, str, Dict[str, Any]], None]


class Publisher(Protocol):
    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class InMemoryBroker:
    """Fan-out to in-process subscribers, keeping the last ``history_size`` events."""

    def __init__(self, history_size: int = 1000):
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, channel: str, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.setdefault(channel, []).append(callback)

    def unsubscribe(self, channel: str, callback: Subscriber) -> None:
        with self._lock:
            callbacks = self._subscribers.get(channel, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._history.append({"channel": channel, "event": event, "payload": payload})
            callbacks = list(self._subscribers.get(channel, []))
        for callback in callbacks:
            try:
                callback(channel, event, payload)
            except Exception:
                logger.exception("Subscriber on %s failed handling %s", channel, event)

    def history(self, channel: Optional[str] = None, event: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            entries = list(self._history)
        return [
            e for e in entries
            if (channel is None or e["channel"] == channel) and (event is None or e["event"] == event)
        ]


def game_channel(game_id: str) -> str:
    return f"game-{game_id}"


def user_channel(user_id: str) -> str:
    return f"user-{user_id}"


class NotificationService:
    """Best-effort event gateway. Delivery problems are logged, never raised."""

    def __init__(self, publisher: Optional[Publisher] = None):
        self.publisher = publisher if publisher is not None else InMemoryBroker()

    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        payload = dict(payload, type=event, timestamp=datetime.utcnow().isoformat(), event_id=str(uuid4()))
        try:
            self.publisher.publish(channel, event, payload)
        except Exception:
            logger.exception("Failed to publish %s on %s", event, channel)

    def _emit(self, channel: str, event: str, entity_id: str, message: str,
              data: Optional[Dict[str, Any]] = None) -> None:
        self.publish(channel, event, {"id": entity_id, "message": message, "data": data or {}})

    # Game events

    def game_start(self, game_id: str, white: str, black: str) -> None:
        self._emit(game_channel(game_id), "gameStart", game_id, "Game started",
                   {"white": white, "black": black})

    def move(self, game_id: str, move: Dict[str, Any], fen: str, turn: str,
             game_state: Dict[str, Any], time_left: Dict[str, Any]) -> None:
        self._emit(game_channel(game_id), "move", game_id, f"Move {move.get('san')}", {
            "move": move,
            "fen": fen,
            "turn": turn,
            "gameState": game_state,
            "timeLeft": time_left,
        })

    def game_end(self, game_id: str, winner: Optional[str], reason: str,
                 rating_change: Optional[Dict[str, int]] = None) -> None:
        message = f"Game over: {reason}" if winner is None else f"Game over: {winner} wins by {reason}"
        self._emit(game_channel(game_id), "gameEnd", game_id, message, {
            "winner": winner,
            "reason": reason,
            "ratingChange": rating_change,
        })

    def draw_offer(self, game_id: str, offered_by: str) -> None:
        self._emit(game_channel(game_id), "drawOffer", game_id, "Draw offered", {"offeredBy": offered_by})

    def draw_declined(self, game_id: str, declined_by: str) -> None:
        self._emit(game_channel(game_id), "drawDeclined", game_id, "Draw declined", {"declinedBy": declined_by})

    # Tournament events, one per participant channel

    def registration_confirmed(self, tournament_id: str, name: str, player_id: str) -> None:
        self._emit(user_channel(player_id), "registration_confirmed", tournament_id,
                   f"You are registered for {name}", {"tournamentId": tournament_id})

    def registration_cancelled(self, tournament_id: str, name: str, player_id: str) -> None:
        self._emit(user_channel(player_id), "registration_cancelled", tournament_id,
                   f"Your registration for {name} was cancelled", {"tournamentId": tournament_id})

    def tournament_starting(self, tournament_id: str, name: str, player_ids: List[str],
                            start_date: Optional[datetime]) -> None:
        for player_id in player_ids:
            self._emit(user_channel(player_id), "tournament_starting", tournament_id,
                       f"{name} is starting soon", {
                           "tournamentId": tournament_id,
                           "startDate": start_date.isoformat() if start_date else None,
                       })

    def tournament_started(self, tournament_id: str, name: str, player_ids: List[str], total_rounds: int) -> None:
        for player_id in player_ids:
            self._emit(user_channel(player_id), "tournament_started", tournament_id,
                       f"{name} has started", {"tournamentId": tournament_id, "totalRounds": total_rounds})

    def round_advanced(self, tournament_id: str, name: str, player_ids: List[str], round_number: int) -> None:
        for player_id in player_ids:
            self._emit(user_channel(player_id), "round_advanced", tournament_id,
                       f"Round {round_number} of {name} has begun",
                       {"tournamentId": tournament_id, "round": round_number})

    def round_completed(self, tournament_id: str, name: str, organizer: str, round_number: int) -> None:
        self._emit(user_channel(organizer), "round_completed", tournament_id,
                   f"Round {round_number} of {name} is decided and ready to advance",
                   {"tournamentId": tournament_id, "round": round_number})

    def match_scheduled(self, tournament_id: str, player_id: str, game_id: str, opponent: str,
                        color: str, round_number: int, scheduled_time: Optional[datetime]) -> None:
        self._emit(user_channel(player_id), "match_scheduled", tournament_id,
                   f"Your round {round_number} game is scheduled", {
                       "tournamentId": tournament_id,
                       "gameId": game_id,
                       "opponent": opponent,
                       "color": color,
                       "round": round_number,
                       "scheduledTime": scheduled_time.isoformat() if scheduled_time else None,
                   })

    def match_reminder(self, tournament_id: str, player_id: str, game_id: str,
                       scheduled_time: Optional[datetime]) -> None:
        self._emit(user_channel(player_id), "match_reminder", tournament_id,
                   "Your tournament game starts soon", {
                       "tournamentId": tournament_id,
                       "gameId": game_id,
                       "scheduledTime": scheduled_time.isoformat() if scheduled_time else None,
                   })

    def tournament_completed(self, tournament_id: str, name: str, player_ids: List[str],
                             winner: Optional[str], final_ranks: Dict[str, Optional[int]]) -> None:
        for player_id in player_ids:
            self._emit(user_channel(player_id), "tournament_completed", tournament_id,
                       f"{name} has finished", {
                           "tournamentId": tournament_id,
                           "winner": winner,
                           "finalRank": final_ranks.get(player_id),
                       })
