"""
Chess Arena error hierarchy.

Every error raised by the services derives from ChessArenaError so the HTTP
layer can map the whole family in one place.

Usage:
    from chessarena.core.errors import InvalidStateError

    try:
        game_service.move(game_id, user_id, {"san": "e4"})
    except InvalidStateError as e:
        logger.debug("Rejected move: %s (state=%s)", e.message, e.context)
"""

from typing import Any, Dict, Optional

__all__ = [
    "ChessArenaError",
    "ConflictError",
    "IllegalMoveError",
    "InvalidStateError",
    "NotFoundError",
    "StoreFailureError",
    "UnauthorizedError",
]


class ChessArenaError(Exception):
    """Base exception for all Chess Arena errors.

    Attributes:
        code: Machine-readable error code
        message: Human-readable description
        context: Extra fields the client can use to resynchronize
    """
    code: str = "CHESS_ARENA_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.code}] {self.message} ({ctx})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


class NotFoundError(ChessArenaError, LookupError):
    """A game, tournament or user id did not resolve."""
    code: str = "NOT_FOUND"


class InvalidStateError(ChessArenaError, ValueError):
    """Operation attempted in the wrong lifecycle state.

    The context should carry the entity's current state (e.g. ``status``,
    ``turn``) so the client can resynchronize.
    """
    code: str = "INVALID_STATE"


class IllegalMoveError(ChessArenaError, ValueError):
    """The rules engine rejected a move.

    Attributes:
        detail: Engine-provided reason
        board: ASCII snapshot of the position the move was tried against
    """
    code: str = "ILLEGAL_MOVE"

    def __init__(self, message: str, detail: str = "", board: str = "", fen: str = ""):
        super().__init__(message, context={"detail": detail, "board": board, "fen": fen})
        self.detail = detail
        self.board = board
        self.fen = fen


class UnauthorizedError(ChessArenaError, PermissionError):
    """Caller is not a participant, organizer or admin for the action."""
    code: str = "UNAUTHORIZED"


class ConflictError(ChessArenaError):
    """Lost a concurrency race; the client should re-fetch and retry."""
    code: str = "CONFLICT"


class StoreFailureError(ChessArenaError):
    """The underlying persistence layer failed; nothing was applied."""
    code: str = "STORE_FAILURE"
