"""
Chess rules adapter.

Wraps a python-chess board behind the small surface the game service needs.
Illegal input never raises out of ``apply_move``; it comes back as an
``IllegalMove`` value so callers branch on the result type.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional, Union

import chess

from chessarena.models.game_model import STARTING_FEN, GameStateFlags


@dataclass
class MoveResult:
    san: str
    from_square: str
    to_square: str
    piece: str
    flags: str
    fen: str = ""
    captured: Optional[str] = None
    promotion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IllegalMove:
    reason: str
    move: Dict[str, Any]


class RulesEngine:

    def __init__(self, fen: str = STARTING_FEN):
        self.board = chess.Board(fen)

    def load(self, fen: str) -> None:
        self.board = chess.Board(fen)

    @classmethod
    def replay(cls, sans: Iterable[str], start_fen: str = STARTING_FEN) -> "RulesEngine":
        """Rebuilds a board with its move stack so repetition can be detected."""
        engine = cls(start_fen)
        for san in sans:
            engine.board.push_san(san)
        return engine

    def turn(self) -> str:
        return "w" if self.board.turn == chess.WHITE else "b"

    def fen(self) -> str:
        return self.board.fen()

    def ascii(self) -> str:
        return str(self.board)

    def is_check(self) -> bool:
        return self.board.is_check()

    def is_checkmate(self) -> bool:
        return self.board.is_checkmate()

    def is_stalemate(self) -> bool:
        return self.board.is_stalemate()

    def is_insufficient_material(self) -> bool:
        return self.board.is_insufficient_material()

    def is_threefold_repetition(self) -> bool:
        return self.board.is_repetition(3)

    def is_fifty_moves(self) -> bool:
        return self.board.is_fifty_moves()

    def is_draw(self) -> bool:
        return (self.is_fifty_moves() or self.is_stalemate()
                or self.is_insufficient_material() or self.is_threefold_repetition())

    def state_flags(self) -> GameStateFlags:
        return GameStateFlags(
            in_check=self.is_check(),
            in_checkmate=self.is_checkmate(),
            in_stalemate=self.is_stalemate(),
            in_draw=self.is_draw(),
            insufficient_material=self.is_insufficient_material(),
            in_threefold_repetition=self.is_threefold_repetition(),
            fifty_move_rule=self.is_fifty_moves(),
        )

    def legal_moves(self, verbose: bool = False) -> List[Union[str, Dict[str, Any]]]:
        if not verbose:
            return [self.board.san(m) for m in self.board.legal_moves]
        return [self._describe(m).to_dict() for m in self.board.legal_moves]

    def _describe(self, move: chess.Move) -> MoveResult:
        board = self.board
        piece = board.piece_at(move.from_square)
        captured = None
        if board.is_en_passant(move):
            captured = "p"
        elif board.is_capture(move):
            captured = board.piece_at(move.to_square).symbol().lower()

        flags = ""
        if board.is_en_passant(move):
            flags += "e"
        elif captured:
            flags += "c"
        if piece.piece_type == chess.PAWN and abs(chess.square_rank(move.to_square) - chess.square_rank(move.from_square)) == 2:
            flags += "b"
        if move.promotion:
            flags += "p"
        if board.is_kingside_castling(move):
            flags += "k"
        elif board.is_queenside_castling(move):
            flags += "q"

        return MoveResult(
            san=board.san(move),
            from_square=chess.square_name(move.from_square),
            to_square=chess.square_name(move.to_square),
            piece=piece.symbol().lower(),
            flags=flags or "n",
            captured=captured,
            promotion=chess.piece_symbol(move.promotion) if move.promotion else None,
        )

    def _parse(self, spec: Dict[str, Any]) -> Union[chess.Move, IllegalMove]:
        if spec.get("san"):
            try:
                return self.board.parse_san(spec["san"])
            except ValueError as e:
                return IllegalMove(reason=str(e) or f"Invalid move: {spec['san']}", move=spec)

        origin, target = spec.get("from"), spec.get("to")
        if not origin or not target:
            return IllegalMove(reason="Move needs either 'san' or 'from' and 'to'", move=spec)
        try:
            from_square = chess.parse_square(origin)
            to_square = chess.parse_square(target)
        except ValueError:
            return IllegalMove(reason=f"Invalid square in move {origin}-{target}", move=spec)

        promotion = None
        symbol = spec.get("promotion")
        if symbol:
            if symbol.lower() not in ("q", "r", "b", "n"):
                return IllegalMove(reason=f"Invalid promotion piece: {symbol}", move=spec)
            promotion = chess.Piece.from_symbol(symbol.lower()).piece_type
        else:
            piece = self.board.piece_at(from_square)
            # Pawns reaching the last rank promote to a queen unless told otherwise
            if piece and piece.piece_type == chess.PAWN and chess.square_rank(to_square) in (0, 7):
                promotion = chess.QUEEN

        move = chess.Move(from_square, to_square, promotion=promotion)
        if move not in self.board.legal_moves:
            return IllegalMove(reason=f"Illegal move: {origin}{target}", move=spec)
        return move

    def apply_move(self, spec: Dict[str, Any]) -> Union[MoveResult, IllegalMove]:
        parsed = self._parse(spec)
        if isinstance(parsed, IllegalMove):
            return parsed
        result = self._describe(parsed)
        self.board.push(parsed)
        result.fen = self.board.fen()
        return result
