from typing import List, Optional

from fastapi import APIRouter, Depends, status

from chessarena.api.dependencies import get_current_user_id, get_game_service
from chessarena.models.game_model import GameModel
from chessarena.schemas import game_schemas
from chessarena.services.game_service import GameService, GameView, JoinResult, LegalMovesView

router = APIRouter()

@router.post("/", response_model=GameModel, status_code=status.HTTP_201_CREATED)
async def create_game_endpoint(
    game_in: game_schemas.GameCreate,
    user_id: str = Depends(get_current_user_id),
    games: GameService = Depends(get_game_service),
):
    return games.create(user_id, game_type=game_in.game_type, time_control=game_in.time_control)

@router.get("/", response_model=List[GameModel])
async def list_games_endpoint(
    status: Optional[str] = None,
    games: GameService = Depends(get_game_service),
):
    return games.list_games(status=status)

@router.get("/{game_id}", response_model=GameView)
async def get_game_endpoint(
    game_id: str,
    user_id: str = Depends(get_current_user_id),
    games: GameService = Depends(get_game_service),
):
    return games.get_view(game_id, user_id)

@router.get("/{game_id}/moves", response_model=LegalMovesView)
async def legal_moves_endpoint(game_id: str, games: GameService = Depends(get_game_service)):
    return games.legal_moves(game_id)

@router.post("/{game_id}/join", response_model=JoinResult)
async def join_game_endpoint(
    game_id: str,
    user_id: str = Depends(get_current_user_id),
    games: GameService = Depends(get_game_service),
):
    return games.join(game_id, user_id)

@router.post("/{game_id}/move", response_model=GameModel)
async def move_endpoint(
    game_id: str,
    move_in: game_schemas.MoveRequest,
    user_id: str = Depends(get_current_user_id),
    games: GameService = Depends(get_game_service),
):
    return games.move(game_id, user_id, move_in.to_spec(), time_left=move_in.time_left)

@router.post("/{game_id}/resign", response_model=GameModel)
async def resign_endpoint(
    game_id: str,
    user_id: str = Depends(get_current_user_id),
    games: GameService = Depends(get_game_service),
):
    return games.resign(game_id, user_id)

@router.post("/{game_id}/draw", response_model=GameModel)
async def offer_draw_endpoint(
    game_id: str,
    user_id: str = Depends(get_current_user_id),
    games: GameService = Depends(get_game_service),
):
    return games.offer_draw(game_id, user_id)

@router.post("/{game_id}/draw/respond", response_model=GameModel)
async def respond_draw_endpoint(
    game_id: str,
    response_in: game_schemas.DrawResponse,
    user_id: str = Depends(get_current_user_id),
    games: GameService = Depends(get_game_service),
):
    return games.respond_draw(game_id, user_id, response_in.accept)

@router.post("/{game_id}/timeout", response_model=GameModel)
async def timeout_endpoint(
    game_id: str,
    report_in: game_schemas.TimeoutReport,
    user_id: str = Depends(get_current_user_id),
    games: GameService = Depends(get_game_service),
):
    return games.timeout(game_id, user_id, report_in.loser_color)
