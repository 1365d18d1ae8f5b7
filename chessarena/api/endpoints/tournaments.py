from typing import List, Optional

from fastapi import APIRouter, Depends, status

from chessarena.api.dependencies import get_current_user_id, get_tournament_service
from chessarena.models.tournament_model import ParticipantModel, TournamentModel, TournamentStatus, TimeControlConfig
from chessarena.schemas import tournament_schemas
from chessarena.services.tournament_service import BracketView, TournamentService

router = APIRouter()

@router.post("/", response_model=TournamentModel, status_code=status.HTTP_201_CREATED)
async def create_tournament_endpoint(
    tournament_in: tournament_schemas.TournamentCreate,
    user_id: str = Depends(get_current_user_id),
    tournaments: TournamentService = Depends(get_tournament_service),
):
    data = tournament_in.model_dump(exclude={"open_registration", "time_control"})
    tournament = TournamentModel(
        **data,
        time_control=tournament_in.time_control or TimeControlConfig(),
        organizer=user_id,
        status=TournamentStatus.REGISTRATION if tournament_in.open_registration else TournamentStatus.UPCOMING,
    )
    return tournaments.create_tournament(tournament)

@router.get("/", response_model=List[TournamentModel])
async def list_tournaments_endpoint(
    status: Optional[str] = None,
    tournaments: TournamentService = Depends(get_tournament_service),
):
    return tournaments.list_tournaments(status=status)

@router.get("/{tournament_id}", response_model=TournamentModel)
async def get_tournament_endpoint(tournament_id: str, tournaments: TournamentService = Depends(get_tournament_service)):
    return tournaments.get_tournament(tournament_id)

@router.get("/{tournament_id}/leaderboard", response_model=List[ParticipantModel])
async def leaderboard_endpoint(tournament_id: str, tournaments: TournamentService = Depends(get_tournament_service)):
    return tournaments.leaderboard(tournament_id)

@router.get("/{tournament_id}/bracket", response_model=BracketView)
async def bracket_endpoint(tournament_id: str, tournaments: TournamentService = Depends(get_tournament_service)):
    return tournaments.get_bracket(tournament_id)

@router.post("/{tournament_id}/open", response_model=TournamentModel)
async def open_registration_endpoint(
    tournament_id: str,
    user_id: str = Depends(get_current_user_id),
    tournaments: TournamentService = Depends(get_tournament_service),
):
    return tournaments.open_registration(tournament_id, user_id)

@router.post("/{tournament_id}/register", response_model=TournamentModel)
async def register_endpoint(
    tournament_id: str,
    user_id: str = Depends(get_current_user_id),
    tournaments: TournamentService = Depends(get_tournament_service),
):
    return tournaments.register(tournament_id, user_id)

@router.delete("/{tournament_id}/register", response_model=TournamentModel)
async def unregister_endpoint(
    tournament_id: str,
    user_id: str = Depends(get_current_user_id),
    tournaments: TournamentService = Depends(get_tournament_service),
):
    return tournaments.unregister(tournament_id, user_id)

@router.put("/{tournament_id}/seeds", response_model=TournamentModel)
async def update_seeds_endpoint(
    tournament_id: str,
    seeds_in: tournament_schemas.SeedUpdate,
    user_id: str = Depends(get_current_user_id),
    tournaments: TournamentService = Depends(get_tournament_service),
):
    return tournaments.update_seeds(tournament_id, user_id, seeds_in.seeds)

@router.post("/{tournament_id}/start", response_model=TournamentModel)
async def start_tournament_endpoint(
    tournament_id: str,
    user_id: str = Depends(get_current_user_id),
    tournaments: TournamentService = Depends(get_tournament_service),
):
    return tournaments.start_tournament(tournament_id, user_id)

@router.post("/{tournament_id}/bye", response_model=TournamentModel)
async def award_bye_endpoint(
    tournament_id: str,
    bye_in: tournament_schemas.ByeRequest,
    user_id: str = Depends(get_current_user_id),
    tournaments: TournamentService = Depends(get_tournament_service),
):
    return tournaments.award_bye(tournament_id, user_id, bye_in.player_id)

@router.post("/{tournament_id}/advance", response_model=TournamentModel)
async def advance_round_endpoint(
    tournament_id: str,
    user_id: str = Depends(get_current_user_id),
    tournaments: TournamentService = Depends(get_tournament_service),
):
    return tournaments.advance_round(tournament_id, user_id)

@router.post("/{tournament_id}/reconcile")
async def reconcile_results_endpoint(tournament_id: str, tournaments: TournamentService = Depends(get_tournament_service)):
    return {"applied": tournaments.reconcile_results(tournament_id)}

@router.post("/{tournament_id}/cancel", response_model=TournamentModel)
async def cancel_tournament_endpoint(
    tournament_id: str,
    user_id: str = Depends(get_current_user_id),
    tournaments: TournamentService = Depends(get_tournament_service),
):
    return tournaments.cancel_tournament(tournament_id, user_id)
