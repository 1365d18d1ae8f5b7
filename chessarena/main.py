import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from chessarena.api.dependencies import get_services
from chessarena.api.endpoints import games as game_endpoints
from chessarena.api.endpoints import tournaments as tournament_endpoints
from chessarena.core.config import settings
from chessarena.core.database import init_db
from chessarena.core.errors import (
    ChessArenaError,
    ConflictError,
    IllegalMoveError,
    InvalidStateError,
    NotFoundError,
    StoreFailureError,
    UnauthorizedError,
)
from chessarena.services.scheduler import start_background_jobs, stop_background_jobs

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Chess Arena API")

# Include routers
app.include_router(game_endpoints.router, prefix="/api/games", tags=["Games"])
app.include_router(tournament_endpoints.router, prefix="/api/tournaments", tags=["Tournaments"])

STATUS_CODES = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (IllegalMoveError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidStateError, status.HTTP_400_BAD_REQUEST),
    (UnauthorizedError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (StoreFailureError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


@app.exception_handler(ChessArenaError)
async def chess_arena_error_handler(request: Request, exc: ChessArenaError):
    code = next((c for cls, c in STATUS_CODES if isinstance(exc, cls)), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        body = {"code": exc.code, "message": "Internal server error", "context": {}}
    else:
        logger.debug("%s %s rejected: %s", request.method, request.url.path, exc)
        body = exc.to_dict()
    return JSONResponse(status_code=code, content=body)


@app.on_event("startup")
async def startup_event():
    init_db()
    services = get_services()
    app.state.background_jobs = start_background_jobs([
        (services.reaper.cleanup_stale_games, settings.REAPER_INTERVAL_SECONDS, "stale-game-reaper"),
        (services.run_maintenance, settings.MAINTENANCE_INTERVAL_SECONDS, "tournament-maintenance"),
    ])


@app.on_event("shutdown")
async def shutdown_event():
    await stop_background_jobs(getattr(app.state, "background_jobs", []))


@app.get("/")
async def read_root():
    return {"name": "Chess Arena API", "status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("chessarena.main:app", host="0.0.0.0", port=8000, reload=True)
