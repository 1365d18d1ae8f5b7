from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./chessarena.db"
    LOG_LEVEL: str = "INFO"

    # Stale-game reaper
    STALE_GAME_HOURS: int = 24
    REAPER_INTERVAL_SECONDS: int = 3600

    # Tournament scheduling
    FORFEIT_GRACE_MINUTES: int = 5
    MAINTENANCE_INTERVAL_SECONDS: int = 60
    TOURNAMENT_FIRST_GAME_DELAY_MINUTES: int = 10
    TOURNAMENT_GAME_STAGGER_MINUTES: int = 5
    REMINDER_LEAD_MINUTES: int = 30
    ELIMINATION_TIEBREAK: str = "random" # "random" or "higher_seed"

    # Games and ratings
    DEFAULT_TIME_SECONDS: int = 300
    DEFAULT_RATING: int = 1200
    ELO_K_FACTOR: int = 32

    STORE_MAX_RETRIES: int = 5

    class Config:
        env_file = ".env"

settings = Settings()
