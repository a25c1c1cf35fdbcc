from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./retro_board.db"
    app_env: str = "development"
    log_level: str = "INFO"
    public_base_url: str = "http://localhost:8000"
    retro_route: str = "/retrospective"
    planning_route: str = "/sprint-planning"
    session_days: int = 14
    # Participants without a ping for this long are reported offline.
    stale_after_seconds: float = 12.0
    presence_sweep_seconds: float = 5.0
    chat_history_limit: int = 200
    # None waits for the join URL forever.
    join_url_timeout: Optional[float] = None


settings = Settings()
