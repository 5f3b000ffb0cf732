import datetime as dt
from enum import Enum

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ScoringAdapter(Enum):
    HEURISTIC = "heuristic"
    LLM = "llm"


class GoogleCalendarConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GOOGLE_", env_file=".env", extra="ignore")

    client_id: str = ""
    client_secret: str = ""
    token_url: str = "https://oauth2.googleapis.com/token"
    api_url: str = "https://www.googleapis.com/calendar/v3"
    calendar_id: str = "primary"
    timeout: float = 30.0


class LLMConfig(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    api_key: str = Field(
        default="",
        validation_alias=AliasChoices(
            "OPENAI_API_KEY",
            "OPENROUTER_API_KEY",
        ),
    )
    base_url: str = Field(
        default="https://api.openai.com/v1",
        validation_alias=AliasChoices(
            "OPENAI_BASE_URL",
            "OPENROUTER_BASE_URL",
        ),
    )
    model: str = Field(
        default="gpt-4o",
        validation_alias=AliasChoices(
            "OPENROUTER_MODEL",
            "OPENAI_MODEL",
        ),
    )
    temperature: float = 0.7
    timeout: float = 30.0


class DatabaseConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DATABASE_", env_file=".env", extra="ignore")

    url: str = "sqlite:///slotsync.db"
    echo: bool = False


class SchedulingConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SCHEDULING_", env_file=".env", extra="ignore")

    # Default week for providers without stored weekly hours (Monday = 0).
    workday_start: dt.time = dt.time(9, 0)
    workday_end: dt.time = dt.time(17, 0)
    working_days: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])
    break_start: dt.time | None = None
    break_end: dt.time | None = None
    grid_window_days: int = 30
    # Days swept starting today, today included.
    sync_lookahead_days: int = Field(default=30, ge=1)
    utilization_window_days: int = 90
    underutilized_threshold: float = 50.0
    overutilized_threshold: float = 80.0
    scoring_adapter: ScoringAdapter = ScoringAdapter.HEURISTIC
    max_recommendations: int = 5


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    clinic_timezone: str = "America/New_York"
    google: GoogleCalendarConfig = Field(default_factory=lambda: GoogleCalendarConfig())
    llm: LLMConfig = Field(default_factory=lambda: LLMConfig())
    database: DatabaseConfig = Field(default_factory=lambda: DatabaseConfig())
    scheduling: SchedulingConfig = Field(default_factory=lambda: SchedulingConfig())
