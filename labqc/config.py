from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LABQC_", env_file=".env", extra="ignore")

    database_url: str = Field(
        default="sqlite:///./labqc.db",
        description="SQLAlchemy database URL"
    )
    history_limit: int = Field(
        default=20,
        ge=1,
        description="Most recent reports fetched as Westgard history"
    )
    westgard_extended_rules: bool = Field(
        default=False,
        description="Also apply 2of3-2s, R-4s, 4-1s and 10x"
    )
    log_level: str = Field(default="INFO")
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
