from functools import lru_cache
from typing import List, Literal, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Experiment Engine"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # API
    API_V1_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Redis persistence; empty URL runs the engine purely in memory
    REDIS_URL: str = ""
    REDIS_PASSWORD: str = ""

    # Monitoring
    MONITOR_INTERVAL_SECONDS: float = 3600.0
    MONITOR_SWEEP_INTERVAL_SECONDS: float = 3600.0

    # Event stream and in-memory store
    EVENT_QUEUE_SIZE: int = 1000
    STORE_SHARDS: int = 16

    # Statistics
    STATS_BACKEND: Literal["approximation", "scipy"] = "approximation"
    DEFAULT_BASELINE_RATE: float = 0.05

    # CORS
    CORS_ORIGINS: Union[List[str], str] = []

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            # Handle both comma-separated and JSON array strings
            if v.strip().startswith("["):
                import json

                return json.loads(v)
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
