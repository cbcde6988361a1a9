from __future__ import annotations
from pydantic_settings import BaseSettings
from pydantic import Field

class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL")
    auth_jwks_url: str = Field(..., alias="AUTH_JWKS_URL")
    token_issuer: str = Field("authentication-svc", alias="TOKEN_ISSUER")

    service_name: str = Field("step-credit-svc", alias="SERVICE_NAME")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # "sql" (DATABASE_URL) or "memory" (single process, local runs)
    store_backend: str = Field("sql", alias="STORE_BACKEND")
    seed_defaults: bool = Field(default=True, alias="SEED_DEFAULTS")

    max_daily_steps: int = Field(100_000, alias="MAX_DAILY_STEPS")

    # per-user serialisation: "local" (asyncio) or "redis" (shared across instances)
    lock_backend: str = Field("local", alias="LOCK_BACKEND")
    lock_timeout_seconds: float = Field(5.0, alias="LOCK_TIMEOUT_SECONDS")
    conflict_retries: int = Field(3, alias="CONFLICT_RETRIES")

    # Redis
    redis_url: str = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")
    rl_enabled: bool = Field(default=True, alias="RL_ENABLED")
    rl_window_seconds: int = Field(default=60, alias="RL_WINDOW_SECONDS")
    rl_max_reqs: int = Field(default=30, alias="RL_MAX_REQS")

    # NATS
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_steps: str = Field("steps.recorded", alias="NATS_SUBJECT_STEPS")
    nats_subject_achievements: str = Field("achievements.unlocked", alias="NATS_SUBJECT_ACHIEVEMENTS")
    nats_subject_redemptions: str = Field("redemptions.updated", alias="NATS_SUBJECT_REDEMPTIONS")
    enable_nats_consumer: bool = Field(default=True, alias="ENABLE_NATS_CONSUMER")
    enable_nats_publisher: bool = Field(default=True, alias="ENABLE_NATS_PUBLISHER")

    # redemption expiry sweep
    enable_scheduler: bool = Field(default=True, alias="ENABLE_SCHEDULER")
    redemption_expiry_days: int = Field(30, alias="REDEMPTION_EXPIRY_DAYS")
    expiry_sweep_interval_sec: int = Field(3600, alias="EXPIRY_SWEEP_INTERVAL_SEC")

    cors_origins: str = Field(
        "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000,http://127.0.0.1:3000",
        alias="CORS_ORIGINS",
    )

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
