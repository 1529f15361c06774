from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic.aliases import AliasChoices
from pydantic_settings import BaseSettings, SettingsConfigDict


BACKEND_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=BACKEND_DIR / ".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = Field(
        default="sqlite:///./timetable.db",
        validation_alias=AliasChoices("database_url", "DATABASE_URL"),
    )

    # Identity is issued elsewhere; we only decode bearer tokens to learn actor/school.
    jwt_secret_key: str = Field(
        default="change-me",
        validation_alias=AliasChoices("jwt_secret_key", "jwt_secret", "JWT_SECRET_KEY", "JWT_SECRET"),
    )
    jwt_algorithm: str = Field(default="HS256", validation_alias=AliasChoices("jwt_algorithm", "JWT_ALGORITHM"))

    # Runtime
    environment: str = Field(default="development", validation_alias=AliasChoices("environment", "ENVIRONMENT"))
    frontend_origin: str = Field(
        default="http://localhost:5173",
        validation_alias=AliasChoices("frontend_origin", "FRONTEND_ORIGIN"),
    )

    # Generation workers
    solver_workers: int = Field(default=2, ge=1, validation_alias=AliasChoices("solver_workers", "SOLVER_WORKERS"))
    solver_default_time_budget_seconds: float = Field(
        default=20.0,
        gt=0,
        validation_alias=AliasChoices("solver_default_time_budget_seconds", "SOLVER_DEFAULT_TIME_BUDGET_SECONDS"),
    )
    solver_max_time_budget_seconds: float = Field(
        default=120.0,
        gt=0,
        validation_alias=AliasChoices("solver_max_time_budget_seconds", "SOLVER_MAX_TIME_BUDGET_SECONDS"),
    )
    solver_default_max_iterations: int = Field(
        default=5000,
        ge=0,
        validation_alias=AliasChoices("solver_default_max_iterations", "SOLVER_DEFAULT_MAX_ITERATIONS"),
    )
    job_progress_step: float = Field(
        default=0.05,
        gt=0,
        le=1,
        validation_alias=AliasChoices("job_progress_step", "JOB_PROGRESS_STEP"),
    )

    @field_validator("frontend_origin")
    @classmethod
    def _normalize_frontend_origin(cls, v: str) -> str:
        # Starlette CORS expects the Origin to match exactly (no trailing slash).
        return v.strip().rstrip("/")

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, v: str) -> str:
        return (v or "development").strip().lower()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def effective_max_time_budget(self) -> float:
        # Keep production workers from being pinned by one oversized request.
        if self.is_production:
            return min(float(self.solver_max_time_budget_seconds), 30.0)
        return float(self.solver_max_time_budget_seconds)


settings = Settings()
