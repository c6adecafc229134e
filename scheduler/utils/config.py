"""Runtime settings resolved from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


ENV_PREFIX = "SCHEDULER_"


class SettingsError(ValueError):
    """Raised when an environment override cannot be parsed."""


def _env(name: str) -> str | None:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_str(name: str, default: str) -> str:
    value = _env(name)
    return default if value is None else value


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise SettingsError(f"{ENV_PREFIX}{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise SettingsError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    lowered = value.lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise SettingsError(f"{ENV_PREFIX}{name} must be a boolean, got {value!r}")


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration.

    Tests derive isolated variants with ``dataclasses.replace`` rather than
    mutating environment variables.
    """

    app_name: str
    app_version: str
    log_level: str
    database_path: Path

    seed_synthetic_data_on_startup: bool
    synthetic_random_seed: int
    synthetic_seed_days: int

    candidate_start_offset_days: int
    candidate_horizon_days: int
    candidate_max_slots: int
    default_base_postcode: str
    default_coverage_radius_km: float

    max_jobs_per_day: int
    workload_underload_ratio: float
    workload_overload_ratio: float

    cancellation_lookback_days: int
    cancellation_default_base_rate: float
    cancellation_model_min_training_rows: int
    cancellation_model_max_iter: int
    cancellation_model_random_state: int
    cancellation_model_version: str

    default_minimum_margin_percent: float

    route_solver_max_time_seconds: float
    route_cp_sat_workers: int
    route_solver_random_seed: int
    route_day_start: str

    scoring_max_workers: int
    presentation_max_slots: int
    presentation_candidate_pool: int
    flexibility_prompt_threshold: float

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            app_name=_env_str("APP_NAME", "Field Service Scheduler"),
            app_version=_env_str("APP_VERSION", "1.0.0"),
            log_level=_env_str("LOG_LEVEL", "INFO"),
            database_path=Path(_env_str("DATABASE_PATH", "data/scheduler.db")),
            seed_synthetic_data_on_startup=_env_bool("SEED_ON_STARTUP", True),
            synthetic_random_seed=_env_int("SYNTHETIC_RANDOM_SEED", 42),
            synthetic_seed_days=_env_int("SYNTHETIC_SEED_DAYS", 120),
            candidate_start_offset_days=_env_int("CANDIDATE_START_OFFSET_DAYS", 1),
            candidate_horizon_days=_env_int("CANDIDATE_HORIZON_DAYS", 14),
            candidate_max_slots=_env_int("CANDIDATE_MAX_SLOTS", 20),
            default_base_postcode=_env_str("DEFAULT_BASE_POSTCODE", "EC1A 1AA"),
            default_coverage_radius_km=_env_float("DEFAULT_COVERAGE_RADIUS_KM", 20.0),
            max_jobs_per_day=_env_int("MAX_JOBS_PER_DAY", 7),
            workload_underload_ratio=_env_float("WORKLOAD_UNDERLOAD_RATIO", 0.5),
            workload_overload_ratio=_env_float("WORKLOAD_OVERLOAD_RATIO", 1.2),
            cancellation_lookback_days=_env_int("CANCELLATION_LOOKBACK_DAYS", 90),
            cancellation_default_base_rate=_env_float("CANCELLATION_DEFAULT_BASE_RATE", 0.08),
            cancellation_model_min_training_rows=_env_int("CANCELLATION_MODEL_MIN_ROWS", 50),
            cancellation_model_max_iter=_env_int("CANCELLATION_MODEL_MAX_ITER", 500),
            cancellation_model_random_state=_env_int("CANCELLATION_MODEL_RANDOM_STATE", 42),
            cancellation_model_version=_env_str("CANCELLATION_MODEL_VERSION", "v1"),
            default_minimum_margin_percent=_env_float("MINIMUM_MARGIN_PERCENT", 15.0),
            route_solver_max_time_seconds=_env_float("ROUTE_SOLVER_MAX_TIME_SECONDS", 5.0),
            route_cp_sat_workers=_env_int("ROUTE_CP_SAT_WORKERS", 4),
            route_solver_random_seed=_env_int("ROUTE_SOLVER_RANDOM_SEED", 42),
            route_day_start=_env_str("ROUTE_DAY_START", "08:30"),
            scoring_max_workers=_env_int("SCORING_MAX_WORKERS", 20),
            presentation_max_slots=_env_int("PRESENTATION_MAX_SLOTS", 4),
            presentation_candidate_pool=_env_int("PRESENTATION_CANDIDATE_POOL", 20),
            flexibility_prompt_threshold=_env_float("FLEXIBILITY_PROMPT_THRESHOLD", 0.10),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings for the running process."""
    return Settings.from_env()
