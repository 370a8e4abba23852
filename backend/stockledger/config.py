import logging
import os
from typing import Mapping

from pydantic import BaseModel, Field, field_validator

ENV_VARS = {
    "database_url": "DATABASE_URL",
    "approval_required": "STOCKLEDGER_APPROVAL_REQUIRED",
    "default_reservation_ttl_minutes": "STOCKLEDGER_DEFAULT_RESERVATION_TTL_MINUTES",
    "sweep_enabled": "STOCKLEDGER_SWEEP_ENABLED",
    "sweep_interval_seconds": "STOCKLEDGER_SWEEP_INTERVAL_SECONDS",
    "sweep_batch_size": "STOCKLEDGER_SWEEP_BATCH_SIZE",
    "lock_timeout_seconds": "STOCKLEDGER_LOCK_TIMEOUT_SECONDS",
    "log_level": "STOCKLEDGER_LOG_LEVEL",
    "log_json": "STOCKLEDGER_LOG_JSON",
}


class Settings(BaseModel):
    database_url: str = "sqlite:///./stockledger.db"
    approval_required: bool = False
    default_reservation_ttl_minutes: int | None = Field(default=None, gt=0)
    sweep_enabled: bool = True
    sweep_interval_seconds: float = Field(60.0, gt=0)
    sweep_batch_size: int | None = Field(default=None, gt=0)
    lock_timeout_seconds: float = Field(10.0, gt=0)
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        environ = os.environ if environ is None else environ
        values = {field: environ[var] for field, var in ENV_VARS.items() if environ.get(var, "").strip()}
        return cls(**values)


settings = Settings.from_env()
