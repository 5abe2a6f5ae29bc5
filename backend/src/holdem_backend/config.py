from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field


ENV_PREFIX = "HOLDEM_"


class TimerSettings(BaseModel):
    observer_grace_ms: int = Field(default=300, ge=0)
    base_slot_ms: int = Field(default=80, ge=0)
    slot_jitter_ms: int = Field(default=30, ge=0)
    max_grace_ms: int = Field(default=1250, ge=0)
    overdue_delay_ms: int = Field(default=1000, ge=0)
    watchdog_interval_ms: int = Field(default=1000, gt=0)

    model_config = ConfigDict(extra="forbid")


class EngineSettings(BaseModel):
    default_big_blind: int = Field(default=20, gt=0)
    default_small_blind: int = Field(default=10, gt=0)
    turn_ms: int = Field(default=30_000, gt=0)
    skew_tolerance_ms: int = Field(default=250, ge=0)
    lock_timeout_ms: int = Field(default=2_000, gt=0)
    deal_seed: int | None = None
    bot_poll_interval_ms: int = Field(default=200, gt=0)
    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    host: str = "127.0.0.1"
    port: int = Field(default=8000, gt=0)
    timer: TimerSettings = TimerSettings()

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineSettings:
        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for name in (
            "turn_ms",
            "skew_tolerance_ms",
            "lock_timeout_ms",
            "deal_seed",
            "bot_poll_interval_ms",
            "log_level",
            "default_big_blind",
            "default_small_blind",
            "host",
            "port",
        ):
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        origins = environ.get(f"{ENV_PREFIX}CORS_ORIGINS")
        if origins:
            values["cors_origins"] = [origin.strip() for origin in origins.split(",") if origin.strip()]
        return cls.model_validate(values)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
