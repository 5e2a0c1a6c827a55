# config.py
# Engine configuration, read from the environment (and a .env file if present).

import os
from typing import Literal

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3.5-haiku"


class EngineConfig(BaseModel):
    """
    Settings for one engine instance.

    Every field maps to an environment variable:
        OPENROUTER_API_KEY            api_key
        PLAN_HEALER_BASE_URL          base_url
        PLAN_HEALER_MODEL             model
        PLAN_HEALER_MAX_ATTEMPTS      max_attempts
        PLAN_HEALER_ON_UNRECOVERABLE  on_unrecoverable ("fail" | "retry")
        PLAN_HEALER_PERMISSIONS       permissions_path (JSON permission file)
        PLAN_HEALER_LOG_LEVEL         log_level
    """

    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    max_attempts: int = Field(default=3, ge=1)
    on_unrecoverable: Literal["fail", "retry"] = "fail"
    permissions_path: str | None = None
    log_level: str = "WARNING"

    @field_validator("on_unrecoverable", "log_level", mode="before")
    @classmethod
    def _normalize_case(cls, value, info):
        if not isinstance(value, str):
            return value
        return value.strip().lower() if info.field_name == "on_unrecoverable" else value.strip().upper()

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "EngineConfig":
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))

        values = {
            "api_key": os.getenv("OPENROUTER_API_KEY"),
            "base_url": os.getenv("PLAN_HEALER_BASE_URL"),
            "model": os.getenv("PLAN_HEALER_MODEL"),
            "max_attempts": os.getenv("PLAN_HEALER_MAX_ATTEMPTS"),
            "on_unrecoverable": os.getenv("PLAN_HEALER_ON_UNRECOVERABLE"),
            "permissions_path": os.getenv("PLAN_HEALER_PERMISSIONS"),
            "log_level": os.getenv("PLAN_HEALER_LOG_LEVEL"),
        }
        return cls.model_validate({k: v for k, v in values.items() if v})
