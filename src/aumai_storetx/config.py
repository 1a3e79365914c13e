"""Coordinator configuration."""

from __future__ import annotations

import os
from enum import Enum
from typing import Mapping

import pydantic
from pydantic import BaseModel, Field

from aumai_storetx.errors import ConfigurationError

__all__ = ["StrategyMode", "CoordinatorConfig", "ENV_PREFIX"]

ENV_PREFIX = "STORETX_"


class StrategyMode(str, Enum):
    """Which execution strategy the coordinator should use.

    *auto* picks native when the document adapter declares staged-commit
    support, fallback otherwise.  The choice is made once, at construction.
    """

    native = "native"
    fallback = "fallback"
    auto = "auto"


class CoordinatorConfig(BaseModel):
    """Every setting the coordinator and workflows recognize."""

    database_id: str = Field(default="default", min_length=1, description="Document database id")
    avatar_bucket_id: str = Field(default="avatars", min_length=1)
    qr_code_bucket_id: str = Field(default="qr-codes", min_length=1)
    default_ttl_seconds: int = Field(
        default=180, ge=1, le=3600, description="TTL for contexts begun without one"
    )
    mode: StrategyMode = Field(default=StrategyMode.auto)
    conflict_check_retries: int = Field(
        default=3, ge=1, description="Attempts for fallback conflict reads on transient errors"
    )
    conflict_check_backoff_seconds: float = Field(
        default=0.1, ge=0, description="Fixed pause between fallback conflict read attempts"
    )
    max_tickets_per_booking: int = Field(default=10, ge=1)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> CoordinatorConfig:
        """Build a config from ``STORETX_*`` environment variables.

        Unset variables keep their defaults, e.g. ``STORETX_MODE=fallback``
        or ``STORETX_DEFAULT_TTL_SECONDS=300``.

        Raises:
            ConfigurationError: When a variable holds an invalid value.
        """
        env = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        try:
            return cls.model_validate(values)
        except pydantic.ValidationError as exc:
            raise ConfigurationError(f"Invalid {ENV_PREFIX}* configuration: {exc}") from exc
