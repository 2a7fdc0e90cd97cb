"""Runtime configuration.

Values come from, in increasing priority: field defaults, ``BUDGET_BOARD_*``
environment variables, and explicit keyword overrides (CLI options).
"""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from budget_board.normalizer import BudgetOverrides

ENV_PREFIX = "BUDGET_BOARD_"


class BoardConfig(BaseModel):
    """Settings shared by the CLI, MCP server and gateway."""

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".budget-board")
    gateway_url: str = "http://localhost:8080"
    cache_ttl: float = Field(default=300.0, ge=0, description="Upstream GET cache lifetime (seconds)")
    request_delay: float = Field(default=0.1, ge=0, description="Pause between batch fetches (seconds)")
    value_tick_rate: float = Field(default=0.01, ge=0, description="Ticker rate for value budgets (per hour)")
    allowed_hosts: list[str] = Field(default_factory=lambda: [".api.accelo.com"])
    persist_settings: bool = False
    overrides_path: Path | None = None
    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def split_hosts(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [host.strip() for host in v.split(",") if host.strip()]
        return v

    @field_validator("gateway_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def store_dir(self) -> Path:
        return self.data_dir / "store"


def load_config(env: Mapping[str, str] | None = None, **overrides: Any) -> BoardConfig:
    """Build the configuration.

    Args:
        env: Environment mapping (defaults to ``os.environ``)
        **overrides: Explicit values; None means "not given"

    Raises:
        ValueError: If a value fails validation
    """
    env = os.environ if env is None else env
    values: dict[str, Any] = {}

    for name in BoardConfig.model_fields:
        env_value = env.get(f"{ENV_PREFIX}{name.upper()}")
        if env_value not in (None, ""):
            values[name] = env_value

    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return BoardConfig(**values)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e


def load_overrides(config: BoardConfig) -> BudgetOverrides:
    """Read the project budget override table, if one is configured."""
    if config.overrides_path is None:
        return BudgetOverrides()
    return BudgetOverrides.from_file(config.overrides_path)
