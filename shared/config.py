"""Editor settings loaded from the environment."""

import os
from typing import Literal
from pydantic import BaseModel, Field
from shared.constants import (
    DEFAULT_AUTOSAVE_DEBOUNCE_MS,
    GRAPH_SAVE_TIMEOUT_SECONDS,
    ASSISTED_EDIT_TIMEOUT_SECONDS,
)


class EditorSettings(BaseModel):
    redis_url: str = "redis://localhost:6379/0"
    autosave_debounce_ms: int = Field(default=DEFAULT_AUTOSAVE_DEBOUNCE_MS, ge=0)
    graph_save_timeout_seconds: float = Field(default=GRAPH_SAVE_TIMEOUT_SECONDS, gt=0)
    assisted_edit_timeout_seconds: float = Field(default=ASSISTED_EDIT_TIMEOUT_SECONDS, gt=0)
    cycle_policy: Literal["direct", "reachability"] = "direct"
    webhook_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    @property
    def autosave_debounce_seconds(self) -> float:
        return self.autosave_debounce_ms / 1000.0

    @classmethod
    def from_env(cls) -> "EditorSettings":
        """Builds settings from environment variables, falling back to defaults"""
        env_map = {
            "redis_url": "REDIS_URL",
            "autosave_debounce_ms": "AUTOSAVE_DEBOUNCE_MS",
            "graph_save_timeout_seconds": "GRAPH_SAVE_TIMEOUT_SECONDS",
            "assisted_edit_timeout_seconds": "ASSISTED_EDIT_TIMEOUT_SECONDS",
            "cycle_policy": "CYCLE_POLICY",
            "webhook_base_url": "WEBHOOK_BASE_URL",
            "log_level": "LOG_LEVEL",
        }
        values = {field: os.getenv(var) for field, var in env_map.items() if os.getenv(var) is not None}
        if "cycle_policy" in values:
            values["cycle_policy"] = values["cycle_policy"].strip().lower()
        return cls(**values)
