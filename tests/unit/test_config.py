"""
Unit tests for editor settings.
"""

import pytest
from pydantic import ValidationError
from shared.config import EditorSettings


def test_defaults(monkeypatch):
    for var in ("REDIS_URL", "AUTOSAVE_DEBOUNCE_MS", "CYCLE_POLICY", "GRAPH_SAVE_TIMEOUT_SECONDS"):
        monkeypatch.delenv(var, raising=False)

    settings = EditorSettings.from_env()

    assert settings.autosave_debounce_ms == 500
    assert settings.autosave_debounce_seconds == 0.5
    assert settings.graph_save_timeout_seconds == 30
    assert settings.cycle_policy == "direct"


def test_values_read_from_environment(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")
    monkeypatch.setenv("AUTOSAVE_DEBOUNCE_MS", "250")
    monkeypatch.setenv("CYCLE_POLICY", " Reachability ")
    monkeypatch.setenv("ASSISTED_EDIT_TIMEOUT_SECONDS", "120")

    settings = EditorSettings.from_env()

    assert settings.redis_url == "redis://cache:6379/2"
    assert settings.autosave_debounce_seconds == 0.25
    assert settings.cycle_policy == "reachability"
    assert settings.assisted_edit_timeout_seconds == 120


@pytest.mark.parametrize("var,value", [
    ("CYCLE_POLICY", "strict"),
    ("AUTOSAVE_DEBOUNCE_MS", "-1"),
    ("GRAPH_SAVE_TIMEOUT_SECONDS", "0"),
])
def test_invalid_values_rejected(monkeypatch, var, value):
    monkeypatch.setenv(var, value)

    with pytest.raises(ValidationError):
        EditorSettings.from_env()
