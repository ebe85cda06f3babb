import json

import pytest
from datetime import datetime, timezone
from quota_tracker.config import (
    DEFAULT_TIMEOUT,
    load_config,
    load_learning_state,
    save_learning_state,
)
from quota_tracker.models import CycleLearningState, ProviderKind


def test_load_config_accounts(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "timeout": 5,
        "accounts": [
            {"id": "work-kimi", "name": "Work", "provider": "kimi", "api_key": "sk-kimi-x"},
            {"id": "spare", "provider": "tavily", "api_key": "tvly", "enabled": False},
        ],
    }))

    config = load_config(str(path))

    assert config.timeout == 5
    assert [a.id for a in config.accounts] == ["work-kimi", "spare"]
    assert config.accounts[0].provider == ProviderKind.KIMI
    assert not config.accounts[1].enabled


def test_load_config_legacy_providers(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "providers": {
            "kimi": {"api_key": "kimi-key"},
            "glm": {"api_key": "glm-key"},
        }
    }))

    config = load_config(str(path))

    assert config.timeout == DEFAULT_TIMEOUT
    assert [(a.id, a.provider, a.api_key) for a in config.accounts] == [
        ("kimi", ProviderKind.KIMI, "kimi-key"),
        ("glm", ProviderKind.GLM, "glm-key"),
    ]


def test_load_config_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "missing.json"))


def test_learning_state_round_trip(tmp_path):
    path = tmp_path / "state.json"
    reset = datetime(2026, 1, 1, 6, 0, tzinfo=timezone.utc)
    states = {
        "work-kimi-primary": CycleLearningState(
            observed_resets=[reset],
            learned_interval=21600,
            confidence=0.7,
            last_observed_at=reset,
        )
    }

    save_learning_state(states, str(path))
    loaded = load_learning_state(str(path))

    assert loaded == states


def test_learning_state_missing_file(tmp_path):
    assert load_learning_state(str(tmp_path / "state.json")) == {}


def test_learning_state_skips_invalid_entries(tmp_path):
    path = tmp_path / "state.json"
    path.write_text(json.dumps({
        "good-primary": {"learned_interval": 3600, "confidence": 0.6},
        "bad-primary": {"observed_resets": "yesterday"},
    }))

    loaded = load_learning_state(str(path))

    assert list(loaded) == ["good-primary"]
    assert loaded["good-primary"].learned_interval == 3600


def test_learning_state_unreadable(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    assert load_learning_state(str(path)) == {}
