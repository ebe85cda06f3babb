import json
import logging
from pathlib import Path
from typing import Dict, List

from pydantic import BaseModel, ValidationError

from .models import Account, CycleLearningState

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".quota_tracker_config.json"
DEFAULT_STATE_PATH = Path.home() / ".quota_tracker_state.json"
DEFAULT_TIMEOUT = 15.0


class ProviderConfig(BaseModel):
    """Credential and request settings handed to a provider adapter."""
    api_key: str
    timeout: float = DEFAULT_TIMEOUT


class Config(BaseModel):
    """Main configuration loaded from JSON file."""
    accounts: List[Account] = []
    timeout: float = DEFAULT_TIMEOUT


def load_config(config_path: str | None = None) -> Config:
    """Load configuration from JSON file.

    If config_path is not provided, defaults to ~/.quota_tracker_config.json.
    The older ``{"providers": {"kimi": {"api_key": ...}}}`` layout is accepted
    too; each provider entry becomes an account named after the provider.
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    accounts = list(data.get("accounts", []))
    for name, cfg in data.get("providers", {}).items():
        accounts.append({"id": name, "provider": name, "api_key": cfg["api_key"]})

    return Config(accounts=accounts, timeout=data.get("timeout", DEFAULT_TIMEOUT))


def load_learning_state(state_path: str | None = None) -> Dict[str, CycleLearningState]:
    """Load persisted learning state; unreadable entries are skipped."""
    path = Path(state_path) if state_path is not None else DEFAULT_STATE_PATH
    if not path.exists():
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable learning state {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring learning state {path}: expected a JSON object")
        return {}

    states = {}
    for key, raw in data.items():
        try:
            states[key] = CycleLearningState.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Dropping invalid learning state for {key}: {e}")
    return states


def save_learning_state(
    states: Dict[str, CycleLearningState], state_path: str | None = None
) -> None:
    path = Path(state_path) if state_path is not None else DEFAULT_STATE_PATH
    payload = {key: state.model_dump(mode="json") for key, state in states.items()}
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
