"""Configuration settings for CRM Pilot."""

import os
from dataclasses import dataclass
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = BASE_DIR / "data"
MODELS_DIR = DATA_DIR / "models"

# Server
HOST = os.environ.get("CRMPILOT_HOST", "127.0.0.1")
PORT = int(os.environ.get("CRMPILOT_PORT", "7878"))

# API
API_PREFIX = "/api"
API_VERSION = "0.1.0"

# Logging
LOG_LEVEL = os.environ.get("CRMPILOT_LOG_LEVEL", "INFO")

# Local completion model (GGUF file loaded by llama_cpp)
MODEL_PATH = Path(os.environ.get("CRMPILOT_MODEL_PATH", str(MODELS_DIR / "assistant.gguf")))
MODEL_ID = os.environ.get("CRMPILOT_MODEL_ID", "crmpilot-assistant")
MODEL_CONTEXT = 4096

# Team used by the in-memory dev store for users without a membership
DEFAULT_TEAM_ID = os.environ.get("CRMPILOT_DEFAULT_TEAM", "default")


@dataclass
class ClassifierSettings:
    """Thresholds and sampling parameters for intent classification."""

    accept_confidence: float = 0.7  # structured pass must exceed this
    clarify_below: float = 0.7  # confidence gate
    structured_temperature: float = 0.1
    general_temperature: float = 0.3
    max_tokens: int = 500
    max_examples: int = 3
    history_lines: int = 3
    low_confidence_prefix_below: float = 0.7


@dataclass
class ResolverSettings:
    """Reference resolution thresholds."""

    ambiguous_below: float = 0.8  # entities under this are treated as references
    min_match: float = 0.5
    max_matches: int = 5
    max_tokens: int = 400


@dataclass
class CacheSettings:
    """Sizes and TTLs (seconds) for the cache substrate."""

    data_max_size: int = 100
    data_ttl: float = 120.0  # CRM data goes stale quickly
    default_ttl: float = 300.0
    understanding_max_size: int = 1000
    understanding_ttl: float = 300.0
    eviction_fraction: float = 0.2


@dataclass
class RateLimits:
    """Request ceilings per window, per user and process-wide."""

    user_per_minute: int = 10
    user_per_hour: int = 100
    user_per_day: int = 1000
    global_per_minute: int = 50
    global_per_hour: int = 500
    global_per_day: int = 5000


@dataclass
class TimeoutSettings:
    """Timeouts (seconds) for external calls."""

    completion: float = 10.0
    record_store: float = 5.0
    handler: float = 10.0


@dataclass
class LearningSettings:
    """Adaptive learning parameters."""

    max_interactions: int = 100
    min_for_patterns: int = 5
    reinforcement_step: float = 0.1
    confidence_floor: float = 0.1
    replace_below: float = 0.3
    apply_above: float = 0.6
    max_examples_per_domain: int = 100


# Cost per 1K tokens, used for usage accounting only
MODEL_COSTS = {
    "default": {"input": 0.0, "output": 0.0},
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-4o": {"input": 0.0025, "output": 0.01},
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
}
