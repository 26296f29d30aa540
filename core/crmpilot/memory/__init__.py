"""Memory module - interaction examples and adaptive learning."""

from crmpilot.memory.examples import ExampleDomain, ExampleStore, InteractionExample
from crmpilot.memory.learning import (
    AdaptiveLearner,
    InteractionRecord,
    PreferenceCategory,
    UserPreference,
)

__all__ = [
    # Examples
    "ExampleDomain",
    "ExampleStore",
    "InteractionExample",
    # Learning
    "AdaptiveLearner",
    "InteractionRecord",
    "PreferenceCategory",
    "UserPreference",
]
