"""mir_shared - Shared constants for IssueMirror."""

from mir_shared.constants import (
    CUSTOM_PRESET,
    DEFAULT_SUBSCRIPTION,
    ISSUE_FRESHNESS_SECONDS,
    RESOLUTION_FRESHNESS_SECONDS,
    SUBSCRIPTION_CHANNELS,
    SUBSCRIPTION_PRESETS,
)

__all__ = [
    "CUSTOM_PRESET",
    "DEFAULT_SUBSCRIPTION",
    "ISSUE_FRESHNESS_SECONDS",
    "RESOLUTION_FRESHNESS_SECONDS",
    "SUBSCRIPTION_CHANNELS",
    "SUBSCRIPTION_PRESETS",
]
