"""
Shared constants for services, centralized for maintainability
"""

# Freshness windows (seconds); defaults for Settings, tunable per deployment
ISSUE_FRESHNESS_SECONDS: int = 5 * 60
RESOLUTION_FRESHNESS_SECONDS: int = 60 * 60

# Collaborator permissions that make a user a repository maintainer
MAINTAINER_PERMISSIONS: frozenset[str] = frozenset({"admin", "maintain", "push", "write"})

# Subscription channels, in display order
SUBSCRIPTION_CHANNELS: tuple[str, ...] = (
    "issues",
    "pull_requests",
    "releases",
    "ci",
    "mentions",
    "activity",
)

# Row created on first subscribe: every channel on except activity
DEFAULT_SUBSCRIPTION: dict[str, bool] = {
    "issues": True,
    "pull_requests": True,
    "releases": True,
    "ci": True,
    "mentions": True,
    "activity": False,
}

SUBSCRIPTION_PRESETS: dict[str, dict[str, bool]] = {
    "participating": {
        "issues": False,
        "pull_requests": False,
        "releases": True,
        "ci": False,
        "mentions": True,
        "activity": True,
    },
    "all": {channel: True for channel in SUBSCRIPTION_CHANNELS},
    "ignore": {channel: False for channel in SUBSCRIPTION_CHANNELS},
}

CUSTOM_PRESET = "custom"

# Notification vocabulary
NOTIFICATION_TYPES: frozenset[str] = frozenset({"issue", "pull_request", "release", "workflow_run"})

NOTIFICATION_ACTIONS: frozenset[str] = frozenset(
    {
        "opened",
        "reopened",
        "closed",
        "merged",
        "assigned",
        "mentioned",
        "comment",
        "review_requested",
        "review_submitted",
        "review_dismissed",
        "ready_for_review",
        "published",
        "failed",
        "success",
    }
)

# Login tokens: 1-39 chars, alphanumeric with inner hyphens
MENTION_PATTERN: str = r"(?<![\w@])@([a-zA-Z0-9](?:[a-zA-Z0-9-]{0,37}[a-zA-Z0-9])?)\b"

# CI run classification
CI_RUNNING_STATUSES: frozenset[str] = frozenset(
    {"in_progress", "queued", "waiting", "pending", "requested"}
)
CI_PASSING_CONCLUSIONS: frozenset[str] = frozenset({"success", "neutral", "skipped"})
CI_FAILING_CONCLUSIONS: frozenset[str] = frozenset(
    {"failure", "timed_out", "startup_failure", "action_required", "cancelled", "stale"}
)

REVIEW_STATES: frozenset[str] = frozenset(
    {"APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED", "PENDING"}
)
