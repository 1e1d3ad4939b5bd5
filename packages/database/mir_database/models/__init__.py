"""Database models for IssueMirror."""

from mir_database.models.identity import Installation, User
from mir_database.models.mirror import (
    Issue,
    IssueAssignee,
    IssueComment,
    IssueLabel,
    IssueRequestedReviewer,
    IssueReview,
    IssueReviewComment,
    IssueType,
    Label,
    Milestone,
    Release,
    Repository,
    RepositoryCollaborator,
    WorkflowRun,
)
from mir_database.models.notifications import (
    IssueSubscription,
    Notification,
    RepositorySubscription,
)
from mir_database.models.sync import SyncRun, WebhookDelivery

__all__ = [
    # Identity
    "User",
    "Installation",
    # Mirror
    "Repository",
    "RepositoryCollaborator",
    "Label",
    "Milestone",
    "IssueType",
    "Issue",
    "IssueAssignee",
    "IssueLabel",
    "IssueRequestedReviewer",
    "IssueComment",
    "IssueReview",
    "IssueReviewComment",
    "Release",
    "WorkflowRun",
    # Notifications
    "RepositorySubscription",
    "IssueSubscription",
    "Notification",
    # Sync
    "SyncRun",
    "WebhookDelivery",
]
