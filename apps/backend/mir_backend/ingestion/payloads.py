"""
Typed views over remote REST and webhook payloads.
Unknown fields are ignored so payload growth on the remote side never breaks parsing.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GitHubUser(_Payload):
    id: int
    login: str
    name: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    type: str = "User"


class GitHubCollaborator(GitHubUser):
    permissions: dict[str, bool] = Field(default_factory=dict)
    role_name: str | None = None

    def highest_permission(self) -> str | None:
        """Maps the permissions flags to the strongest role held"""
        for role in ("admin", "maintain", "push", "triage", "pull"):
            if self.permissions.get(role):
                return role
        return self.role_name


class GitHubLabel(_Payload):
    id: int
    name: str
    color: str = "ededed"
    description: str | None = None
    default: bool = False


class GitHubMilestone(_Payload):
    id: int
    number: int
    title: str
    description: str | None = None
    state: str = "open"
    html_url: str | None = None
    open_issues: int = 0
    closed_issues: int = 0
    due_on: datetime | None = None
    closed_at: datetime | None = None


class GitHubIssueType(_Payload):
    id: int
    name: str
    color: str | None = None
    description: str | None = None


class GitHubReactions(_Payload):
    total_count: int = 0


class GitHubRef(_Payload):
    ref: str
    sha: str


class GitHubIssue(_Payload):
    id: int
    number: int
    title: str
    body: str | None = None
    state: str = "open"
    state_reason: str | None = None
    html_url: str | None = None
    locked: bool = False
    user: GitHubUser | None = None
    assignees: list[GitHubUser] = Field(default_factory=list)
    labels: list[GitHubLabel] = Field(default_factory=list)
    milestone: GitHubMilestone | None = None
    type: GitHubIssueType | None = None
    comments: int = 0
    reactions: GitHubReactions | None = None
    pull_request: dict[str, Any] | None = None
    draft: bool = False
    closed_at: datetime | None = None
    closed_by: GitHubUser | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_pull_request(self) -> bool:
        return self.pull_request is not None


class GitHubPullRequest(GitHubIssue):
    merged: bool = False
    merged_at: datetime | None = None
    merged_by: GitHubUser | None = None
    head: GitHubRef | None = None
    base: GitHubRef | None = None
    requested_reviewers: list[GitHubUser] = Field(default_factory=list)

    @property
    def is_pull_request(self) -> bool:
        return True

    @property
    def is_merged(self) -> bool:
        return self.merged or self.merged_at is not None


class GitHubComment(_Payload):
    id: int
    body: str | None = None
    user: GitHubUser | None = None
    html_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class GitHubReview(_Payload):
    id: int
    user: GitHubUser | None = None
    body: str | None = None
    state: str = "COMMENTED"
    commit_id: str | None = None
    html_url: str | None = None
    submitted_at: datetime | None = None


class GitHubReviewComment(_Payload):
    id: int
    pull_request_review_id: int | None = None
    user: GitHubUser | None = None
    body: str | None = None
    path: str | None = None
    line: int | None = None
    side: str | None = None
    commit_id: str | None = None
    diff_hunk: str | None = None
    html_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class GitHubRelease(_Payload):
    id: int
    tag_name: str
    name: str | None = None
    body: str | None = None
    draft: bool = False
    prerelease: bool = False
    html_url: str | None = None
    published_at: datetime | None = None
    author: GitHubUser | None = None


class GitHubPullRef(_Payload):
    number: int


class GitHubWorkflowRun(_Payload):
    id: int
    name: str | None = None
    head_branch: str | None = None
    head_sha: str
    event: str | None = None
    status: str = "queued"
    conclusion: str | None = None
    html_url: str | None = None
    run_number: int | None = None
    run_attempt: int = 1
    run_started_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    actor: GitHubUser | None = None
    pull_requests: list[GitHubPullRef] = Field(default_factory=list)


class GitHubCheckRun(_Payload):
    id: int
    name: str
    head_sha: str
    status: str = "queued"
    conclusion: str | None = None
    html_url: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    pull_requests: list[GitHubPullRef] = Field(default_factory=list)


class GitHubRepository(_Payload):
    id: int
    name: str
    full_name: str
    private: bool = False
    description: str | None = None
    html_url: str | None = None
    default_branch: str | None = None
    archived: bool = False
    disabled: bool = False
    owner: GitHubUser | None = None


class GitHubInstallation(_Payload):
    id: int
    account: GitHubUser
    suspended_at: datetime | None = None
