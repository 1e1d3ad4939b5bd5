"""
Staleness policy for the read path.

Pure decisions: given an entity's sync bookkeeping and the current time,
decide whether to serve the mirror as is, fetch first, or serve and refresh
in the background. Windows come from Settings and are policy, not correctness.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from mir_database.models import Issue

from mir_backend.core.clock import as_utc, utcnow
from mir_backend.core.config import get_settings


class FreshnessDecision(str, Enum):
    SERVE_CACHED = "serve_cached"
    AWAIT_FRESH_THEN_SERVE = "await_fresh_then_serve"
    SERVE_CACHED_AND_REFRESH_ASYNC = "serve_cached_and_refresh_async"


def resolve(
    synced: bool,
    synced_at: datetime | None,
    now: datetime,
    window: timedelta,
) -> FreshnessDecision:
    if not synced or synced_at is None:
        return FreshnessDecision.AWAIT_FRESH_THEN_SERVE
    if as_utc(now) - as_utc(synced_at) > window:
        return FreshnessDecision.SERVE_CACHED_AND_REFRESH_ASYNC
    return FreshnessDecision.SERVE_CACHED


def issue_window() -> timedelta:
    return timedelta(seconds=get_settings().issue_freshness_seconds)


def resolution_window() -> timedelta:
    return timedelta(seconds=get_settings().resolution_freshness_seconds)


def resolve_issue(issue: Issue, now: datetime | None = None) -> FreshnessDecision:
    return resolve(issue.synced, issue.synced_at, now or utcnow(), issue_window())


@dataclass(frozen=True)
class ResolutionDecision:
    skipped: bool
    stale: bool
    needs_analysis: bool


def resolve_resolution(issue: Issue, now: datetime | None = None) -> ResolutionDecision:
    """Closed issues and pull requests are never analysed"""
    if issue.pull_request or issue.state == "closed":
        return ResolutionDecision(skipped=True, stale=False, needs_analysis=False)

    if issue.resolution_analyzed_at is None:
        return ResolutionDecision(skipped=False, stale=True, needs_analysis=True)

    age = as_utc(now or utcnow()) - as_utc(issue.resolution_analyzed_at)
    stale = age > resolution_window()
    return ResolutionDecision(skipped=False, stale=stale, needs_analysis=stale)


def invalidate_resolution(issue: Issue) -> bool:
    """A new comment may change whether the issue is answered"""
    if issue.resolution_analyzed_at is None:
        return False
    issue.resolution_analyzed_at = None
    return True
