"""Unit tests for the read-path staleness policy"""

from datetime import UTC, datetime, timedelta

from mir_database.models import Issue

from mir_backend.services.staleness import (
    FreshnessDecision,
    invalidate_resolution,
    resolve,
    resolve_issue,
    resolve_resolution,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
WINDOW = timedelta(minutes=5)


def _issue(**fields) -> Issue:
    values = {"github_id": 1, "repository_id": 1, "number": 1, "title": "t", **fields}
    return Issue(**values)


class TestResolve:

    def test_never_synced_awaits_fresh(self):
        assert resolve(False, None, NOW, WINDOW) == FreshnessDecision.AWAIT_FRESH_THEN_SERVE

    def test_synced_flag_without_timestamp_awaits_fresh(self):
        assert resolve(True, None, NOW, WINDOW) == FreshnessDecision.AWAIT_FRESH_THEN_SERVE

    def test_within_window_serves_cached(self):
        synced_at = NOW - timedelta(minutes=4)
        assert resolve(True, synced_at, NOW, WINDOW) == FreshnessDecision.SERVE_CACHED

    def test_exactly_at_window_serves_cached(self):
        synced_at = NOW - WINDOW
        assert resolve(True, synced_at, NOW, WINDOW) == FreshnessDecision.SERVE_CACHED

    def test_past_window_refreshes_async(self):
        synced_at = NOW - timedelta(minutes=6)
        assert resolve(True, synced_at, NOW, WINDOW) == FreshnessDecision.SERVE_CACHED_AND_REFRESH_ASYNC

    def test_naive_timestamp_treated_as_utc(self):
        synced_at = (NOW - timedelta(minutes=1)).replace(tzinfo=None)
        assert resolve(True, synced_at, NOW, WINDOW) == FreshnessDecision.SERVE_CACHED

    def test_unsynced_issue_awaits_fresh(self):
        assert resolve_issue(_issue(synced=False), NOW) == FreshnessDecision.AWAIT_FRESH_THEN_SERVE


class TestResolveResolution:

    def test_closed_issue_is_skipped(self):
        decision = resolve_resolution(_issue(state="closed"), NOW)

        assert decision.skipped is True
        assert decision.needs_analysis is False

    def test_pull_request_is_skipped(self):
        assert resolve_resolution(_issue(pull_request=True), NOW).skipped is True

    def test_never_analysed_needs_analysis(self):
        decision = resolve_resolution(_issue(), NOW)

        assert decision.stale is True
        assert decision.needs_analysis is True

    def test_recent_analysis_is_fresh(self):
        decision = resolve_resolution(_issue(resolution_analyzed_at=NOW - timedelta(minutes=10)), NOW)

        assert decision.stale is False

    def test_old_analysis_is_stale(self):
        decision = resolve_resolution(_issue(resolution_analyzed_at=NOW - timedelta(hours=2)), NOW)

        assert decision.stale is True


class TestInvalidateResolution:

    def test_clears_analysis_timestamp(self):
        issue = _issue(resolution_analyzed_at=NOW)

        assert invalidate_resolution(issue) is True
        assert issue.resolution_analyzed_at is None

    def test_never_analysed_is_noop(self):
        assert invalidate_resolution(_issue()) is False
