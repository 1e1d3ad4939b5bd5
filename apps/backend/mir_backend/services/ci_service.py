"""
CI status aggregation for a pull request head commit.

Running beats failed beats success. Only the newest run of each check on a
commit counts, so a re-run supersedes the attempt it replaced.
"""
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from mir_database.models import Issue, WorkflowRun
from mir_shared.constants import CI_PASSING_CONCLUSIONS, CI_RUNNING_STATUSES
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.core.clock import as_utc
from mir_backend.core.errors import IssueNotFoundError

logger = logging.getLogger(__name__)

_EPOCH = datetime.min


@dataclass(frozen=True)
class AggregatedStatus:
    state: str
    label: str
    severity: str
    animate: bool
    link: str | None
    total: int
    running: int
    passed: int
    failed: int


def is_running(run: WorkflowRun) -> bool:
    return run.conclusion is None and run.status in CI_RUNNING_STATUSES


def is_passing(run: WorkflowRun) -> bool:
    return run.conclusion in CI_PASSING_CONCLUSIONS


def is_failing(run: WorkflowRun) -> bool:
    """Finished without a passing conclusion, including a missing or unknown one"""
    return not is_running(run) and not is_passing(run)


def _recency(run: WorkflowRun) -> tuple:
    created = as_utc(run.github_created_at or run.started_at)
    return (
        created.replace(tzinfo=None) if created else _EPOCH,
        run.run_attempt or 1,
        run.id or 0,
    )


def latest_runs_per_sha(runs: Iterable[WorkflowRun]) -> list[WorkflowRun]:
    """Newest run per (head_sha, name); input order is kept for the survivors"""
    runs = list(runs)
    newest: dict[tuple[str, str], WorkflowRun] = {}
    for run in runs:
        key = (run.head_sha, run.name)
        current = newest.get(key)
        if current is None or _recency(run) >= _recency(current):
            newest[key] = run

    survivors = {id(run) for run in newest.values()}
    return [run for run in runs if id(run) in survivors]


def aggregate(runs: Iterable[WorkflowRun]) -> AggregatedStatus | None:
    runs = latest_runs_per_sha(runs)
    if not runs:
        return None

    total = len(runs)
    running = [run for run in runs if is_running(run)]
    failing = [run for run in runs if is_failing(run)]
    passed = sum(1 for run in runs if is_passing(run))

    if running:
        return AggregatedStatus(
            state="running",
            label=f"{len(running)}/{total} running",
            severity="warning",
            animate=True,
            link=running[0].html_url,
            total=total,
            running=len(running),
            passed=passed,
            failed=len(failing),
        )

    if failing:
        return AggregatedStatus(
            state="failed",
            label=f"{passed}/{total} passed",
            severity="error",
            animate=False,
            link=failing[0].html_url,
            total=total,
            running=0,
            passed=passed,
            failed=len(failing),
        )

    return AggregatedStatus(
        state="success",
        label=f"{passed}/{total} passed",
        severity="success",
        animate=False,
        link=None,
        total=total,
        running=0,
        passed=passed,
        failed=0,
    )


async def get_issue_ci_status(db: AsyncSession, issue_id: int) -> AggregatedStatus | None:
    """Aggregate for a pull request's current head; None for issues and commits without runs"""
    issue = (await db.exec(select(Issue).where(Issue.id == issue_id))).first()
    if issue is None:
        raise IssueNotFoundError(str(issue_id))

    if not issue.pull_request or not issue.head_sha:
        return None

    result = await db.exec(
        select(WorkflowRun)
        .where(
            WorkflowRun.repository_id == issue.repository_id,
            WorkflowRun.head_sha == issue.head_sha,
        )
        .order_by(WorkflowRun.id)
    )
    runs = result.all()
    logger.debug(f"CI for issue {issue_id} at {issue.head_sha[:7]}: {len(runs)} runs")
    return aggregate(runs)
