"""Single-issue sync: the full detail fetch behind the staleness policy"""

import logging

from mir_database.models import Issue
from sqlalchemy import update
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.core.clock import utcnow
from mir_backend.core.errors import IssueNotFoundError
from mir_backend.ingestion.github_client import GitHubNotFoundError, GitHubRestClient
from mir_backend.ingestion.reconciler import EntityReconciler, IssueChange

logger = logging.getLogger(__name__)


async def sync_issue(
    session: AsyncSession,
    client: GitHubRestClient,
    repository_id: int,
    full_name: str,
    number: int,
) -> IssueChange:
    """
    Fetches an issue or pull request with comments, reviews and review
    comments, then stamps synced_at. Everything lands in one commit.
    An item deleted upstream is removed from the mirror.
    """
    owner, repo = full_name.split("/", 1)
    reconciler = EntityReconciler(session)
    persistence = reconciler.persistence

    try:
        remote = await client.get_issue(owner, repo, number)
        if remote.is_pull_request:
            remote = await client.get_pull_request(owner, repo, number)
    except GitHubNotFoundError:
        logger.info(f"Issue {full_name}#{number} gone upstream; removing from mirror")
        await persistence.delete_issue(repository_id, number)
        await session.commit()
        raise IssueNotFoundError(f"{full_name}#{number}")

    change = await reconciler.apply_issue(repository_id, remote, commit=False)

    comments = await client.list_issue_comments(owner, repo, number)
    for comment in comments:
        user_id = await reconciler.ensure_user(comment.user)
        await persistence.upsert_comment(change.issue_id, comment, user_id)
        await reconciler.subscribe_to_issue(change.issue_id, user_id)

    reviews_count = 0
    review_comments_count = 0
    if change.pull_request:
        reviews = await client.list_reviews(owner, repo, number)
        for review in reviews:
            user_id = await reconciler.ensure_user(review.user)
            await persistence.upsert_review(change.issue_id, review, user_id)
        reviews_count = len(reviews)

        review_comments = await client.list_review_comments(owner, repo, number)
        for review_comment in review_comments:
            user_id = await reconciler.ensure_user(review_comment.user)
            await persistence.upsert_review_comment(change.issue_id, review_comment, user_id)
        review_comments_count = len(review_comments)

    await session.exec(
        update(Issue)
        .where(Issue.id == change.issue_id)
        .values(synced=True, synced_at=utcnow(), comment_count=len(comments))
    )
    await session.commit()

    logger.info(
        f"Synced {full_name}#{number}: {len(comments)} comments, "
        f"{reviews_count} reviews, {review_comments_count} review comments",
        extra={
            "repository": full_name,
            "number": number,
            "comments": len(comments),
            "reviews": reviews_count,
            "review_comments": review_comments_count,
        },
    )
    return change
