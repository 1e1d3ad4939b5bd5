"""
Repository subscription service.
Six independent channels per (user, repository); presets are named channel
combinations and anything else classifies as custom.
"""
import logging

from mir_database.models import RepositorySubscription
from mir_shared.constants import (
    CUSTOM_PRESET,
    DEFAULT_SUBSCRIPTION,
    SUBSCRIPTION_CHANNELS,
    SUBSCRIPTION_PRESETS,
)
from pydantic import BaseModel
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.core.clock import utcnow

logger = logging.getLogger(__name__)


class SubscriptionChannels(BaseModel):
    """Partial channel update; None leaves a channel unchanged."""
    issues: bool | None = None
    pull_requests: bool | None = None
    releases: bool | None = None
    ci: bool | None = None
    mentions: bool | None = None
    activity: bool | None = None


class SubscriptionView(BaseModel):
    repository_id: int
    issues: bool
    pull_requests: bool
    releases: bool
    ci: bool
    mentions: bool
    activity: bool
    preset: str


def channels_of(subscription: RepositorySubscription) -> dict[str, bool]:
    return {channel: getattr(subscription, channel) for channel in SUBSCRIPTION_CHANNELS}


def classify_preset(channels: dict[str, bool]) -> str:
    for name, preset in SUBSCRIPTION_PRESETS.items():
        if all(channels.get(channel) == value for channel, value in preset.items()):
            return name
    return CUSTOM_PRESET


def to_view(subscription: RepositorySubscription) -> SubscriptionView:
    channels = channels_of(subscription)
    return SubscriptionView(
        repository_id=subscription.repository_id,
        preset=classify_preset(channels),
        **channels,
    )


async def get_subscription(
    db: AsyncSession,
    user_id: int,
    repository_id: int,
) -> RepositorySubscription | None:
    result = await db.exec(
        select(RepositorySubscription).where(
            RepositorySubscription.user_id == user_id,
            RepositorySubscription.repository_id == repository_id,
        )
    )
    return result.first()


async def ensure_default_subscription(
    db: AsyncSession,
    user_id: int,
    repository_id: int,
    commit: bool = True,
) -> tuple[RepositorySubscription, bool]:
    """Creates the default row if absent; an existing row is left untouched"""
    existing = await get_subscription(db, user_id, repository_id)
    if existing is not None:
        return existing, False

    subscription = RepositorySubscription(
        user_id=user_id,
        repository_id=repository_id,
        **DEFAULT_SUBSCRIPTION,
    )
    db.add(subscription)
    if commit:
        await db.commit()
    else:
        await db.flush()

    logger.info(
        f"Created default subscription for user {user_id} on repository {repository_id}",
        extra={"user_id": user_id, "repository_id": repository_id},
    )
    return subscription, True


async def update_subscription(
    db: AsyncSession,
    user_id: int,
    repository_id: int,
    changes: SubscriptionChannels,
) -> RepositorySubscription:
    """
    Partial merge of the given channels. If no row exists one is created
    from the defaults first, then the changes are applied on top.
    """
    subscription = await get_subscription(db, user_id, repository_id)
    if subscription is None:
        subscription = RepositorySubscription(
            user_id=user_id,
            repository_id=repository_id,
            **DEFAULT_SUBSCRIPTION,
        )
        db.add(subscription)

    for channel, value in changes.model_dump(exclude_none=True).items():
        setattr(subscription, channel, value)
    subscription.updated_at = utcnow()

    await db.commit()
    return subscription


async def apply_preset(
    db: AsyncSession,
    user_id: int,
    repository_id: int,
    preset: str,
) -> RepositorySubscription:
    if preset not in SUBSCRIPTION_PRESETS:
        raise ValueError(f"Unknown preset: {preset}")
    return await update_subscription(
        db,
        user_id,
        repository_id,
        SubscriptionChannels(**SUBSCRIPTION_PRESETS[preset]),
    )


async def delete_subscription(
    db: AsyncSession,
    user_id: int,
    repository_id: int,
) -> bool:
    subscription = await get_subscription(db, user_id, repository_id)
    if subscription is None:
        return False
    await db.delete(subscription)
    await db.commit()
    return True
