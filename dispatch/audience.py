"""
Audience selectors: who a dispatch considers before preference filtering.

Each selector has a stable `key` used to coalesce identical concurrent
dispatches, and resolves to an ordered list of user ids.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

from dispatch.subscriptions import SubscriptionRegistry
from shared.data_store import DataStore
from shared.models import UserType


@dataclass
class AudienceSources:
    """Collaborators a selector may query."""
    data_store: DataStore
    subscriptions: SubscriptionRegistry


class AudienceSelector(ABC):

    @property
    @abstractmethod
    def key(self) -> str:
        """Stable identity of this audience."""

    @abstractmethod
    async def resolve(self, sources: AudienceSources) -> list[str]:
        """Candidate user ids."""


class ExplicitAudience(AudienceSelector):
    """A fixed list of users."""

    def __init__(self, user_ids: Iterable[str]):
        self.user_ids = list(user_ids)

    @property
    def key(self) -> str:
        return "users:" + ",".join(self.user_ids)

    async def resolve(self, sources: AudienceSources) -> list[str]:
        return list(self.user_ids)


class AllClientsAudience(AudienceSelector):
    """Every client user."""

    @property
    def key(self) -> str:
        return "clients"

    async def resolve(self, sources: AudienceSources) -> list[str]:
        users = await sources.data_store.get_users(UserType.CLIENT.value)
        return [user.id for user in users]


class PreferredCategoryAudience(AudienceSelector):
    """
    Clients whose preferred-category list contains a category.

    With include_unspecified, clients that never picked any category are
    included too, since they are interested in everything.
    """

    def __init__(self, category: str, include_unspecified: bool = True):
        self.category = category
        self.include_unspecified = include_unspecified

    @property
    def key(self) -> str:
        return f"preferred:{self.category}:{int(self.include_unspecified)}"

    async def resolve(self, sources: AudienceSources) -> list[str]:
        users = await sources.data_store.get_users(UserType.CLIENT.value)
        selected = []
        for user in users:
            if not user.preferred_categories:
                if self.include_unspecified:
                    selected.append(user.id)
            elif self.category in user.preferred_categories:
                selected.append(user.id)
        return selected


class ActiveSubscribersAudience(AudienceSelector):
    """Users with an active push subscription, optionally for one category."""

    def __init__(self, category: Optional[str] = None):
        self.category = category

    @property
    def key(self) -> str:
        return f"subscribers:{self.category or '*'}"

    async def resolve(self, sources: AudienceSources) -> list[str]:
        return await sources.subscriptions.subscribed_users(self.category)


def unique_in_order(user_ids: Iterable[str]) -> list[str]:
    """Drop duplicate and empty ids, keeping first occurrences."""
    seen: set[str] = set()
    unique = []
    for user_id in user_ids:
        if user_id and user_id not in seen:
            seen.add(user_id)
            unique.append(user_id)
    return unique
