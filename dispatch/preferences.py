"""
Preference store: whether a user wants notifications of a category.

Reads go through a ranked list of providers. The first provider that answers
decides; a provider whose backend is down is skipped with a warning:

1. DurablePreferenceProvider: rows in user_notification_preferences. A
   category without a row is enabled (default opt-in).
2. ProfileListProvider: the profile's legacy preferred_categories list.
3. LocalFallbackProvider: toggles whose durable write failed.

When nobody answers, the user is interested in everything.

The profile list only describes what a client wants to hear about from the
catalog. Messages addressed to one owner (their own reservation, a system
message) are checked with interests=False, which skips interest-list providers
so only explicit toggles can silence them.

Reconciliation: the durable store wins whenever it is reachable and has rows
for the user. Fallback copies only decide while nothing else answers, and
flush_pending() replays them once the backend is back.

Writes are upserts on (user_id, category_id), serialized per pair by the
ConcurrencyGuard. A failed write keeps the intended value in the fallback
copy and raises PreferenceWriteError; it never reports success.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from dispatch.categories import CategoryResolver
from dispatch.locks import ConcurrencyGuard
from shared.data_store import USER_PREFERENCES, DataStore
from shared.errors import BackendError, PreferenceValidationError, PreferenceWriteError
from shared.models import UserPreference, UserType, utcnow

logger = logging.getLogger("preference_store")


@dataclass
class Preferences:
    """
    Answer of one preference provider.

    Exactly one of the two shapes is used:
    - toggles: category id -> enabled; categories not listed are enabled
    - allow_list: category names or ids the user wants; everything else is off
    """
    source: str
    toggles: dict[str, bool] = field(default_factory=dict)
    allow_list: Optional[frozenset[str]] = None

    def allows(self, category_id: str, category_name: Optional[str] = None) -> bool:
        if self.allow_list is not None:
            return category_id in self.allow_list or (
                category_name is not None and category_name in self.allow_list
            )
        return self.toggles.get(category_id, True)


class PreferenceProvider(ABC):
    """One source of preferences in the ranked lookup."""

    name: str = "provider"
    interest_list: bool = False

    @abstractmethod
    async def load(self, user_id: str) -> Optional[Preferences]:
        """Return the user's preferences, or None if this source has no opinion."""


class DurablePreferenceProvider(PreferenceProvider):
    name = "durable"

    def __init__(self, data_store: DataStore):
        self.data_store = data_store

    async def load(self, user_id: str) -> Optional[Preferences]:
        rows = await self.data_store.select(USER_PREFERENCES, where={"user_id": user_id})
        if not rows:
            return None
        return Preferences(
            source=self.name,
            toggles={row["category_id"]: bool(row["is_enabled"]) for row in rows},
        )


class ProfileListProvider(PreferenceProvider):
    name = "profile"
    interest_list = True

    def __init__(self, data_store: DataStore):
        self.data_store = data_store

    async def load(self, user_id: str) -> Optional[Preferences]:
        user = await self.data_store.get_user(user_id)
        # An empty list means the user never chose
        if user is None or not user.preferred_categories:
            return None
        return Preferences(source=self.name, allow_list=frozenset(user.preferred_categories))


class LocalPreferenceCopy:
    """Local-only copies of toggles whose durable write failed."""

    def __init__(self):
        self._pending: dict[tuple[str, str], UserPreference] = {}

    def record(self, user_id: str, category_id: str, enabled: bool) -> UserPreference:
        preference = UserPreference(user_id=user_id, category_id=category_id, is_enabled=enabled)
        self._pending[(user_id, category_id)] = preference
        return preference

    def discard(self, user_id: str, category_id: str) -> None:
        self._pending.pop((user_id, category_id), None)

    def for_user(self, user_id: str) -> list[UserPreference]:
        return [p for (uid, _), p in self._pending.items() if uid == user_id]

    def pending(self, user_id: Optional[str] = None) -> list[UserPreference]:
        if user_id is None:
            return list(self._pending.values())
        return self.for_user(user_id)

    def __len__(self) -> int:
        return len(self._pending)


class LocalFallbackProvider(PreferenceProvider):
    name = "local"

    def __init__(self, copy: LocalPreferenceCopy):
        self.copy = copy

    async def load(self, user_id: str) -> Optional[Preferences]:
        pending = self.copy.for_user(user_id)
        if not pending:
            return None
        return Preferences(
            source=self.name,
            toggles={p.category_id: p.is_enabled for p in pending},
        )


class PreferenceStore:
    """
    Durable (user, category) -> enabled mapping with a local fallback.

    Example usage:
        prefs = PreferenceStore(store, guard, resolver)
        await prefs.set_enabled("u1", "cat-promotions", False)
        await prefs.is_enabled("u1", "cat-promotions")   # False
    """

    def __init__(
        self,
        data_store: DataStore,
        guard: ConcurrencyGuard,
        categories: CategoryResolver,
        providers: Optional[list[PreferenceProvider]] = None,
        fallback: Optional[LocalPreferenceCopy] = None,
    ):
        self.data_store = data_store
        self.guard = guard
        self.categories = categories
        self.fallback = fallback or LocalPreferenceCopy()
        self.providers = providers or [
            DurablePreferenceProvider(data_store),
            ProfileListProvider(data_store),
            LocalFallbackProvider(self.fallback),
        ]

    # =========================================================================
    # Reads
    # =========================================================================

    async def load_preferences(self, user_id: str, interests: bool = True) -> Optional[Preferences]:
        """Ask each provider in rank order and return the first answer."""
        for provider in self.providers:
            if provider.interest_list and not interests:
                continue
            try:
                preferences = await provider.load(user_id)
            except BackendError as e:
                logger.warning(f"Preference provider '{provider.name}' unavailable for {user_id}: {e}")
                continue
            if preferences is not None:
                return preferences
        return None

    async def is_enabled(
        self,
        user_id: str,
        category_id: str,
        category_name: Optional[str] = None,
        interests: bool = True,
    ) -> bool:
        """
        Whether `user_id` wants notifications of a category.

        Args:
            user_id: The user
            category_id: Resolved category id
            category_name: Category name, matched against legacy name lists
            interests: Consult interest lists; False for owner-addressed messages
        """
        preferences = await self.load_preferences(user_id, interests)
        if preferences is None:
            return True
        allowed = preferences.allows(category_id, category_name)
        if not allowed:
            logger.debug(f"User {user_id} opted out of {category_name or category_id} ({preferences.source})")
        return allowed

    async def get_preferences(self, user_id: str) -> list[UserPreference]:
        """
        Explicit preference rows for a user.

        Falls back to the local copies when the durable store is unreachable.
        """
        try:
            rows = await self.data_store.select(USER_PREFERENCES, where={"user_id": user_id})
        except BackendError as e:
            logger.warning(f"Reading preferences for {user_id} from local copy: {e}")
            return self.fallback.for_user(user_id)
        return [UserPreference.model_validate(row) for row in rows]

    # =========================================================================
    # Writes
    # =========================================================================

    async def set_enabled(self, user_id: str, category_id: str, enabled: bool) -> UserPreference:
        """
        Upsert one preference.

        Raises:
            PreferenceValidationError: On empty ids or a non-bool value
            PreferenceWriteError: If the durable write failed (fallback kept)
        """
        _validate(user_id, category_id, enabled)

        async def write() -> UserPreference:
            row = {
                "user_id": user_id,
                "category_id": category_id,
                "is_enabled": enabled,
                "updated_at": utcnow(),
            }
            try:
                stored = await self.data_store.upsert(
                    USER_PREFERENCES, row, on_conflict=("user_id", "category_id")
                )
            except BackendError as e:
                fallback = self.fallback.record(user_id, category_id, enabled)
                logger.warning(f"Preference write for {user_id}/{category_id} kept locally: {e}")
                raise PreferenceWriteError(
                    f"Could not save preference for category {category_id}", fallback=fallback
                ) from e
            self.fallback.discard(user_id, category_id)
            logger.info(f"Preference {user_id}/{category_id} -> {'on' if enabled else 'off'}")
            return UserPreference.model_validate(stored)

        return await self.guard.with_lock(f"preference:{user_id}:{category_id}", write)

    async def set_all_enabled(
        self,
        user_id: str,
        enabled: bool,
        store_id: Optional[str] = None,
        user_type: str = UserType.CLIENT.value,
    ) -> list[UserPreference]:
        """
        Set every category the user can see to `enabled`.

        Each category is written independently. If any write fails the rest
        still run, then PreferenceWriteError is raised with every resulting
        preference (saved and local-only) as its fallback.
        """
        if not user_id:
            raise PreferenceValidationError("user_id is required")
        if not isinstance(enabled, bool):
            raise PreferenceValidationError("enabled must be a boolean")

        categories = await self.categories.get_categories_for_user(user_type, store_id)
        results: list[UserPreference] = []
        failures = 0
        for category in categories:
            try:
                results.append(await self.set_enabled(user_id, category.id, enabled))
            except PreferenceWriteError as e:
                failures += 1
                results.append(e.fallback)

        if failures:
            raise PreferenceWriteError(
                f"{failures} of {len(categories)} preferences could not be saved",
                fallback=results,
            )
        return results

    async def flush_pending(self, user_id: Optional[str] = None) -> int:
        """
        Replay locally kept toggles to the durable store.

        Stops at the first backend failure; what is left stays pending.

        Returns:
            Number of preferences written
        """
        flushed = 0
        for preference in self.fallback.pending(user_id):
            try:
                await self.set_enabled(preference.user_id, preference.category_id, preference.is_enabled)
            except PreferenceWriteError:
                logger.warning(f"Backend still unavailable, {len(self.fallback)} preference(s) pending")
                break
            flushed += 1
        if flushed:
            logger.info(f"Flushed {flushed} pending preference(s)")
        return flushed


def _validate(user_id: str, category_id: str, enabled: bool) -> None:
    if not isinstance(user_id, str) or not user_id.strip():
        raise PreferenceValidationError("user_id is required")
    if not isinstance(category_id, str) or not category_id.strip():
        raise PreferenceValidationError("category_id is required")
    if not isinstance(enabled, bool):
        raise PreferenceValidationError("enabled must be a boolean")
