"""
Profile store.

Point lookups and single-row writes keyed by user_id or
stripe_subscription_id. Each write is one statement, so it is atomic at
the row level; no operation spans more than one row.
"""

from typing import Optional, Tuple

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker

from mealplan.core.database import profiles, session_scope
from mealplan.core.errors import ConflictError, NotFoundError, StoreUnavailableError
from mealplan.models.profile import Profile

UPDATABLE_FIELDS = frozenset({"subscription_tier", "stripe_subscription_id", "subscription_active"})


def _row_to_profile(row) -> Profile:
    return Profile(
        user_id=row.user_id,
        email=row.email,
        subscription_tier=row.subscription_tier,
        stripe_subscription_id=row.stripe_subscription_id,
        subscription_active=bool(row.subscription_active),
    )


class ProfileStore:
    """SQLAlchemy-backed Profile persistence."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    def find(self, user_id: str) -> Optional[Profile]:
        try:
            with self._session() as session:
                row = session.execute(
                    select(profiles).where(profiles.c.user_id == user_id)
                ).first()
        except (OperationalError, PoolTimeoutError) as e:
            raise StoreUnavailableError(f"Profile lookup failed: {e}")
        return _row_to_profile(row) if row else None

    def find_by_subscription_id(self, subscription_id: str) -> Optional[Profile]:
        try:
            with self._session() as session:
                row = session.execute(
                    select(profiles).where(profiles.c.stripe_subscription_id == subscription_id)
                ).first()
        except (OperationalError, PoolTimeoutError) as e:
            raise StoreUnavailableError(f"Profile lookup failed: {e}")
        return _row_to_profile(row) if row else None

    def create(self, user_id: str, email: str) -> Profile:
        """
        Insert a new unsubscribed profile.

        Raises:
            ConflictError: A profile already exists for user_id
        """
        profile = Profile(user_id=user_id, email=email)
        try:
            with self._session() as session:
                session.execute(
                    insert(profiles).values(
                        user_id=profile.user_id,
                        email=profile.email,
                        subscription_tier=None,
                        stripe_subscription_id=None,
                        subscription_active=False,
                    )
                )
        except IntegrityError:
            raise ConflictError(f"Profile already exists for user {user_id}", code="profile_exists")
        except (OperationalError, PoolTimeoutError) as e:
            raise StoreUnavailableError(f"Profile create failed: {e}")
        return profile

    def get_or_create(self, user_id: str, email: str) -> Tuple[Profile, bool]:
        """Idempotent create. Returns (profile, created)."""
        existing = self.find(user_id)
        if existing:
            return existing, False
        try:
            return self.create(user_id, email), True
        except ConflictError:
            # Lost a race with a concurrent create for the same identity
            existing = self.find(user_id)
            if existing is None:
                raise
            return existing, False

    def update(self, user_id: str, **fields) -> Profile:
        """
        Apply a partial update to the billing fields of one profile.

        Raises:
            ValueError: Unknown or immutable field
            NotFoundError: No profile for user_id
            ConflictError: stripe_subscription_id already belongs to another profile
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update profile fields: {', '.join(sorted(unknown))}")
        if not fields:
            existing = self.find(user_id)
            if existing is None:
                raise NotFoundError(f"No profile found for user {user_id}", code="profile_not_found")
            return existing

        try:
            with self._session() as session:
                result = session.execute(
                    update(profiles)
                    .where(profiles.c.user_id == user_id)
                    .values(**fields)
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"No profile found for user {user_id}", code="profile_not_found")
                row = session.execute(
                    select(profiles).where(profiles.c.user_id == user_id)
                ).first()
        except IntegrityError:
            raise ConflictError(
                f"Subscription {fields.get('stripe_subscription_id')} already belongs to another profile",
                code="subscription_conflict",
            )
        except (OperationalError, PoolTimeoutError) as e:
            raise StoreUnavailableError(f"Profile update failed: {e}")
        return _row_to_profile(row)
