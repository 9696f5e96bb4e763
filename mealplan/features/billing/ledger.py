"""
Billing event ledger.

Records every verified webhook event and every user-initiated subscription
change so the reconciliation engine can:
- skip event ids that were already applied (provider redelivery)
- reject events older than the newest applied event for the same
  subscription (out-of-order delivery)
- recognise subscriptions this service already released, so the
  provider's follow-up events for them are acknowledged instead of retried
"""
import hashlib
import time
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, insert, update, and_, func
from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker

from mealplan.core.database import billing_events, session_scope
from mealplan.core.errors import StoreUnavailableError
from mealplan.features.billing.provider import BillingEvent

# Outcomes that move a subscription's state forward
APPLIED = "applied"
RELEASED = "released"
IGNORED = "ignored"
STALE = "stale"
FAILED = "failed"

EFFECTIVE_OUTCOMES = (APPLIED, RELEASED)


class EventLedger:
    def __init__(self, session_factory: sessionmaker, clock=time.time, clock_skew_seconds: int = 5):
        self._session_factory = session_factory
        self._clock = clock
        self._clock_skew_seconds = clock_skew_seconds

    def _session(self):
        return session_scope(self._session_factory)

    def is_processed(self, event_id: str) -> bool:
        try:
            with self._session() as session:
                row = session.execute(
                    select(billing_events.c.processed).where(billing_events.c.event_id == event_id)
                ).first()
        except (OperationalError, PoolTimeoutError) as e:
            raise StoreUnavailableError(f"Event ledger lookup failed: {e}")
        return bool(row and row.processed)

    def begin(self, event: BillingEvent, subscription_id: Optional[str], raw_body: bytes = b"") -> None:
        """Record receipt of an event (no-op if this id was seen before)."""
        try:
            with self._session() as session:
                session.execute(
                    insert(billing_events).values(
                        event_id=event.id,
                        event_type=event.type,
                        subscription_id=subscription_id,
                        event_created=event.created,
                        processed=False,
                        payload_hash=hashlib.sha256(raw_body).hexdigest() if raw_body else None,
                    )
                )
        except IntegrityError:
            # Redelivery of an event whose earlier attempt failed
            return
        except (OperationalError, PoolTimeoutError) as e:
            raise StoreUnavailableError(f"Event ledger write failed: {e}")

    def finish(
        self,
        event_id: str,
        outcome: str,
        *,
        user_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        values = {
            "outcome": outcome,
            "processed": outcome != FAILED,
            "error": error,
            "processed_at": datetime.now(timezone.utc),
        }
        if user_id:
            values["user_id"] = user_id
        try:
            with self._session() as session:
                session.execute(
                    update(billing_events)
                    .where(billing_events.c.event_id == event_id)
                    .values(**values)
                )
        except (OperationalError, PoolTimeoutError) as e:
            raise StoreUnavailableError(f"Event ledger write failed: {e}")

    def latest_effective_created(self, subscription_id: str) -> Optional[int]:
        try:
            with self._session() as session:
                return session.execute(
                    select(func.max(billing_events.c.event_created)).where(
                        and_(
                            billing_events.c.subscription_id == subscription_id,
                            billing_events.c.outcome.in_(EFFECTIVE_OUTCOMES),
                        )
                    )
                ).scalar()
        except (OperationalError, PoolTimeoutError) as e:
            raise StoreUnavailableError(f"Event ledger lookup failed: {e}")

    def is_stale(self, subscription_id: Optional[str], created: int) -> bool:
        """True if a strictly newer event for this subscription was already applied."""
        if not subscription_id:
            return False
        latest = self.latest_effective_created(subscription_id)
        return latest is not None and created < latest

    def was_released(self, subscription_id: str) -> bool:
        try:
            with self._session() as session:
                row = session.execute(
                    select(billing_events.c.id).where(
                        and_(
                            billing_events.c.subscription_id == subscription_id,
                            billing_events.c.outcome == RELEASED,
                        )
                    ).limit(1)
                ).first()
        except (OperationalError, PoolTimeoutError) as e:
            raise StoreUnavailableError(f"Event ledger lookup failed: {e}")
        return row is not None

    def record_local(self, kind: str, subscription_id: str, user_id: str, outcome: str = APPLIED) -> None:
        """Record a user-initiated change as a ledger entry stamped with local time.

        Entries are stamped `clock_skew_seconds` early: provider events created
        within that window before the change still apply.
        """
        now = datetime.now(timezone.utc)
        try:
            with self._session() as session:
                session.execute(
                    insert(billing_events).values(
                        event_id=f"local_{uuid4().hex}",
                        event_type=f"local.{kind}",
                        subscription_id=subscription_id,
                        user_id=user_id,
                        event_created=int(self._clock()) - self._clock_skew_seconds,
                        processed=True,
                        outcome=outcome,
                        processed_at=now,
                    )
                )
        except (OperationalError, PoolTimeoutError) as e:
            raise StoreUnavailableError(f"Event ledger write failed: {e}")
