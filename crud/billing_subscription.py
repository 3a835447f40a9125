"""
Repositories for billing subscription records.

The billing state machine only needs get/save per user id, so the
in-memory map and the SQLAlchemy table are interchangeable.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import BillingSubscription
from models.billing import BillingPlan, BillingStatus, BillingSubscriptionRecord

logger = logging.getLogger(__name__)

_MISSING_TABLE_MARKERS = ("no such table", "does not exist", "undefinedtable")


def default_subscription(user_id: str, now: datetime) -> BillingSubscriptionRecord:
    """FREE/ACTIVE record every user starts with."""
    return BillingSubscriptionRecord(
        user_id=user_id,
        plan=BillingPlan.FREE,
        status=BillingStatus.ACTIVE,
        updated_at=now,
    )


class BillingSubscriptionRepository(ABC):

    @abstractmethod
    async def get(self, user_id: str) -> Optional[BillingSubscriptionRecord]:
        ...

    @abstractmethod
    async def save(self, record: BillingSubscriptionRecord) -> BillingSubscriptionRecord:
        ...

    async def get_or_create(self, user_id: str, now: datetime) -> BillingSubscriptionRecord:
        existing = await self.get(user_id)
        if existing is not None:
            return existing
        return await self.save(default_subscription(user_id, now))


class InMemoryBillingSubscriptionRepository(BillingSubscriptionRepository):
    """
    Process-wide map of user id -> record.

    Nothing here awaits, so a read followed by a write on the event loop
    cannot interleave with another request.
    """

    def __init__(self):
        self._records: Dict[str, BillingSubscriptionRecord] = {}

    async def get(self, user_id: str) -> Optional[BillingSubscriptionRecord]:
        return self._records.get(user_id)

    async def save(self, record: BillingSubscriptionRecord) -> BillingSubscriptionRecord:
        self._records[record.user_id] = record
        return record

    def clear(self) -> None:
        """Drop every record (test harnesses only)."""
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back naive
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _is_missing_table(error: Exception) -> bool:
    text = str(getattr(error, "orig", error)).lower()
    return any(marker in text for marker in _MISSING_TABLE_MARKERS)


class SqlBillingSubscriptionRepository(BillingSubscriptionRepository):
    """
    Repository backed by the billing_subscriptions table.
    Uses the request-scoped AsyncSession; get_db commits at the end of the request.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get(self, user_id: str) -> Optional[BillingSubscriptionRecord]:
        """
        Retrieve the subscription row for a user.

        When the table has not been migrated yet the user is treated as
        FREE/ACTIVE instead of failing the request.

        Args:
            user_id: Owning user id

        Returns:
            BillingSubscriptionRecord if found, None otherwise
        """
        try:
            result = await self.db.execute(
                select(BillingSubscription).where(BillingSubscription.user_id == user_id)
            )
        except (OperationalError, ProgrammingError) as e:
            if not _is_missing_table(e):
                raise
            logger.warning(f"billing_subscriptions table missing, treating user {user_id} as FREE: {e}")
            await self.db.rollback()
            return default_subscription(user_id, datetime.now(timezone.utc))

        row = result.scalar_one_or_none()
        if row is None:
            return None
        return self._to_record(row)

    async def save(self, record: BillingSubscriptionRecord) -> BillingSubscriptionRecord:
        """
        Insert or update the row for record.user_id.

        If another request inserts the same user's row first, the insert is
        rolled back and the winning row is updated instead.

        Args:
            record: Full record to persist

        Returns:
            The persisted record
        """
        row = await self.db.get(BillingSubscription, record.user_id)
        if row is None:
            row = BillingSubscription(user_id=record.user_id)
            self._apply(row, record)
            self.db.add(row)
            try:
                await self.db.flush()
                return record
            except IntegrityError:
                logger.info(f"Subscription row for user {record.user_id} was created concurrently, updating it")
                await self.db.rollback()
                row = await self.db.get(BillingSubscription, record.user_id)
                if row is None:
                    raise

        self._apply(row, record)
        await self.db.flush()
        return record

    @staticmethod
    def _apply(row: BillingSubscription, record: BillingSubscriptionRecord) -> None:
        row.plan = record.plan.value
        row.status = record.status.value
        row.current_period_start = record.current_period_start
        row.current_period_end = record.current_period_end
        row.cancel_at_period_end = record.cancel_at_period_end
        row.canceled_at = record.canceled_at
        row.past_due_marked_at = record.past_due_marked_at
        row.grace_period_ends_at = record.grace_period_ends_at
        row.updated_at = record.updated_at

    @staticmethod
    def _to_record(row: BillingSubscription) -> BillingSubscriptionRecord:
        return BillingSubscriptionRecord(
            user_id=row.user_id,
            plan=BillingPlan(row.plan),
            status=BillingStatus(row.status),
            current_period_start=_as_utc(row.current_period_start),
            current_period_end=_as_utc(row.current_period_end),
            cancel_at_period_end=bool(row.cancel_at_period_end),
            canceled_at=_as_utc(row.canceled_at),
            past_due_marked_at=_as_utc(row.past_due_marked_at),
            grace_period_ends_at=_as_utc(row.grace_period_ends_at),
            updated_at=_as_utc(row.updated_at),
        )
