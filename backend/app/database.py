import os
import logging
from typing import Optional, TypeVar, Type, Iterable, Any
from sqlalchemy import (
    create_engine, Column, String, Text, Boolean, MetaData, Table, func, select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool
from pydantic import BaseModel

from app.errors import ConflictError, NotFoundError, PersistenceError
from app.models import (
    User, SubscriptionRecord, SubscriptionStatus, Property, ActivityLog, Notification, utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

DEFAULT_DATABASE_URL = "sqlite:///./promanage.db"


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


metadata = MetaData()

users_table = Table(
    "users", metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), index=True),
    Column("data", Text, nullable=False),
)

# status / trial_used / customer id are duplicated out of `data` so that
# lookups and conditional updates can be expressed in SQL.
subscriptions_table = Table(
    "subscriptions", metadata,
    Column("id", String(36), primary_key=True),
    Column("owner_id", String(36), unique=True, index=True),
    Column("status", String(32), index=True),
    Column("trial_used", Boolean, nullable=False, default=False),
    Column("stripe_customer_id", String(255), index=True),
    Column("data", Text, nullable=False),
)

properties_table = Table(
    "properties", metadata,
    Column("id", String(36), primary_key=True),
    Column("landlord_id", String(36), index=True),
    Column("deleted", Boolean, nullable=False, default=False),
    Column("data", Text, nullable=False),
)

activity_logs_table = Table(
    "activity_logs", metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), index=True),
    Column("data", Text, nullable=False),
)

notifications_table = Table(
    "notifications", metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), index=True),
    Column("data", Text, nullable=False),
)


def _serialize(obj: BaseModel) -> str:
    return obj.model_dump_json()


def _deserialize(model_class: Type[T], data: str) -> T:
    return model_class.model_validate_json(data)


def _subscription_columns(record: SubscriptionRecord) -> dict:
    return {
        "owner_id": record.owner_id,
        "status": record.status.value,
        "trial_used": record.trial_used,
        "stripe_customer_id": record.stripe_customer_id,
        "data": _serialize(record),
    }


class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.engine = build_engine(database_url or os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL))
        metadata.create_all(self.engine)

    # ==================== USERS ====================

    def get_user(self, user_id: str) -> Optional[User]:
        with self.engine.connect() as conn:
            result = conn.execute(
                users_table.select().where(users_table.c.id == user_id)
            ).fetchone()
            return _deserialize(User, result.data) if result else None

    def save_user(self, user: User) -> User:
        with self.engine.begin() as conn:
            existing = conn.execute(
                users_table.select().where(users_table.c.id == user.id)
            ).fetchone()
            if existing:
                conn.execute(
                    users_table.update().where(users_table.c.id == user.id).values(
                        email=user.email, data=_serialize(user)
                    )
                )
            else:
                conn.execute(
                    users_table.insert().values(
                        id=user.id, email=user.email, data=_serialize(user)
                    )
                )
        return user

    # ==================== SUBSCRIPTIONS ====================

    def get_subscription_record(self, owner_id: str) -> Optional[SubscriptionRecord]:
        with self.engine.connect() as conn:
            result = conn.execute(
                subscriptions_table.select().where(subscriptions_table.c.owner_id == owner_id)
            ).fetchone()
            return _deserialize(SubscriptionRecord, result.data) if result else None

    def get_subscription_record_by_customer(self, customer_id: str) -> Optional[SubscriptionRecord]:
        with self.engine.connect() as conn:
            result = conn.execute(
                subscriptions_table.select().where(
                    subscriptions_table.c.stripe_customer_id == customer_id
                )
            ).fetchone()
            return _deserialize(SubscriptionRecord, result.data) if result else None

    def create_subscription_record(self, record: SubscriptionRecord) -> SubscriptionRecord:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    subscriptions_table.insert().values(id=record.id, **_subscription_columns(record))
                )
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to save subscription.", detail=str(e)) from e
        return record

    def update_subscription_record(
        self,
        record_id: str,
        updates: dict[str, Any],
        expected_statuses: Optional[Iterable[SubscriptionStatus]] = None,
        require_trial_unused: bool = False,
    ) -> SubscriptionRecord:
        """Apply `updates` to one record inside a single transaction.

        When `expected_statuses` or `require_trial_unused` are given the write
        only happens if the stored row still matches, otherwise ConflictError
        is raised and nothing changes.
        """
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    subscriptions_table.select()
                    .where(subscriptions_table.c.id == record_id)
                    .with_for_update()
                ).fetchone()
                if row is None:
                    raise NotFoundError("Subscription not found", detail=f"record {record_id}")

                current = _deserialize(SubscriptionRecord, row.data)
                updated = current.model_copy(update={**updates, "updated_at": utcnow()})
                # Re-validate so enum/datetime fields are coerced before they are stored
                updated = SubscriptionRecord.model_validate(updated.model_dump())
                if current.trial_used and not updated.trial_used:
                    updated.trial_used = True

                stmt = subscriptions_table.update().where(subscriptions_table.c.id == record_id)
                if expected_statuses is not None:
                    stmt = stmt.where(
                        subscriptions_table.c.status.in_([s.value for s in expected_statuses])
                    )
                if require_trial_unused:
                    stmt = stmt.where(subscriptions_table.c.trial_used.is_(False))
                result = conn.execute(stmt.values(**_subscription_columns(updated)))
                if result.rowcount == 0:
                    raise ConflictError(
                        "Your subscription changed while we were processing this request.",
                        detail=f"conditional update on {record_id} matched no rows",
                    )
                return updated
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to save subscription.", detail=str(e)) from e

    # ==================== PROPERTIES ====================

    def save_property(self, prop: Property) -> Property:
        with self.engine.begin() as conn:
            existing = conn.execute(
                properties_table.select().where(properties_table.c.id == prop.id)
            ).fetchone()
            values = dict(
                landlord_id=prop.landlord_id,
                deleted=prop.deleted_at is not None,
                data=_serialize(prop),
            )
            if existing:
                conn.execute(
                    properties_table.update().where(properties_table.c.id == prop.id).values(**values)
                )
            else:
                conn.execute(properties_table.insert().values(id=prop.id, **values))
        return prop

    def count_properties(self, landlord_id: str) -> int:
        """Count a landlord's properties, ignoring soft-deleted ones."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(properties_table).where(
                    properties_table.c.landlord_id == landlord_id,
                    properties_table.c.deleted.is_(False),
                )
            ).fetchone()
            return result[0] if result else 0

    # ==================== ACTIVITY / NOTIFICATIONS ====================

    def create_activity_log(self, entry: ActivityLog) -> ActivityLog:
        with self.engine.begin() as conn:
            conn.execute(
                activity_logs_table.insert().values(
                    id=entry.id, user_id=entry.user_id, data=_serialize(entry)
                )
            )
        return entry

    def list_activity_logs(self, user_id: str) -> list[ActivityLog]:
        with self.engine.connect() as conn:
            results = conn.execute(
                activity_logs_table.select().where(activity_logs_table.c.user_id == user_id)
            ).fetchall()
            entries = [_deserialize(ActivityLog, r.data) for r in results]
            return sorted(entries, key=lambda e: e.created_at)

    def create_notification(self, notification: Notification) -> Notification:
        with self.engine.begin() as conn:
            conn.execute(
                notifications_table.insert().values(
                    id=notification.id, user_id=notification.user_id, data=_serialize(notification)
                )
            )
        return notification

    def list_notifications(self, user_id: str) -> list[Notification]:
        with self.engine.connect() as conn:
            results = conn.execute(
                notifications_table.select().where(notifications_table.c.user_id == user_id)
            ).fetchall()
            notifications = [_deserialize(Notification, r.data) for r in results]
            return sorted(notifications, key=lambda n: n.created_at)


db = Database()
