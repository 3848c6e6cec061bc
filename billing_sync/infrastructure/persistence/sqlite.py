import functools
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from ...domain.errors import OwnershipConflict, StoreUnavailable, UserNotFound
from ...domain.models import StoreWriteResult, SubscriptionFields, SubscriptionRecord
from ...domain.ports.persistence import PersistenceGateway

T = TypeVar("T")


def _translate_errors(func: Callable[..., T]) -> Callable[..., T]:
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return func(*args, **kwargs)
        except sqlite3.IntegrityError as exc:
            raise OwnershipConflict(f"Record already bound to another user: {exc}") from exc
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Subscription store error: {exc}") from exc

    return wrapper


class SQLitePersistence(PersistenceGateway):
    """SQLite-backed implementation of the persistence gateway.

    The connection runs in autocommit mode; every mutation opens its own
    ``BEGIN IMMEDIATE`` transaction so the guarded statement and the pre/post
    reads happen under one database write lock.
    """

    def __init__(self, path: Path, busy_timeout: float = 5.0) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            path,
            timeout=busy_timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._initialize()

    def _initialize(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT,
                    stripe_customer_id TEXT UNIQUE,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS subscriptions (
                    user_id TEXT PRIMARY KEY,
                    provider_subscription_id TEXT NOT NULL UNIQUE,
                    plan_id TEXT NOT NULL,
                    current_period_end INTEGER NOT NULL,
                    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS webhook_events (
                    event_id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 1,
                    received_at TEXT NOT NULL
                );
                """
            )

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    # SubscriptionStore API --------------------------------------------------
    @_translate_errors
    def upsert_by_user(self, user_id: str, fields: SubscriptionFields) -> StoreWriteResult:
        if (
            fields.provider_subscription_id is None
            or fields.plan_id is None
            or fields.current_period_end is None
        ):
            raise ValueError("Upsert requires subscription, plan and period end.")
        period_end = self._to_epoch(fields.current_period_end)
        now = self._now()
        with self._write_transaction() as conn:
            before = self._select_by_user(conn, user_id)
            # Same Stripe subscription keeps the period-end guard; a new one replaces the row.
            conn.execute(
                """
                INSERT INTO subscriptions (
                    user_id, provider_subscription_id, plan_id, current_period_end,
                    cancel_at_period_end, created_at, updated_at
                )
                VALUES (:user_id, :sub_id, :plan_id, :period_end, :cancel, :now, :now)
                ON CONFLICT(user_id) DO UPDATE SET
                    plan_id = CASE
                        WHEN subscriptions.provider_subscription_id = excluded.provider_subscription_id
                             AND excluded.current_period_end < subscriptions.current_period_end
                        THEN subscriptions.plan_id ELSE excluded.plan_id END,
                    current_period_end = CASE
                        WHEN subscriptions.provider_subscription_id = excluded.provider_subscription_id
                             AND excluded.current_period_end < subscriptions.current_period_end
                        THEN subscriptions.current_period_end ELSE excluded.current_period_end END,
                    provider_subscription_id = excluded.provider_subscription_id,
                    cancel_at_period_end = excluded.cancel_at_period_end,
                    updated_at = excluded.updated_at
                """,
                {
                    "user_id": user_id,
                    "sub_id": fields.provider_subscription_id,
                    "plan_id": fields.plan_id,
                    "period_end": period_end,
                    "cancel": int(bool(fields.cancel_at_period_end)),
                    "now": now,
                },
            )
            after = self._select_by_user(conn, user_id)
        return StoreWriteResult(
            before=before,
            after=after,
            stale_period_end=self._is_stale(before, fields),
        )

    @_translate_errors
    def update_by_provider_subscription_id(
        self, provider_subscription_id: str, fields: SubscriptionFields
    ) -> StoreWriteResult:
        period_end = (
            self._to_epoch(fields.current_period_end)
            if fields.current_period_end is not None
            else None
        )
        cancel = None if fields.cancel_at_period_end is None else int(fields.cancel_at_period_end)
        with self._write_transaction() as conn:
            before = self._select_by_subscription(conn, provider_subscription_id)
            if before is None:
                return StoreWriteResult(before=None, after=None)
            # Plan follows any period end that is not older than the stored one;
            # the period end itself only moves forward.
            conn.execute(
                """
                UPDATE subscriptions SET
                    plan_id = CASE
                        WHEN :plan_id IS NOT NULL
                             AND (:period_end IS NULL OR :period_end >= current_period_end)
                        THEN :plan_id ELSE plan_id END,
                    current_period_end = CASE
                        WHEN :period_end IS NOT NULL AND :period_end > current_period_end
                        THEN :period_end ELSE current_period_end END,
                    cancel_at_period_end = COALESCE(:cancel, cancel_at_period_end),
                    updated_at = :now
                WHERE provider_subscription_id = :sub_id
                """,
                {
                    "plan_id": fields.plan_id,
                    "period_end": period_end,
                    "cancel": cancel,
                    "now": self._now(),
                    "sub_id": provider_subscription_id,
                },
            )
            after = self._select_by_subscription(conn, provider_subscription_id)
        return StoreWriteResult(
            before=before,
            after=after,
            stale_period_end=self._is_stale(before, fields),
        )

    @_translate_errors
    def delete_by_provider_subscription_id(self, provider_subscription_id: str) -> StoreWriteResult:
        with self._write_transaction() as conn:
            before = self._select_by_subscription(conn, provider_subscription_id)
            if before is not None:
                conn.execute(
                    "DELETE FROM subscriptions WHERE provider_subscription_id = ?",
                    (provider_subscription_id,),
                )
        return StoreWriteResult(before=before, after=None)

    @_translate_errors
    def find_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        with self._lock:
            return self._select_by_user(self._conn, user_id)

    @_translate_errors
    def find_by_provider_subscription_id(
        self, provider_subscription_id: str
    ) -> Optional[SubscriptionRecord]:
        with self._lock:
            return self._select_by_subscription(self._conn, provider_subscription_id)

    # CustomerDirectory API --------------------------------------------------
    @_translate_errors
    def create_user(
        self, user_id: str, email: Optional[str] = None, stripe_customer_id: Optional[str] = None
    ) -> None:
        with self._write_transaction() as conn:
            conn.execute(
                """
                INSERT INTO users (id, email, stripe_customer_id, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = COALESCE(excluded.email, users.email),
                    stripe_customer_id = COALESCE(excluded.stripe_customer_id, users.stripe_customer_id)
                """,
                (user_id, email, stripe_customer_id, self._now()),
            )

    @_translate_errors
    def user_exists(self, user_id: str) -> bool:
        with self._lock:
            cur = self._conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,))
            return cur.fetchone() is not None

    @_translate_errors
    def find_user_by_customer(self, customer_id: str) -> Optional[str]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT id FROM users WHERE stripe_customer_id = ?", (customer_id,)
            )
            row = cur.fetchone()
        return row["id"] if row else None

    @_translate_errors
    def link_customer(self, user_id: str, customer_id: str) -> None:
        with self._write_transaction() as conn:
            cur = conn.execute(
                "UPDATE users SET stripe_customer_id = ? WHERE id = ?",
                (customer_id, user_id),
            )
            if cur.rowcount == 0:
                raise UserNotFound(f"User not found: {user_id}")

    # ProcessedEventLog API --------------------------------------------------
    @_translate_errors
    def record_event(self, event_id: str, kind: str, outcome: str, received_at: datetime) -> bool:
        """Store the latest outcome for an event; returns ``False`` on redelivery."""
        with self._write_transaction() as conn:
            cur = conn.execute("SELECT 1 FROM webhook_events WHERE event_id = ?", (event_id,))
            is_new = cur.fetchone() is None
            conn.execute(
                """
                INSERT INTO webhook_events (event_id, kind, outcome, attempts, received_at)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(event_id) DO UPDATE SET
                    outcome = excluded.outcome,
                    attempts = webhook_events.attempts + 1
                """,
                (event_id, kind, outcome, received_at.isoformat()),
            )
        return is_new

    @_translate_errors
    def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT event_id, kind, outcome, attempts, received_at FROM webhook_events "
                "WHERE event_id = ?",
                (event_id,),
            )
            row = cur.fetchone()
        return dict(row) if row else None

    # Helpers ----------------------------------------------------------------
    def _select_by_user(self, conn: sqlite3.Connection, user_id: str) -> Optional[SubscriptionRecord]:
        cur = conn.execute("SELECT * FROM subscriptions WHERE user_id = ?", (user_id,))
        row = cur.fetchone()
        return self._row_to_record(row) if row else None

    def _select_by_subscription(
        self, conn: sqlite3.Connection, provider_subscription_id: str
    ) -> Optional[SubscriptionRecord]:
        cur = conn.execute(
            "SELECT * FROM subscriptions WHERE provider_subscription_id = ?",
            (provider_subscription_id,),
        )
        row = cur.fetchone()
        return self._row_to_record(row) if row else None

    @staticmethod
    def _is_stale(before: Optional[SubscriptionRecord], fields: SubscriptionFields) -> bool:
        if before is None or fields.current_period_end is None:
            return False
        if (
            fields.provider_subscription_id is not None
            and fields.provider_subscription_id != before.provider_subscription_id
        ):
            return False
        return SQLitePersistence._to_epoch(fields.current_period_end) < SQLitePersistence._to_epoch(
            before.current_period_end
        )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> SubscriptionRecord:
        return SubscriptionRecord(
            user_id=row["user_id"],
            provider_subscription_id=row["provider_subscription_id"],
            plan_id=row["plan_id"],
            current_period_end=datetime.fromtimestamp(row["current_period_end"], tz=timezone.utc),
            cancel_at_period_end=bool(row["cancel_at_period_end"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _to_epoch(value: datetime) -> int:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).replace(microsecond=0).isoformat()
