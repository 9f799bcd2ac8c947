"""Temporary storage for checkout attempts.

An attempt holds the purchase intent between session creation and the
processor's success webhook. The attempt id travels in processor metadata and
is the only link back to the cart, so materializers read it once and delete it
after the order exists. Entries left behind by failures stay readable for
manual recovery; the Redis backend adds a TTL as a safety net.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol
from uuid import uuid4

import redis
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete

from scoopshop.common.logging import logger
from scoopshop.services.checkout.models import CheckoutAttemptRecord
from scoopshop.services.checkout.schemas import CheckoutContext


def new_attempt_id() -> str:
    return str(uuid4())


class CheckoutAttemptStore(Protocol):
    """Keyed put/get/delete capability consumed by the checkout components."""

    def put(self, attempt_id: str, context: CheckoutContext) -> None: ...

    def get(self, attempt_id: str) -> CheckoutContext | None: ...

    def delete(self, attempt_id: str) -> None: ...


def _decode(attempt_id: str, raw) -> CheckoutContext | None:
    try:
        if isinstance(raw, (str, bytes)):
            return CheckoutContext.model_validate_json(raw)
        return CheckoutContext.model_validate(raw)
    except PydanticValidationError as exc:
        logger.error("checkout_attempt_unreadable attempt_id=%s error=%s", attempt_id, exc)
        return None


class RedisCheckoutAttemptStore:
    """Attempts as JSON strings under `checkout:attempt:<id>` with a TTL."""

    def __init__(self, client: redis.Redis, ttl_seconds: int) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int) -> "RedisCheckoutAttemptStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), ttl_seconds)

    @staticmethod
    def _key(attempt_id: str) -> str:
        return f"checkout:attempt:{attempt_id}"

    def put(self, attempt_id: str, context: CheckoutContext) -> None:
        self.client.setex(self._key(attempt_id), self.ttl_seconds, context.model_dump_json())
        logger.info("checkout_attempt_saved attempt_id=%s backend=redis", attempt_id)

    def get(self, attempt_id: str) -> CheckoutContext | None:
        raw = self.client.get(self._key(attempt_id))
        if raw is None:
            logger.info("checkout_attempt_not_found attempt_id=%s", attempt_id)
            return None
        return _decode(attempt_id, raw)

    def delete(self, attempt_id: str) -> None:
        if not self.client.delete(self._key(attempt_id)):
            logger.warning("checkout_attempt_delete_missing attempt_id=%s", attempt_id)
            return
        logger.info("checkout_attempt_deleted attempt_id=%s", attempt_id)


class SqlCheckoutAttemptStore:
    """Attempts as JSON rows in the `checkout_attempts` table."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def put(self, attempt_id: str, context: CheckoutContext) -> None:
        with self.session_factory() as db:
            db.add(CheckoutAttemptRecord(id=attempt_id, data=context.model_dump(mode="json")))
            db.commit()
        logger.info("checkout_attempt_saved attempt_id=%s backend=database", attempt_id)

    def get(self, attempt_id: str) -> CheckoutContext | None:
        with self.session_factory() as db:
            record = db.get(CheckoutAttemptRecord, attempt_id)
            if record is None:
                logger.info("checkout_attempt_not_found attempt_id=%s", attempt_id)
                return None
            return _decode(attempt_id, record.data)

    def delete(self, attempt_id: str) -> None:
        with self.session_factory() as db:
            result = db.execute(delete(CheckoutAttemptRecord).where(CheckoutAttemptRecord.id == attempt_id))
            db.commit()
        if result.rowcount == 0:
            logger.warning("checkout_attempt_delete_missing attempt_id=%s", attempt_id)
            return
        logger.info("checkout_attempt_deleted attempt_id=%s", attempt_id)

    def purge_older_than(self, max_age: timedelta) -> int:
        """Delete abandoned attempts; returns the number of rows removed."""

        cutoff = datetime.now(timezone.utc) - max_age
        with self.session_factory() as db:
            result = db.execute(delete(CheckoutAttemptRecord).where(CheckoutAttemptRecord.created_at < cutoff))
            db.commit()
        logger.info("checkout_attempts_purged count=%s cutoff=%s", result.rowcount, cutoff.isoformat())
        return result.rowcount


class InMemoryCheckoutAttemptStore:
    """Process-local store for development and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, str] = {}

    def put(self, attempt_id: str, context: CheckoutContext) -> None:
        with self._lock:
            self._entries[attempt_id] = context.model_dump_json()

    def get(self, attempt_id: str) -> CheckoutContext | None:
        with self._lock:
            raw = self._entries.get(attempt_id)
        if raw is None:
            logger.info("checkout_attempt_not_found attempt_id=%s", attempt_id)
            return None
        return _decode(attempt_id, raw)

    def delete(self, attempt_id: str) -> None:
        with self._lock:
            removed = self._entries.pop(attempt_id, None)
        if removed is None:
            logger.warning("checkout_attempt_delete_missing attempt_id=%s", attempt_id)

    def __contains__(self, attempt_id: str) -> bool:
        with self._lock:
            return attempt_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def build_attempt_store(settings, session_factory) -> CheckoutAttemptStore:
    """Pick the backend named by `checkout_attempt_backend`."""

    backend = settings.checkout_attempt_backend
    if backend == "redis":
        return RedisCheckoutAttemptStore.from_url(settings.redis_url, settings.checkout_attempt_ttl_seconds)
    if backend == "database":
        return SqlCheckoutAttemptStore(session_factory)
    if backend == "memory":
        return InMemoryCheckoutAttemptStore()
    raise ValueError(f"unknown checkout attempt backend: {backend}")
