"""Pull-based ingress for connections that cannot receive webhooks.

One asyncio task per polling connection drains the Green API notification
queue. A notification is deleted from the queue only once it has been
persisted or has reached a terminal outcome, so a crash between receive and
persist means the provider hands it out again and the dedup key absorbs it.
"""

import asyncio
import os
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from uuid import UUID

import redis

from sari.config import settings
from sari.database import SessionLocal
from sari.errors import MalformedPayload, PersistenceFailure, ProviderError, UnknownConnection
from sari.logging_config import bind_logger, get_logger
from sari.services.alert_service import alert_error
from sari.services.connection_service import list_polling_connections
from sari.services.greenapi_service import GreenAPIClient
from sari.services.ingest_service import IngestChannel, IngestResult, ingest
from sari.services.reply_service import run_reply_pipeline

logger = get_logger("polling_service")

LEASE_PREFIX = "sari:polling_lease"
MAX_NOTIFICATIONS_PER_TICK = 20

_redis_client = None


def _is_env_enabled(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def is_polling_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("POLLING_ENABLED"), default=settings.polling_enabled)


def get_redis_client():
    global _redis_client
    if os.environ.get("PYTEST_CURRENT_TEST") or not settings.redis_url:
        return None
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=1.0,
            socket_connect_timeout=1.0,
        )
    return _redis_client


@dataclass(frozen=True)
class PollingTarget:
    connection_id: UUID
    merchant_id: UUID
    instance_id: str
    api_token: str


class PollingLease:
    """Redis lease so that only one replica polls a given connection."""

    def __init__(self, client, connection_id: UUID, ttl_seconds: int):
        self.client = client
        self.key = f"{LEASE_PREFIX}:{connection_id}"
        self.ttl_seconds = ttl_seconds
        self.owner = uuid.uuid4().hex

    def acquire(self) -> bool:
        if self.client.set(self.key, self.owner, nx=True, ex=self.ttl_seconds):
            return True
        if self.client.get(self.key) == self.owner:
            self.client.expire(self.key, self.ttl_seconds)
            return True
        return False

    def release(self) -> None:
        if self.client.get(self.key) == self.owner:
            self.client.delete(self.key)


class PollingWorker:
    def __init__(
        self,
        target: PollingTarget,
        client: Optional[GreenAPIClient] = None,
        session_factory: Callable = SessionLocal,
        reply_handler: Callable[[UUID, bool], object] = run_reply_pipeline,
        lease: Optional[PollingLease] = None,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
        interval_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
    ):
        self.target = target
        self.client = client or GreenAPIClient(target.instance_id, target.api_token)
        self.session_factory = session_factory
        self.reply_handler = reply_handler
        self.lease = lease
        self.sleep_func = sleep_func
        self.interval_seconds = max(
            interval_seconds if interval_seconds is not None else settings.polling_interval_seconds, 0.1
        )
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.polling_max_attempts)
        self.retry_backoff_seconds = (
            retry_backoff_seconds if retry_backoff_seconds is not None else settings.polling_retry_backoff_seconds
        )
        self.log = bind_logger("polling_service", connection_id=target.connection_id, merchant_id=target.merchant_id)

    def _ingest(self, body) -> IngestResult:
        db = self.session_factory()
        try:
            return ingest(db, body, IngestChannel.POLLING)
        finally:
            db.close()

    async def _holds_lease(self) -> bool:
        if self.lease is None:
            return True
        try:
            return await asyncio.to_thread(self.lease.acquire)
        except redis.RedisError as e:
            self.log.warning(f"Polling lease unavailable, polling anyway: {e}")
            return True

    async def _delete(self, receipt_id) -> None:
        if receipt_id is None:
            return
        try:
            await asyncio.to_thread(self.client.delete_notification, receipt_id)
        except ProviderError as e:
            self.log.warning(f"deleteNotification failed: {e}", context={"receipt_id": receipt_id})

    async def handle_notification(self, notification: dict) -> str:
        """Ingest one queued notification. Returns the outcome label."""
        receipt_id = notification.get("receiptId")
        body = notification.get("body")
        context = {"receipt_id": receipt_id}

        result: Optional[IngestResult] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await asyncio.to_thread(self._ingest, body)
                break
            except MalformedPayload as e:
                self.log.warning(f"Dropping malformed notification: {e}", context=context)
                await self._delete(receipt_id)
                return "malformed"
            except UnknownConnection as e:
                self.log.warning(f"Dropping notification: {e}", context=context)
                await self._delete(receipt_id)
                return "unknown_connection"
            except PersistenceFailure as e:
                if attempt == self.max_attempts:
                    self.log.error(
                        f"Giving up on notification after {attempt} attempts: {e}",
                        context={**context, "attempts": attempt},
                    )
                    alert_error(
                        "Polling ingest failed permanently",
                        {**context, "connection_id": str(self.target.connection_id), "error": str(e)},
                    )
                    return "failed"
                self.log.warning(f"Ingest attempt {attempt} failed, retrying: {e}", context=context)
                await self.sleep_func(self.retry_backoff_seconds * (2 ** (attempt - 1)))
            except Exception as e:
                self.log.error(f"Dropping notification after unexpected error: {e}", context=context, exc_info=True)
                alert_error(
                    "Polling dropped an unprocessable notification",
                    {**context, "connection_id": str(self.target.connection_id), "error": str(e)},
                )
                await self._delete(receipt_id)
                return "dropped"

        await self._delete(receipt_id)
        if result.accepted:
            await asyncio.to_thread(self.reply_handler, result.message_id, result.is_first_contact)
        return result.status.value

    async def tick(self) -> int:
        """Drain the queue. Returns the number of notifications handled."""
        if not await self._holds_lease():
            return 0

        handled = 0
        while handled < MAX_NOTIFICATIONS_PER_TICK:
            try:
                notification = await asyncio.to_thread(self.client.receive_notification)
            except ProviderError as e:
                self.log.warning(f"receiveNotification failed: {e}", context={"status_code": e.status_code})
                break
            if not notification:
                break
            outcome = await self.handle_notification(notification)
            handled += 1
            if outcome == "failed":
                break
        return handled

    async def run(self) -> None:
        self.log.info("Polling worker started")
        while True:
            try:
                await self.tick()
                await self.sleep_func(self.interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                self.log.error("Polling tick failed", context={"error": str(exc)})
                await self.sleep_func(self.interval_seconds)
        if self.lease is not None:
            try:
                self.lease.release()
            except redis.RedisError as e:
                self.log.warning(f"Failed to release polling lease: {e}")
        self.log.info("Polling worker stopped")


class PollingSupervisor:
    """Keeps one PollingWorker task per active polling connection."""

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        worker_factory: Optional[Callable[[PollingTarget], PollingWorker]] = None,
        refresh_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.worker_factory = worker_factory or self._default_worker
        self.refresh_seconds = refresh_seconds if refresh_seconds is not None else settings.polling_refresh_seconds
        self.tasks: dict[PollingTarget, asyncio.Task] = {}

    @staticmethod
    def _default_worker(target: PollingTarget) -> PollingWorker:
        redis_client = get_redis_client()
        lease = PollingLease(redis_client, target.connection_id, settings.polling_lease_seconds) if redis_client else None
        return PollingWorker(target, lease=lease)

    def _load_targets(self) -> set[PollingTarget]:
        db = self.session_factory()
        try:
            return {
                PollingTarget(
                    connection_id=conn.id,
                    merchant_id=conn.merchant_id,
                    instance_id=conn.instance_id,
                    api_token=conn.api_token,
                )
                for conn in list_polling_connections(db)
            }
        finally:
            db.close()

    async def reconcile(self) -> None:
        targets = await asyncio.to_thread(self._load_targets)

        for target in list(self.tasks):
            task = self.tasks[target]
            if target not in targets or task.done():
                task.cancel()
                del self.tasks[target]

        for target in targets:
            if target not in self.tasks:
                worker = self.worker_factory(target)
                self.tasks[target] = asyncio.create_task(worker.run())

        logger.info("Polling workers reconciled", extra={"context": {"workers": len(self.tasks)}})

    async def run(self) -> None:
        while True:
            try:
                await self.reconcile()
                await asyncio.sleep(self.refresh_seconds)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Polling supervisor refresh failed", extra={"context": {"error": str(exc)}})
                await asyncio.sleep(self.refresh_seconds)
        await self.stop()

    async def stop(self) -> None:
        tasks = list(self.tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.tasks.clear()
