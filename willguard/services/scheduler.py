from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from willguard.core.clock import as_utc, utc_now
from willguard.core.config import get_settings
from willguard.persistence.db import SessionLocal
from willguard.services.escalation import run_escalation
from willguard.services.notifications import HttpNotificationChannel, NotificationChannel
from willguard.services.resilience import get_resilience_redis
from willguard.services.unlock import run_failsafe_checks
from willguard.services.verification import (
    expire_due_requests,
    issue_missing_credentials,
    open_due_verifications,
)


logger = logging.getLogger(__name__)

_local_lock = asyncio.Lock()
_local_lock_owner: str | None = None


@dataclass(slots=True)
class ScanLock:
    token: str
    redis: Any | None
    local: bool


def _is_missing_table_error(exc: Exception) -> bool:
    # Let the worker start before migrations have run.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


async def _acquire_local_lock(token: str) -> ScanLock | None:
    global _local_lock_owner
    if _local_lock.locked():
        return None
    await _local_lock.acquire()
    _local_lock_owner = token
    return ScanLock(token=token, redis=None, local=True)


async def acquire_scan_lock() -> ScanLock | None:
    """Take the cross-process scan lock, or ``None`` when another cycle holds it."""
    settings = get_settings()
    token = uuid4().hex
    redis = await get_resilience_redis()
    ttl_s = max(5, int(settings.scheduler_lock_ttl_s))
    if redis is not None:
        try:
            acquired = await redis.set(settings.scheduler_lock_key, token, nx=True, ex=ttl_s)
        except (RedisError, OSError) as exc:
            logger.warning("scan_lock_redis_unavailable falling back to local lock", exc_info=exc)
            return await _acquire_local_lock(token)
        if not acquired:
            return None
        return ScanLock(token=token, redis=redis, local=False)
    # In-process lock for local runs and tests without Redis.
    return await _acquire_local_lock(token)


async def release_scan_lock(lock: ScanLock) -> None:
    # Release only while this cycle still owns the token.
    global _local_lock_owner
    if lock.local:
        if _local_lock.locked() and _local_lock_owner == lock.token:
            _local_lock_owner = None
            _local_lock.release()
        return
    if lock.redis is None:
        return
    key = get_settings().scheduler_lock_key
    try:
        current = await lock.redis.get(key)
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        if value == lock.token:
            await lock.redis.delete(key)
    except (RedisError, OSError) as exc:
        # The TTL frees the lock if the release cannot reach Redis.
        logger.warning("scan_lock_release_failed", exc_info=exc)


async def _run_step(
    name: str,
    session_factory: async_sessionmaker[AsyncSession],
    step: Callable[[AsyncSession], Awaitable[list[Any]]],
) -> int | None:
    # Each step gets its own session; a failing step is logged and the cycle continues.
    try:
        async with session_factory() as session:
            items = await step(session)
        return len(items)
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            logger.warning("scheduler_step_waiting_for_migrations step=%s", name)
            return None
        logger.exception("scheduler_step_failed step=%s", name)
        return None
    except Exception:  # noqa: BLE001 - keep the cycle alive while surfacing errors in logs.
        logger.exception("scheduler_step_failed step=%s", name)
        return None


async def run_scheduler_cycle(
    *,
    now: datetime | None = None,
    force: bool = False,
    channel: NotificationChannel | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    """Run one full scan: expire, re-issue credentials, escalate, open, failsafe.

    Cycles are serialised by the scan lock; a cycle that cannot take it
    returns ``status=skipped_lock`` without touching anything.
    """
    lock = await acquire_scan_lock()
    if lock is None:
        return {"status": "skipped_lock"}
    resolved_now = as_utc(now) if now is not None else utc_now()
    resolved_channel = channel or HttpNotificationChannel()
    factory = session_factory or SessionLocal
    try:
        expired = await _run_step(
            "expire",
            factory,
            lambda session: expire_due_requests(session, now=resolved_now),
        )
        reissued = await _run_step(
            "issue_credentials",
            factory,
            lambda session: issue_missing_credentials(session, channel=resolved_channel, now=resolved_now),
        )
        escalated = await _run_step(
            "escalate",
            factory,
            lambda session: run_escalation(session, channel=resolved_channel, now=resolved_now, force=force),
        )
        opened = await _run_step(
            "open_verifications",
            factory,
            lambda session: open_due_verifications(session, channel=resolved_channel, now=resolved_now),
        )
        failsafe = await _run_step(
            "failsafe",
            factory,
            lambda session: run_failsafe_checks(session, channel=resolved_channel, now=resolved_now),
        )
    finally:
        await release_scan_lock(lock)

    report = {
        "status": "ok",
        "ran_at": resolved_now.isoformat(),
        "forced": force,
        "expired": expired,
        "credentials_issued": reissued,
        "escalation_outcomes": escalated,
        "opened": opened,
        "failsafe": failsafe,
    }
    logger.info(
        "scheduler_cycle_complete expired=%s credentials_issued=%s escalation_outcomes=%s "
        "opened=%s failsafe=%s forced=%s",
        expired,
        reissued,
        escalated,
        opened,
        failsafe,
        force,
    )
    return report


async def run_scheduler_loop() -> None:
    # Fixed cadence; a failed cycle is logged and the loop keeps going.
    interval = max(5, int(get_settings().scheduler_interval_s))
    channel = HttpNotificationChannel()
    while True:
        try:
            await run_scheduler_cycle(channel=channel)
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("scheduler cycle failed")
        await asyncio.sleep(interval)
