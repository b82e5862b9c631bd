"""Correlation lease — at most one non-dry-run correlation in flight.

A named row in ``correlation_leases`` with an owner and an expiry. Acquiring
a lease held by someone else fails fast with ``AlreadyRunning``; a lease
whose holder crashed is taken over once it expires.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.click_tables import CorrelationLeaseRow
from src.errors import AlreadyRunning
from src.models.click_log import as_utc, utcnow

logger = logging.getLogger(__name__)

CORRELATION_LEASE = "click-ledger-correlation"


@dataclass(frozen=True)
class Lease:
    name: str
    owner: str
    acquired_at: datetime
    expires_at: datetime


async def acquire_lease(
    session: AsyncSession,
    name: str = CORRELATION_LEASE,
    ttl_seconds: int | None = None,
    owner: str | None = None,
) -> Lease:
    """Take the lease or raise AlreadyRunning. Commits on success."""
    ttl = ttl_seconds if ttl_seconds is not None else settings.CORRELATION_LEASE_SECONDS
    owner = owner or uuid.uuid4().hex
    now = utcnow()
    expires_at = now + timedelta(seconds=ttl)

    try:
        await session.execute(
            insert(CorrelationLeaseRow).values(
                name=name, owner=owner, acquired_at=now, expires_at=expires_at,
            )
        )
        await session.commit()
        logger.info("Lease %s acquired by %s (expires %s)", name, owner, expires_at.isoformat())
        return Lease(name, owner, now, expires_at)
    except IntegrityError:
        await session.rollback()

    # Row exists: take it over only if it has expired
    result = await session.execute(
        update(CorrelationLeaseRow)
        .execution_options(synchronize_session=False)
        .where(CorrelationLeaseRow.name == name, CorrelationLeaseRow.expires_at < now)
        .values(owner=owner, acquired_at=now, expires_at=expires_at)
    )
    await session.commit()
    if result.rowcount == 1:
        logger.warning("Lease %s had expired; taken over by %s", name, owner)
        return Lease(name, owner, now, expires_at)

    holder = (await session.execute(
        select(CorrelationLeaseRow)
        .execution_options(populate_existing=True)
        .where(CorrelationLeaseRow.name == name)
    )).scalar_one_or_none()
    held_by = holder.owner if holder else None
    held_until = as_utc(holder.expires_at) if holder else None
    logger.warning("Lease %s is held by %s until %s", name, held_by, held_until)
    raise AlreadyRunning(
        "A correlation run is already in progress", owner=held_by, expires_at=held_until,
    )


async def release_lease(session: AsyncSession, lease: Lease) -> bool:
    """Release a lease we own. Returns False if it was lost (expired + taken over)."""
    result = await session.execute(
        delete(CorrelationLeaseRow)
        .execution_options(synchronize_session=False)
        .where(
            CorrelationLeaseRow.name == lease.name,
            CorrelationLeaseRow.owner == lease.owner,
        )
    )
    await session.commit()
    if result.rowcount != 1:
        logger.warning("Lease %s was no longer held by %s at release", lease.name, lease.owner)
        return False
    logger.info("Lease %s released by %s", lease.name, lease.owner)
    return True


@asynccontextmanager
async def held_lease(
    session: AsyncSession,
    name: str = CORRELATION_LEASE,
    ttl_seconds: int | None = None,
) -> AsyncIterator[Lease]:
    lease = await acquire_lease(session, name=name, ttl_seconds=ttl_seconds)
    try:
        yield lease
    finally:
        await session.rollback()
        await release_lease(session, lease)
