from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_in_transaction(
    session: AsyncSession,
    work: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    backoff_seconds: float = 0.05,
) -> T:
    """
    Run `work` inside one transaction, retrying on OperationalError.

    Deadlocks, lock wait timeouts and dropped connections roll the whole
    transaction back, so re-running `work` from scratch cannot double-apply
    anything. Domain errors are never retried.
    """
    attempts = max(1, attempts)
    attempt = 1
    while True:
        try:
            async with session.begin():
                return await work()
        except OperationalError as exc:
            if attempt >= attempts:
                logger.error("transaction failed after %s attempts: %s", attempt, exc)
                raise
            logger.warning("transaction retry attempt=%s/%s error=%s", attempt, attempts, exc)
            await asyncio.sleep(backoff_seconds * attempt)
            attempt += 1
