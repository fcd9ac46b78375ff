import argparse
import asyncio
import json
import logging

import httpx

from .config import Settings, get_settings
from .database import async_session, dispose_engine
from .infrastructure.collaborators import build_collaborators
from .infrastructure.repositories import SqlAlchemyBookingRepository, SqlAlchemyOutboxRepository
from .usecases.outbox import Collaborators, DispatchSummary, dispatch_outbox_events
from .utils.request_id import RequestIdFilter, generate_request_id, set_request_id

logger = logging.getLogger("bookati.worker")


async def process_once(settings: Settings, collaborators: Collaborators, batch_size: int) -> DispatchSummary:
    set_request_id(f"outbox-{generate_request_id()}")
    try:
        async with async_session() as session:
            async with session.begin():
                return await dispatch_outbox_events(
                    SqlAlchemyOutboxRepository(session),
                    SqlAlchemyBookingRepository(session),
                    collaborators,
                    batch_size=batch_size,
                    max_retries=settings.outbox_max_retries,
                    backoff_seconds=settings.outbox_backoff_seconds,
                    max_backoff_seconds=settings.outbox_backoff_max_seconds,
                )
    finally:
        set_request_id(None)


async def run(*, once: bool, batch_size: int, poll_seconds: float) -> None:
    settings = get_settings()
    try:
        async with httpx.AsyncClient(timeout=settings.collaborator_timeout_seconds) as client:
            collaborators = build_collaborators(settings, client)
            while True:
                summary = await process_once(settings, collaborators, batch_size)
                logger.info("outbox dispatch %s", json.dumps(summary.as_dict()))
                if once:
                    return
                if summary.processed == 0:
                    await asyncio.sleep(max(0.2, poll_seconds))
    finally:
        await dispose_engine()


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Deliver pending booking outbox events")
    parser.add_argument("--batch-size", type=int, default=settings.outbox_batch_size)
    parser.add_argument("--poll-seconds", type=float, default=settings.outbox_poll_interval_seconds)
    parser.add_argument("--once", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s")
    for handler in logging.getLogger().handlers:
        handler.addFilter(RequestIdFilter())
    asyncio.run(run(once=args.once, batch_size=max(1, min(args.batch_size, 500)), poll_seconds=args.poll_seconds))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
