"""
Helpers for running async service code inside synchronous Celery workers.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import close_cache, init_cache
from ..database import create_database_engine, create_session_factory

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_async(job: Callable[[AsyncSession], Awaitable[T]]) -> T:
    """
    Run ``job`` with a fresh session on a private event loop.

    Async engines and Redis clients are bound to the loop that created them,
    so each task invocation builds and disposes its own.
    """

    async def _runner() -> T:
        engine = create_database_engine()
        session_factory = create_session_factory(engine)
        await init_cache()
        try:
            async with session_factory() as session:
                return await job(session)
        finally:
            await close_cache()
            await engine.dispose()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_runner())
    finally:
        loop.close()
