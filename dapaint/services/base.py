"""
Shared plumbing for services that open their own sessions.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dapaint.config import Config

logger = logging.getLogger(__name__)

T = TypeVar('T')


class BaseService:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on any error"""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def execute_with_retry(
        self,
        func: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
        base_delay: float = 0.1
    ) -> T:
        """
        Run func, retrying store failures with exponential backoff.

        Only SQLAlchemyError is retried; the last failure is re-raised once
        max_retries (default Config.SCORE_UPDATE_MAX_RETRIES) attempts are used.
        """
        attempts = max_retries or Config.SCORE_UPDATE_MAX_RETRIES
        for attempt in range(attempts):
            try:
                return await func()
            except SQLAlchemyError as e:
                if attempt == attempts - 1:
                    raise
                logger.warning(f"Retry {attempt + 1}/{attempts} for {func.__name__}: {e}")
                await asyncio.sleep(base_delay * (2 ** attempt))
