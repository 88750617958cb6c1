from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager

from dapaint.config import Config
from dapaint.database.models import Base, User
from dapaint.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        # Convert sqlite URL to async if needed
        database_url = self.database_url or Config.DATABASE_URL
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.engine = create_async_engine(
            database_url,
            echo=Config.DEBUG,
            future=True
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

    @property
    def session_factory(self) -> async_sessionmaker:
        """Session factory for services that manage their own sessions"""
        if self.async_session is None:
            raise RuntimeError("Database.initialize() must be awaited first")
        return self.async_session

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context will be committed together on success,
        or rolled back together on failure.

        Usage:
            async with db.transaction() as session:
                await store.claim_foe_slot(..., session=session)
                await store.get_match(..., session=session)
                # All operations commit together here

        Important: The caller is responsible for passing the yielded session to
        all participating operations. Exceptions must be allowed to propagate
        out of the context for rollback to occur.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")

    # User operations
    async def get_user(self, user_id: str, session: Optional[AsyncSession] = None) -> Optional[User]:
        """Get a user by id"""
        if session:
            return await session.get(User, user_id)
        async with self.get_session() as s:
            return await s.get(User, user_id)

    async def create_user(
        self,
        username: str,
        display_name: str = None,
        postal_code: str = None,
        user_id: str = None,
        current_streak: int = 0
    ) -> User:
        """Create a new user profile"""
        async with self.transaction() as session:
            user = User(
                username=username,
                display_name=display_name or username,
                postal_code=postal_code.strip().upper() if postal_code else None,
                current_streak=current_streak,
                longest_streak=current_streak
            )
            if user_id:
                user.id = user_id
            session.add(user)
            await session.flush()
            await session.refresh(user)
            self.logger.info(f"Created user {user.id} ({username})")
            return user

