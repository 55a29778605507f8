import time
from typing import Callable, Optional, Protocol

from sqlalchemy import Float, String, Text, delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

Clock = Callable[[], float]


class KeyValueStore(Protocol):
    """Client-local persistent storage used for checkpoints."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str = "") -> list[str]: ...

    async def sweep_expired(self) -> int: ...


class MemoryKeyValueStore:
    """Process-local store; entries with a ttl disappear once it elapses."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at < self._clock():
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]

    async def sweep_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, exp) in self._data.items() if exp is not None and exp < now]
        for key in expired:
            del self._data[key]
        return len(expired)


class _StoreBase(DeclarativeBase):
    pass


class KeyValueEntry(_StoreBase):
    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True, index=True)


class SqlKeyValueStore:
    """
    Store backed by an embedded (or remote) SQL database through SQLAlchemy.
    Call `create_schema()` once before first use.
    """

    def __init__(self, engine: AsyncEngine, clock: Clock = time.time):
        self._engine = engine
        self._sessions = async_sessionmaker(bind=engine, expire_on_commit=False)
        self._clock = clock

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(_StoreBase.metadata.create_all)

    async def get(self, key: str) -> Optional[str]:
        async with self._sessions() as session:
            entry = await session.get(KeyValueEntry, key)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at < self._clock():
                await session.delete(entry)
                await session.commit()
                return None
            return entry.value

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        async with self._sessions() as session:
            async with session.begin():
                await session.merge(KeyValueEntry(key=key, value=value, expires_at=expires_at))

    async def delete(self, key: str) -> None:
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))

    async def keys(self, prefix: str = "") -> list[str]:
        async with self._sessions() as session:
            stmt = select(KeyValueEntry.key)
            if prefix:
                stmt = stmt.where(KeyValueEntry.key.startswith(prefix, autoescape=True))
            return list((await session.execute(stmt)).scalars().all())

    async def sweep_expired(self) -> int:
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    delete(KeyValueEntry).where(
                        KeyValueEntry.expires_at.is_not(None),
                        KeyValueEntry.expires_at < self._clock(),
                    )
                )
                return result.rowcount or 0
