"""Document store used by the bot.

Documents are plain dicts addressed by ``(collection, id)``. Two backends are
provided: ``MemoryStore`` keeps everything in process and is used for local
runs and tests, ``PostgresStore`` keeps JSONB documents in a single table
through an asyncpg connection pool.
"""
import asyncio
import contextlib
import copy
import json
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

import asyncpg

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
TransactionFn = Callable[[Optional[Document]], Optional[Document]]


class Increment:
    """Marker value for ``update``: add ``amount`` to the stored number."""

    __slots__ = ("amount",)

    def __init__(self, amount: int = 1):
        self.amount = amount

    def __repr__(self):
        return f"Increment({self.amount})"


class DocumentMissing(LookupError):
    """``update`` was called for a document that does not exist."""


def apply_update(doc: Document, partial: Document) -> Document:
    """Return a copy of ``doc`` with ``partial`` merged in, resolving ``Increment`` values."""
    merged = copy.deepcopy(doc)
    for key, value in partial.items():
        if isinstance(value, Increment):
            merged[key] = (merged.get(key) or 0) + value.amount
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class DocumentStore:
    """Async key-value/document interface the bot is written against."""

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        raise NotImplementedError

    async def set(self, collection: str, doc_id: str, doc: Document, merge: bool = False) -> None:
        raise NotImplementedError

    async def update(self, collection: str, doc_id: str, partial: Document) -> None:
        raise NotImplementedError

    async def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    async def transaction(self, collection: str, doc_id: str, fn: TransactionFn) -> Optional[Document]:
        """Read a document, compute its replacement with ``fn`` and write it atomically.

        ``fn`` receives the current document (or ``None``) and returns the new
        document, or ``None`` to leave it untouched. The stored document after
        the transaction is returned.
        """
        raise NotImplementedError

    async def find(self, collection: str, field: str, value: Any, limit: int = 1) -> List[Document]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryStore(DocumentStore):
    def __init__(self):
        self._collections: Dict[str, Dict[str, Document]] = defaultdict(dict)
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}

    @contextlib.asynccontextmanager
    async def _locked(self, collection: str, key: str):
        """Serialize writers of one document; the lock is dropped once nobody holds or awaits it."""
        lock_key = (collection, key)
        lock = self._locks.get(lock_key)
        if lock is None:
            lock = self._locks[lock_key] = asyncio.Lock()
        self._lock_users[lock_key] = self._lock_users.get(lock_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[lock_key] -= 1
            if not self._lock_users[lock_key]:
                del self._lock_users[lock_key]
                del self._locks[lock_key]

    async def get(self, collection, doc_id):
        doc = self._collections[collection].get(str(doc_id))
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, collection, doc_id, doc, merge=False):
        key = str(doc_id)
        current = self._collections[collection].get(key)
        if merge and current is not None:
            self._collections[collection][key] = apply_update(current, doc)
        else:
            self._collections[collection][key] = apply_update({}, doc)

    async def update(self, collection, doc_id, partial):
        key = str(doc_id)
        async with self._locked(collection, key):
            current = self._collections[collection].get(key)
            if current is None:
                raise DocumentMissing(f"{collection}/{key}")
            self._collections[collection][key] = apply_update(current, partial)

    async def delete(self, collection, doc_id):
        self._collections[collection].pop(str(doc_id), None)

    async def transaction(self, collection, doc_id, fn):
        key = str(doc_id)
        async with self._locked(collection, key):
            current = self._collections[collection].get(key)
            new_doc = fn(copy.deepcopy(current) if current is not None else None)
            if new_doc is not None:
                self._collections[collection][key] = copy.deepcopy(new_doc)
                return copy.deepcopy(new_doc)
            return copy.deepcopy(current) if current is not None else None

    async def find(self, collection, field, value, limit=1):
        found = []
        for doc in self._collections[collection].values():
            if doc.get(field) == value:
                found.append(copy.deepcopy(doc))
                if len(found) >= limit:
                    break
        return found


class PostgresStore(DocumentStore):
    """JSONB documents in one PostgreSQL table, one row per document."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @classmethod
    async def connect(cls, dsn: str) -> "PostgresStore":
        pool = await create_db_pool(dsn)
        store = cls(pool)
        await store.init_tables()
        return store

    async def init_tables(self):
        """Create the documents table and its indexes"""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection VARCHAR(64) NOT NULL,
                    id TEXT NOT NULL,
                    data JSONB NOT NULL,
                    updated_at TIMESTAMP DEFAULT NOW(),
                    PRIMARY KEY (collection, id)
                );
            """)
            logger.info("✅ PostgreSQL 'documents' table ready")
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_documents_username_lower
                    ON documents ((data->>'username_lower')) WHERE collection = 'users';
                CREATE INDEX IF NOT EXISTS idx_documents_status
                    ON documents ((data->>'status')) WHERE collection = 'confessions';
            """)
            logger.info("✅ PostgreSQL indexes created")

    async def get(self, collection, doc_id):
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT data FROM documents WHERE collection = $1 AND id = $2",
                collection, str(doc_id)
            )

    async def set(self, collection, doc_id, doc, merge=False):
        if merge:
            await self.transaction(
                collection, doc_id,
                lambda current: apply_update(current or {}, doc)
            )
            return
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO documents (collection, id, data, updated_at)
                VALUES ($1, $2, $3, NOW())
                ON CONFLICT (collection, id) DO UPDATE SET
                data = EXCLUDED.data,
                updated_at = NOW()
            """, collection, str(doc_id), apply_update({}, doc))

    async def update(self, collection, doc_id, partial):
        def _merge(current):
            if current is None:
                raise DocumentMissing(f"{collection}/{doc_id}")
            return apply_update(current, partial)

        await self.transaction(collection, doc_id, _merge)

    async def delete(self, collection, doc_id):
        async with self.pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM documents WHERE collection = $1 AND id = $2",
                collection, str(doc_id)
            )

    async def transaction(self, collection, doc_id, fn):
        key = str(doc_id)
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                # Row locks do not cover documents that do not exist yet
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1 || '/' || $2))",
                    collection, key
                )
                current = await conn.fetchval(
                    "SELECT data FROM documents WHERE collection = $1 AND id = $2",
                    collection, key
                )
                new_doc = fn(current)
                if new_doc is None:
                    return current
                await conn.execute("""
                    INSERT INTO documents (collection, id, data, updated_at)
                    VALUES ($1, $2, $3, NOW())
                    ON CONFLICT (collection, id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = NOW()
                """, collection, key, new_doc)
                return new_doc

    async def find(self, collection, field, value, limit=1):
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT data FROM documents WHERE collection = $1 AND data->>$2 = $3 LIMIT $4",
                collection, field, str(value), limit
            )
        return [row['data'] for row in rows]

    async def close(self):
        await self.pool.close()


async def _init_connection(conn: asyncpg.Connection):
    await conn.set_type_codec(
        'jsonb',
        encoder=json.dumps,
        decoder=json.loads,
        schema='pg_catalog'
    )


async def create_db_pool(dsn: str) -> asyncpg.Pool:
    """Create the PostgreSQL connection pool, retrying once with SSL required"""
    try:
        logger.info("Connecting to database...")
        pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=1,
            max_size=3,
            command_timeout=60,
            max_inactive_connection_lifetime=300,
            timeout=30,
            init=_init_connection
        )
        logger.info("✅ PostgreSQL connection pool created")
        return pool
    except Exception as e:
        logger.error(f"Failed to create PostgreSQL connection: {e}")
        logger.info("Trying alternative connection method...")
        pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=1,
            max_size=3,
            command_timeout=60,
            ssl='require',
            max_inactive_connection_lifetime=300,
            timeout=30,
            init=_init_connection
        )
        logger.info("✅ PostgreSQL connection created (alternative method)")
        return pool
