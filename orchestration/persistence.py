import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import asyncpg

from config import config
from api.metrics import metrics
from ingest.binance_rest import TransientNetworkError


logger = logging.getLogger(__name__)


class NullSnapshotStore:
    name = 'none'

    async def load(self) -> Optional[Dict[str, Any]]:
        return None

    async def save(self, blob: Dict[str, Any]) -> None:
        return None

    async def close(self) -> None:
        return None


class FileSnapshotStore:
    """JSON file written atomically through a temporary sibling."""

    name = 'file'

    def __init__(self, path):
        self.path = Path(path)

    async def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            raise TransientNetworkError(f"snapshot read from {self.path} failed: {exc}") from exc

    async def save(self, blob: Dict[str, Any]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + '.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(blob))
            os.replace(tmp, self.path)
        except OSError as exc:
            raise TransientNetworkError(f"snapshot write to {self.path} failed: {exc}") from exc

    async def close(self) -> None:
        return None


class PostgresSnapshotStore:
    """Single-row ``jsonb`` snapshot keyed by ``key``."""

    name = 'postgres'

    _DDL = """
        CREATE TABLE IF NOT EXISTS engine_state (
            key TEXT PRIMARY KEY,
            payload JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """
    _DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

    def __init__(self, dsn: str, key: str = 'engine_state'):
        self.dsn = dsn
        self.key = key
        self.pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            self.pool = await asyncpg.create_pool(dsn=self.dsn, min_size=1, max_size=2)
            async with self.pool.acquire() as conn:
                await conn.execute(self._DDL)
        return self.pool

    async def load(self) -> Optional[Dict[str, Any]]:
        try:
            pool = await self._get_pool()
            raw = await pool.fetchval("SELECT payload::text FROM engine_state WHERE key = $1", self.key)
        except self._DB_ERRORS as exc:
            raise TransientNetworkError(f"snapshot load failed: {exc}") from exc
        return json.loads(raw) if raw else None

    async def save(self, blob: Dict[str, Any]) -> None:
        try:
            pool = await self._get_pool()
            await pool.execute(
                """
                INSERT INTO engine_state (key, payload, updated_at)
                VALUES ($1, $2::jsonb, now())
                ON CONFLICT (key) DO UPDATE SET payload = EXCLUDED.payload, updated_at = now()
                """,
                self.key,
                json.dumps(blob),
            )
        except self._DB_ERRORS as exc:
            raise TransientNetworkError(f"snapshot save failed: {exc}") from exc

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None


def build_snapshot_store(store_cfg: Optional[Dict] = None):
    store_cfg = store_cfg if store_cfg is not None else config.section('store')
    backend = (store_cfg.get('backend') or 'none').lower()
    if backend == 'file':
        return FileSnapshotStore(store_cfg.get('path', 'logs/state_snapshot.json'))
    if backend == 'postgres':
        dsn = store_cfg.get('dsn')
        if not dsn:
            logger.warning("Postgres snapshot store selected without a DSN; persistence disabled")
            return NullSnapshotStore()
        return PostgresSnapshotStore(dsn, key=store_cfg.get('key', 'engine_state'))
    if backend != 'none':
        logger.warning("Unknown snapshot store backend %r; persistence disabled", backend)
    return NullSnapshotStore()


class PersistenceCoordinator:
    """Load the state snapshot once and write it back after mutations and periodically."""

    def __init__(self, state, store=None):
        self.state = state
        self.store = store if store is not None else build_snapshot_store()
        self.enabled = True
        self.dirty = False
        self.last_saved_at: Optional[float] = None
        self._lock = asyncio.Lock()

    async def load(self) -> bool:
        try:
            snapshot = await self.store.load()
        except TransientNetworkError as exc:
            logger.error("Snapshot store unreachable; persistence disabled: %s", exc)
            self.enabled = False
            self.state.liveness['store'] = False
            return False
        try:
            self.state.restore(snapshot)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("State snapshot is malformed; starting empty, persistence disabled: %r", exc)
            self.enabled = False
            self.state.liveness['store'] = False
            return False
        self.state.liveness['store'] = True
        return snapshot is not None

    def mark_dirty(self) -> None:
        self.dirty = True

    async def save(self) -> bool:
        if not self.enabled:
            return False
        async with self._lock:
            blob = self.state.to_snapshot()
            try:
                await self.store.save(blob)
            except TransientNetworkError as exc:
                logger.error("State snapshot save failed: %s", exc)
                self.state.liveness['store'] = False
                self.dirty = True
                metrics.record_snapshot(False)
                return False
            self.state.liveness['store'] = True
            self.dirty = False
            self.last_saved_at = blob['saved_at']
            metrics.record_snapshot(True)
            return True

    async def flush(self) -> bool:
        if not self.dirty:
            return True
        return await self.save()

    async def close(self) -> None:
        await self.flush()
        await self.store.close()
