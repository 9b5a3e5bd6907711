"""
Dataset Store Component - Leased In-Memory Tables.

Engine-routed tables live here under an opaque handle for a bounded lease.
The store is sharded: each shard has its own lock, so reads and writes for
unrelated handles never contend on one global mutex, and a handle is either
fully present or absent.
"""

import asyncio
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from govquery.analytics.errors import DatasetNotFound
from govquery.analytics.tabular import ColumnSchema, TabularData, TabularType

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: int, lo: int, hi: int) -> int:
    return min(max(int(value), lo), hi)


@dataclass(frozen=True)
class DatasetBounds:
    """Truncation applied when a table becomes a dataset."""

    max_rows: int = 20000
    max_columns: int = 40
    preview_rows: int = 100

    def __post_init__(self):
        object.__setattr__(self, "max_rows", _clamp(self.max_rows, 1, 100_000))
        object.__setattr__(self, "max_columns", _clamp(self.max_columns, 1, 100))
        object.__setattr__(self, "preview_rows", _clamp(self.preview_rows, 0, 200))


@dataclass(frozen=True)
class DatasetOwner:
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class Dataset:
    """A bounded, immutable table held under a lease."""

    dataset_id: str
    schema: tuple[ColumnSchema, ...]
    rows: tuple[tuple, ...]
    created_at_utc: datetime
    expires_at_utc: datetime
    table_name: Optional[str] = None
    preview_rows: int = 100
    owner: Optional[DatasetOwner] = None
    source_row_count: int = 0

    @property
    def preview(self) -> tuple[tuple, ...]:
        return self.rows[: self.preview_rows]

    @property
    def schema_map(self) -> dict[str, TabularType]:
        return {c.name: c.tabular_type for c in self.schema}

    def as_tabular(self) -> TabularData:
        return TabularData(columns=self.schema, rows=self.rows)


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: dict[str, Dataset] = field(default_factory=dict)
    hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0


class DatasetStore:
    """
    Sharded, leased store of engine datasets.

    This component:
    1. Creates datasets atomically from bounded tabular data
    2. Serves reads until the lease expires (optionally sliding)
    3. Hides other owners' datasets behind the same not-found result
    4. Purges expired entries on demand or from a background task
    """

    def __init__(
        self,
        ttl: timedelta = timedelta(minutes=10),
        sliding_expiration: bool = False,
        shards: int = 16,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the Dataset Store.

        Args:
            ttl: Lease length for new datasets
            sliding_expiration: Whether a successful read renews the lease
            shards: Number of independently locked shards
            clock: Source of the current UTC time
        """
        self.ttl = ttl
        self.sliding_expiration = sliding_expiration
        self.clock = clock
        self._shards = [_Shard() for _ in range(max(1, shards))]
        self._eviction_task: Optional[asyncio.Task] = None

    def _shard(self, dataset_id: str) -> _Shard:
        return self._shards[hash(dataset_id) % len(self._shards)]

    def create(
        self,
        tabular: TabularData,
        bounds: Optional[DatasetBounds] = None,
        table_name: Optional[str] = None,
        owner: Optional[DatasetOwner] = None,
    ) -> Dataset:
        """
        Create a dataset from a table.

        Args:
            tabular: Source table
            bounds: Column, row and preview limits
            table_name: Name reported back to callers
            owner: Tenant/user the dataset belongs to

        Returns:
            The stored dataset

        Raises:
            ValueError: If the table has no rows
        """
        bounds = bounds or DatasetBounds()
        if not tabular.rows:
            raise ValueError("a dataset cannot be created from a zero-row table")

        width = min(len(tabular.columns), bounds.max_columns)
        rows = tuple(tuple(r[:width]) for r in tabular.rows[: bounds.max_rows])
        now = self.clock()
        dataset = Dataset(
            dataset_id=f"ds_{uuid.uuid4().hex}",
            schema=tuple(tabular.columns[:width]),
            rows=rows,
            created_at_utc=now,
            expires_at_utc=now + self.ttl,
            table_name=table_name,
            preview_rows=bounds.preview_rows,
            owner=owner,
            source_row_count=(
                tabular.total_count
                if tabular.total_count is not None
                else len(tabular.rows)
            ),
        )

        shard = self._shard(dataset.dataset_id)
        with shard.lock:
            shard.entries[dataset.dataset_id] = dataset

        logger.info(
            "dataset_created",
            dataset_id=dataset.dataset_id,
            table=table_name,
            rows=len(rows),
            columns=width,
            truncated_rows=len(tabular.rows) > len(rows),
        )
        return dataset

    def get(self, dataset_id: str, owner: Optional[DatasetOwner] = None) -> Dataset:
        """
        Read a dataset.

        Raises:
            DatasetNotFound: If the id is unknown, expired, or owned by someone else
        """
        shard = self._shard(dataset_id)
        with shard.lock:
            dataset = shard.entries.get(dataset_id)
            now = self.clock()
            if dataset is not None and dataset.expires_at_utc <= now:
                del shard.entries[dataset_id]
                shard.expirations += 1
                dataset = None
            if dataset is None or (
                dataset.owner is not None and dataset.owner != owner
            ):
                shard.misses += 1
                raise DatasetNotFound(dataset_id)
            if self.sliding_expiration:
                dataset = replace(dataset, expires_at_utc=now + self.ttl)
                shard.entries[dataset_id] = dataset
            shard.hits += 1
            return dataset

    def evict(self, dataset_id: str) -> bool:
        shard = self._shard(dataset_id)
        with shard.lock:
            if shard.entries.pop(dataset_id, None) is None:
                return False
            shard.evictions += 1
            return True

    def purge_expired(self) -> int:
        purged = 0
        now = self.clock()
        for shard in self._shards:
            with shard.lock:
                expired = [
                    k for k, v in shard.entries.items() if v.expires_at_utc <= now
                ]
                for k in expired:
                    del shard.entries[k]
                shard.expirations += len(expired)
                purged += len(expired)
        if purged:
            logger.info("datasets_purged", count=purged)
        return purged

    async def _eviction_loop(self, interval_seconds: float):
        while True:
            await asyncio.sleep(interval_seconds)
            self.purge_expired()

    def start_eviction(self, interval_seconds: float = 60.0) -> asyncio.Task:
        """Start purging expired datasets in the running event loop."""
        if self._eviction_task is None or self._eviction_task.done():
            self._eviction_task = asyncio.get_running_loop().create_task(
                self._eviction_loop(interval_seconds)
            )
        return self._eviction_task

    async def stop_eviction(self):
        task, self._eviction_task = self._eviction_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def stats(self) -> dict[str, int]:
        out = {"size": 0, "hits": 0, "misses": 0, "expirations": 0, "evictions": 0}
        for shard in self._shards:
            with shard.lock:
                out["size"] += len(shard.entries)
                out["hits"] += shard.hits
                out["misses"] += shard.misses
                out["expirations"] += shard.expirations
                out["evictions"] += shard.evictions
        return out

    def __len__(self) -> int:
        return self.stats()["size"]
