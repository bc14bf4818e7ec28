"""SQLite-backed time-series store for metric samples.

One writer connection, guarded by a lock, serves appends and retention
deletes. Every query iteration opens its own connection, so readers never
wait on the writer (WAL mode) and see a consistent snapshot.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from ..config import StoreConfig
from ..errors import StoreCorruption, StoreError, StoreWriteFailure, VaultError, VaultUnavailable
from ..models import MetricKind, MetricSample, RetentionPolicy, SampleBatch, SampleTimestamp, StoredSample
from ..security.schemes import ProtectedBlob
from ..security.vault import SecureVault
from . import schema

LOGGER = logging.getLogger(__name__)

# Fixed per-row cost used when estimating the storage footprint of a batch:
# seq, batch_id, wall_ts, mono_ts and value as 8-byte fields.
ROW_OVERHEAD_BYTES = 40

_SELECT_COLUMNS = "seq, batch_id, kind, wall_ts, mono_ts, value, source, sealed, scheme"

Row = Tuple[int, int, str, float, float, Optional[Union[int, float]], Optional[str], Optional[bytes], Optional[str]]


class SampleQuery:
    """Lazy, finite and restartable view over stored samples.

    Each iteration re-runs the query, so two iterations with no writes or
    evictions in between yield identical sequences.
    """

    def __init__(
        self,
        store: "TimeSeriesStore",
        kinds: Optional[Sequence[MetricKind]] = None,
        start: Optional[float] = None,
        end: Optional[float] = None,
    ) -> None:
        self._store = store
        self._kinds = list(kinds) if kinds is not None else None
        self._start = start
        self._end = end

    def __iter__(self) -> Iterator[StoredSample]:
        return self._store._iter_samples(self._kinds, self._start, self._end)

    def to_list(self) -> List[StoredSample]:
        return list(self)

    def __repr__(self) -> str:
        kinds = [kind.name for kind in self._kinds] if self._kinds is not None else "all"
        return f"SampleQuery(kinds={kinds}, start={self._start}, end={self._end})"


class TimeSeriesStore:
    """Durable, batch-atomic store of :class:`MetricSample` records."""

    def __init__(
        self,
        path: Path,
        config: Optional[StoreConfig] = None,
        *,
        vault: Optional[SecureVault] = None,
    ) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._config = config or StoreConfig()
        self._vault = vault
        if self._config.encrypt_samples and vault is None:
            raise ValueError("Sample encryption requires a vault")
        self._write_lock = threading.Lock()
        self._closed = False

        try:
            self._conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreCorruption(f"Cannot open metrics database {self._path}: {exc}") from exc
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
            self._version = schema.initialize(self._conn)
        except (sqlite3.DatabaseError, StoreCorruption) as exc:
            self._conn.close()
            if isinstance(exc, StoreCorruption):
                raise
            raise StoreCorruption(f"Metrics database {self._path} is unreadable: {exc}") from exc
        LOGGER.info("Opened metrics store %s (schema v%d)", self._path, self._version)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._path),
            timeout=self._config.write_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @property
    def path(self) -> Path:
        return self._path

    @property
    def schema_version(self) -> int:
        return self._version

    def __enter__(self) -> "TimeSeriesStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def append(self, batch: SampleBatch) -> Optional[int]:
        """Write every sample of ``batch`` in one transaction.

        Returns the new batch id, or None for an empty batch. Once this
        returns, the batch survives a process crash.

        Raises:
            StoreWriteFailure: the transaction could not be committed; nothing
                from the batch is visible.
        """
        if not batch.samples:
            return None
        with self._writer("append"):
            conn = self._conn
            try:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(
                    "INSERT INTO batches (created_at, first_ts, last_ts, sample_count, byte_size) "
                    "VALUES (?, ?, ?, ?, 0)",
                    (
                        time.time(),
                        batch.samples[0].timestamp.wall,
                        batch.samples[-1].timestamp.wall,
                        len(batch.samples),
                    ),
                )
                batch_id = cursor.lastrowid
                byte_size = 0
                for sample in batch.samples:
                    row = self._encode_sample(batch_id, sample)
                    conn.execute(
                        "INSERT INTO samples (batch_id, kind, wall_ts, mono_ts, value, source, sealed, scheme) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        row,
                    )
                    byte_size += _estimate_row_size(row)
                conn.execute("UPDATE batches SET byte_size = ? WHERE batch_id = ?", (byte_size, batch_id))
                _adjust_totals(conn, len(batch.samples), byte_size)
                conn.execute("COMMIT")
            except (sqlite3.Error, VaultError, ValueError, TypeError) as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StoreWriteFailure(f"Failed to append batch of {len(batch)} samples: {exc}") from exc
        LOGGER.debug("Appended batch %s with %d samples", batch_id, len(batch))
        return batch_id

    def _encode_sample(self, batch_id: int, sample: MetricSample) -> tuple:
        value = sample.value
        sealed: Optional[bytes] = None
        scheme: Optional[str] = None
        if self._config.encrypt_samples:
            blob = self._vault.protect(repr(sample.kind.coerce(value)))  # type: ignore[union-attr]
            sealed, scheme, value = blob.ciphertext, blob.scheme, None
        return (
            batch_id,
            sample.kind.value,
            sample.timestamp.wall,
            sample.timestamp.monotonic,
            value,
            sample.source,
            sealed,
            scheme,
        )

    def evict_one_batch(self, policy: RetentionPolicy, now: Optional[float] = None) -> bool:
        """Delete the oldest batch if any retention bound is exceeded.

        The write lock is held for this single batch only, and every statement
        run under it is an index lookup, so the hold time does not grow with
        the size of the store.
        """
        now = time.time() if now is None else now
        with self._writer("evict"):
            conn = self._conn
            oldest = conn.execute(
                "SELECT batch_id, last_ts, sample_count, byte_size FROM batches "
                "ORDER BY first_ts, batch_id LIMIT 1"
            ).fetchone()
            if oldest is None:
                return False
            total_samples, total_bytes = _read_totals(conn)
            reason = _exceeded_bound(policy, total_samples, total_bytes, oldest[1], now)
            if reason is None:
                return False
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("DELETE FROM samples WHERE batch_id = ?", (oldest[0],))
                conn.execute("DELETE FROM batches WHERE batch_id = ?", (oldest[0],))
                _adjust_totals(conn, -oldest[2], -oldest[3])
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StoreError(f"Failed to evict batch {oldest[0]}: {exc}") from exc
        LOGGER.debug("Evicted batch %s (%d samples, %s)", oldest[0], oldest[2], reason)
        return True

    def enforce_retention(self, policy: RetentionPolicy, now: Optional[float] = None) -> int:
        """Evict oldest batches until every bound holds. Returns batches evicted."""
        evicted = 0
        while self.evict_one_batch(policy, now):
            evicted += 1
        if evicted:
            LOGGER.info("Retention evicted %d batches", evicted)
        return evicted

    def query(
        self,
        kinds: Optional[Iterable[MetricKind]] = None,
        start: Optional[float] = None,
        end: Optional[float] = None,
    ) -> SampleQuery:
        """Samples of ``kinds`` with ``start <= wall time <= end``, oldest first."""
        return SampleQuery(self, list(kinds) if kinds is not None else None, start, end)

    def latest(self, kind: MetricKind) -> Optional[StoredSample]:
        with self._reader() as conn:
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM samples WHERE kind = ? "
                "ORDER BY wall_ts DESC, seq DESC LIMIT 1",
                (kind.value,),
            ).fetchone()
        return self._decode(row) if row is not None else None

    def kinds(self) -> List[MetricKind]:
        with self._reader() as conn:
            rows = conn.execute("SELECT DISTINCT kind FROM samples ORDER BY kind").fetchall()
        known = {kind.value: kind for kind in MetricKind}
        return [known[row[0]] for row in rows if row[0] in known]

    def count(self) -> int:
        with self._reader() as conn:
            return _read_totals(conn)[0]

    def batch_count(self) -> int:
        with self._reader() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM batches").fetchone()[0])

    def total_bytes(self) -> int:
        """Estimated bytes held by all stored samples."""
        with self._reader() as conn:
            return _read_totals(conn)[1]

    def _iter_samples(
        self,
        kinds: Optional[List[MetricKind]],
        start: Optional[float],
        end: Optional[float],
    ) -> Iterator[StoredSample]:
        clauses: List[str] = []
        params: List[object] = []
        if kinds is not None:
            if not kinds:
                return
            clauses.append(f"kind IN ({', '.join('?' for _ in kinds)})")
            params.extend(kind.value for kind in kinds)
        if start is not None:
            clauses.append("wall_ts >= ?")
            params.append(start)
        if end is not None:
            clauses.append("wall_ts <= ?")
            params.append(end)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {_SELECT_COLUMNS} FROM samples{where} ORDER BY wall_ts, seq"

        with self._reader() as conn:
            cursor = conn.execute(sql, params)
            while True:
                rows = cursor.fetchmany(self._config.query_fetch_size)
                if not rows:
                    break
                for row in rows:
                    yield self._decode(row)

    def _decode(self, row: Row) -> StoredSample:
        seq, batch_id, kind_value, wall_ts, mono_ts, value, source, sealed, scheme = row
        kind = MetricKind(kind_value)
        if sealed is not None:
            if self._vault is None:
                raise VaultUnavailable("Sample value is sealed but no vault is configured")
            value = self._vault.unprotect(ProtectedBlob(scheme=scheme or "", ciphertext=sealed)).decode("utf-8")
            value = int(value) if kind.is_integer else float(value)
        elif value is None:
            raise StoreCorruption(f"Sample {seq} has no value")
        return StoredSample(
            timestamp=SampleTimestamp(wall=wall_ts, monotonic=mono_ts),
            kind=kind,
            value=kind.coerce(value),
            source=source,
            sequence=seq,
            batch_id=batch_id,
        )

    def _writer(self, operation: str) -> "_WriteSection":
        return _WriteSection(self, operation)

    def _reader(self) -> "_ReadConnection":
        if self._closed:
            raise StoreError("Metrics store is closed")
        return _ReadConnection(self._path, self._config.write_timeout_seconds)

    def close(self) -> None:
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()
        LOGGER.info("Closed metrics store %s", self._path)


class _WriteSection:
    """Holds the store's write lock, failing after the configured timeout."""

    def __init__(self, store: TimeSeriesStore, operation: str) -> None:
        self._store = store
        self._operation = operation

    def __enter__(self) -> None:
        store = self._store
        if not store._write_lock.acquire(timeout=store._config.write_timeout_seconds):
            raise StoreWriteFailure(
                f"Timed out after {store._config.write_timeout_seconds}s waiting to {self._operation}"
            )
        if store._closed:
            store._write_lock.release()
            raise StoreWriteFailure("Metrics store is closed")

    def __exit__(self, *exc_info: object) -> None:
        self._store._write_lock.release()


class _ReadConnection:
    def __init__(self, path: Path, timeout: float) -> None:
        self._path = path
        self._timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None

    def __enter__(self) -> sqlite3.Connection:
        self._conn = sqlite3.connect(str(self._path), timeout=self._timeout, check_same_thread=False)
        return self._conn

    def __exit__(self, *exc_info: object) -> None:
        if self._conn is not None:
            self._conn.close()


def _estimate_row_size(row: tuple) -> int:
    size = ROW_OVERHEAD_BYTES
    for field in row[1:]:
        if isinstance(field, (str, bytes)):
            size += len(field)
    return size


def _read_totals(conn: sqlite3.Connection) -> Tuple[int, int]:
    rows = dict(
        conn.execute(
            "SELECT key, value FROM meta WHERE key IN (?, ?)",
            (schema.SAMPLE_TOTAL_KEY, schema.BYTE_TOTAL_KEY),
        ).fetchall()
    )
    try:
        return int(rows[schema.SAMPLE_TOTAL_KEY]), int(rows[schema.BYTE_TOTAL_KEY])
    except (KeyError, TypeError, ValueError) as exc:
        raise StoreCorruption(f"Running totals are missing or unreadable: {rows!r}") from exc


def _adjust_totals(conn: sqlite3.Connection, samples: int, byte_size: int) -> None:
    conn.executemany(
        "UPDATE meta SET value = CAST(CAST(value AS INTEGER) + ? AS TEXT) WHERE key = ?",
        [(samples, schema.SAMPLE_TOTAL_KEY), (byte_size, schema.BYTE_TOTAL_KEY)],
    )


def _exceeded_bound(
    policy: RetentionPolicy,
    total_samples: int,
    total_bytes: int,
    oldest_last_ts: float,
    now: float,
) -> Optional[str]:
    if policy.max_samples is not None and total_samples > policy.max_samples:
        return f"{total_samples} samples > {policy.max_samples}"
    if policy.max_bytes is not None and total_bytes > policy.max_bytes:
        return f"{total_bytes} bytes > {policy.max_bytes}"
    if policy.max_age_seconds is not None and oldest_last_ts < now - policy.max_age_seconds:
        return f"older than {policy.max_age_seconds}s"
    return None
