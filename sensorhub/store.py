from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Protocol, Tuple

from .channels import Sample
from .errors import SampleStoreError

logger = logging.getLogger("sensorhub.store")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS samples (
  channel_id TEXT NOT NULL,
  ts REAL NOT NULL,
  payload TEXT NOT NULL,
  PRIMARY KEY (channel_id, ts)
) WITHOUT ROWID;
"""

# First choice is the default.
_PRAGMA_CHOICES: Dict[str, Tuple[str, ...]] = {
    "journal_mode": ("WAL", "DELETE", "TRUNCATE", "PERSIST", "MEMORY", "OFF"),
    "synchronous": ("NORMAL", "OFF", "FULL", "EXTRA"),
    "temp_store": ("MEMORY", "DEFAULT", "FILE"),
}

# Lowercase substrings of sqlite3 error messages.
_FAILURE_MARKERS: Dict[str, Tuple[str, ...]] = {
    "corrupt": ("malformed", "not a database", "database corrupt"),
    "full": ("database or disk is full",),
}

_UNREADABLE = object()


class SampleStore(Protocol):
    """Per-channel sample history, read back oldest-first."""

    def append(self, channel_id: str, timestamp: float, value: Any) -> bool: ...

    def query(self, channel_id: str, after_timestamp: float) -> Optional[Sample]: ...


@dataclass(frozen=True)
class SqlitePragmas:
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"
    temp_store: str = "MEMORY"

    @classmethod
    def coerce(cls, **raw: Optional[str]) -> "SqlitePragmas":
        """Build from loosely-cased settings; unknown values keep the default."""

        values: Dict[str, str] = {}
        for name, choices in _PRAGMA_CHOICES.items():
            given = raw.get(name)
            if given is None:
                continue
            candidate = given.strip().upper()
            if candidate in choices:
                values[name] = candidate
            else:
                logger.warning("invalid sqlite %s=%r; using %s", name, given, choices[0])
        return cls(**values)

    def apply(self, conn: sqlite3.Connection) -> None:
        for name in _PRAGMA_CHOICES:
            conn.execute(f"PRAGMA {name}={getattr(self, name)}")


def _failure_kind(exc: BaseException) -> Optional[str]:
    text = str(exc).lower()
    for kind, markers in _FAILURE_MARKERS.items():
        if any(marker in text for marker in markers):
            return kind
    return None


def _dump(value: Any) -> str:
    if isinstance(value, Mapping):
        value = dict(value)
    return json.dumps(value, separators=(",", ":"), allow_nan=False)


def _load(channel_id: str, timestamp: float, payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("%s: stored sample at %s is not valid JSON", channel_id, timestamp)
        return None


def _aside_name(source: Path, stamp: str) -> Path:
    candidate = source.with_name(f"{source.name}.corrupt-{stamp}")
    n = 0
    while candidate.exists():
        n += 1
        candidate = source.with_name(f"{source.name}.corrupt-{stamp}-{n}")
    return candidate


class SqliteSampleStore:
    """Sample history for stream channels, kept in a local sqlite file.

    Samples are not removed when they are delivered. Each consumer keeps its
    own pointer and asks for the oldest sample newer than it. Retention is the
    newest `max_samples_per_channel` per channel, plus an optional byte quota
    and an age limit applied by `prune()`.

    A corrupt database file is moved aside and replaced by an empty one when
    `recover_corruption` is set. A full disk evicts the oldest samples across
    all channels and retries the write once.
    """

    def __init__(
        self,
        path: str,
        *,
        max_samples_per_channel: int = 100,
        max_db_bytes: int | None = None,
        pragmas: SqlitePragmas | None = None,
        eviction_batch_size: int = 100,
        recover_corruption: bool = True,
    ) -> None:
        self.path = Path(path)
        self.max_samples_per_channel = max(1, int(max_samples_per_channel))
        self.max_db_bytes = int(max_db_bytes) if max_db_bytes and max_db_bytes > 0 else None
        self.pragmas = pragmas or SqlitePragmas()
        self.eviction_batch_size = max(1, int(eviction_batch_size))
        self.recover_corruption = bool(recover_corruption)
        self.evictions_total = 0

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._create_schema(recover=True)
        self._execute(self._checkpoint, default=None)

        # An empty database still has a few pages on disk.
        floor = self.db_bytes()
        if self.max_db_bytes is not None and floor > self.max_db_bytes:
            logger.warning("STORE_MAX_DB_BYTES=%s is below the empty store size; using %s", self.max_db_bytes, floor)
            self.max_db_bytes = floor

    # -----------------------------
    # Connections and recovery
    # -----------------------------

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path))
        try:
            self.pragmas.apply(conn)
            yield conn
        finally:
            conn.close()

    def _create_schema(self, *, recover: bool) -> None:
        try:
            with self._connect() as conn:
                conn.execute(SCHEMA_SQL)
                conn.commit()
        except sqlite3.DatabaseError as exc:
            if not (recover and _failure_kind(exc) == "corrupt" and self._move_corrupt_aside()):
                raise

    def _move_corrupt_aside(self) -> bool:
        if not self.recover_corruption:
            return False

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        moved = []
        for suffix in ("", "-wal", "-shm"):
            source = self.path.with_name(self.path.name + suffix)
            if not source.exists():
                continue
            target = _aside_name(source, stamp)
            try:
                source.replace(target)
            except OSError as exc:
                logger.error("cannot move corrupt %s aside: %r", source, exc)
                return False
            moved.append(target.name)
        logger.warning("sample store %s is corrupt; moved aside: %s", self.path, ", ".join(moved) or "-")

        try:
            self._create_schema(recover=False)
        except sqlite3.Error as exc:
            logger.error("cannot recreate sample store %s: %r", self.path, exc)
            return False
        return True

    def _execute(self, op: Callable[[sqlite3.Connection], Any], *, default: Any) -> Any:
        """Run op on a fresh connection; sqlite errors are logged and give default."""

        recovered = False
        while True:
            try:
                with self._connect() as conn:
                    return op(conn)
            except sqlite3.Error as exc:
                if not recovered and _failure_kind(exc) == "corrupt" and self._move_corrupt_aside():
                    recovered = True
                    continue
                logger.error("sample store operation failed: %r", exc)
                return default

    def _checkpoint(self, conn: sqlite3.Connection) -> None:
        if self.pragmas.journal_mode != "WAL":
            return
        try:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        except sqlite3.Error as exc:
            logger.debug("wal checkpoint skipped: %r", exc)

    # -----------------------------
    # Retention
    # -----------------------------

    def _write_sample(self, conn: sqlite3.Connection, *, channel_id: str, timestamp: float, payload: str) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO samples(channel_id, ts, payload) VALUES(?,?,?)",
            (channel_id, float(timestamp), payload),
        )

    def _evict_oldest(self, conn: sqlite3.Connection) -> int:
        cur = conn.execute(
            "DELETE FROM samples WHERE (channel_id, ts) IN "
            "(SELECT channel_id, ts FROM samples ORDER BY ts LIMIT ?)",
            (self.eviction_batch_size,),
        )
        return max(0, cur.rowcount)

    def _make_room(self, conn: sqlite3.Connection) -> int:
        conn.rollback()
        evicted = self._evict_oldest(conn)
        conn.commit()
        self._checkpoint(conn)
        return evicted

    def _trim_channel(self, conn: sqlite3.Connection, channel_id: str) -> None:
        # Anything older than the Nth newest sample goes.
        conn.execute(
            "DELETE FROM samples WHERE channel_id = ? AND ts < "
            "(SELECT ts FROM samples WHERE channel_id = ? ORDER BY ts DESC LIMIT 1 OFFSET ?)",
            (channel_id, channel_id, self.max_samples_per_channel - 1),
        )

    @staticmethod
    def _live_bytes(conn: sqlite3.Connection) -> int:
        (page_size,) = conn.execute("PRAGMA page_size").fetchone()
        (page_count,) = conn.execute("PRAGMA page_count").fetchone()
        (free_pages,) = conn.execute("PRAGMA freelist_count").fetchone()
        return int(page_size) * (int(page_count) - int(free_pages))

    def _shrink_to_quota(self, conn: sqlite3.Connection) -> int:
        if self.max_db_bytes is None:
            return 0

        evicted = 0
        while self._live_bytes(conn) > self.max_db_bytes:
            dropped = self._evict_oldest(conn)
            if not dropped:
                break
            evicted += dropped
            conn.commit()

        if evicted and self.db_bytes() > self.max_db_bytes:
            # Freed pages stay in the file until it is rebuilt.
            conn.commit()
            conn.execute("VACUUM")
            self._checkpoint(conn)
        return evicted

    def _note_evictions(self, evicted: int) -> None:
        if evicted <= 0:
            return
        self.evictions_total += evicted
        logger.warning(
            "evicted %s oldest samples (db_bytes=%s quota=%s)",
            evicted,
            self.db_bytes(),
            self.max_db_bytes or "none",
        )

    # -----------------------------
    # Public API
    # -----------------------------

    def append(self, channel_id: str, timestamp: float, value: Any) -> bool:
        """Store a sample. Returns False if it could not be stored."""

        try:
            payload = _dump(value)
        except (TypeError, ValueError) as exc:
            logger.error("%s: cannot store sample at %s: %r", channel_id, timestamp, exc)
            return False

        def _op(conn: sqlite3.Connection) -> Tuple[bool, int]:
            evicted = 0
            try:
                self._write_sample(conn, channel_id=channel_id, timestamp=timestamp, payload=payload)
            except sqlite3.OperationalError as exc:
                if _failure_kind(exc) != "full":
                    raise
                evicted = self._make_room(conn)
                if not evicted:
                    logger.error("%s: disk full and store empty; dropping sample at %s", channel_id, timestamp)
                    return False, 0
                try:
                    self._write_sample(conn, channel_id=channel_id, timestamp=timestamp, payload=payload)
                except sqlite3.OperationalError as again:
                    if _failure_kind(again) != "full":
                        raise
                    logger.error("%s: disk still full; dropping sample at %s", channel_id, timestamp)
                    return False, evicted

            self._trim_channel(conn, channel_id)
            conn.commit()
            evicted += self._shrink_to_quota(conn)
            return True, evicted

        stored, evicted = self._execute(_op, default=(False, 0))
        self._note_evictions(evicted)
        return bool(stored)

    def query(self, channel_id: str, after_timestamp: float) -> Optional[Sample]:
        """Return the oldest sample newer than after_timestamp, or None if caught up.

        Raises SampleStoreError when the database cannot be read, so callers can
        tell "nothing pending" apart from "unknown".
        """

        row = self._execute(
            lambda conn: conn.execute(
                "SELECT ts, payload FROM samples WHERE channel_id = ? AND ts > ? ORDER BY ts LIMIT 1",
                (channel_id, float(after_timestamp)),
            ).fetchone(),
            default=_UNREADABLE,
        )
        if row is _UNREADABLE:
            raise SampleStoreError(f"could not query samples for '{channel_id}'")
        if row is None:
            return None
        ts, payload = row
        return Sample(value=_load(channel_id, ts, payload), timestamp=float(ts))

    def count(self, channel_id: str | None = None) -> int:
        if channel_id is None:
            sql, params = "SELECT COUNT(*) FROM samples", ()
        else:
            sql, params = "SELECT COUNT(*) FROM samples WHERE channel_id = ?", (channel_id,)
        row = self._execute(lambda conn: conn.execute(sql, params).fetchone(), default=(0,))
        return int(row[0])

    def db_bytes(self) -> int:
        total = 0
        for suffix in ("", "-wal"):
            try:
                total += self.path.with_name(self.path.name + suffix).stat().st_size
            except OSError:
                continue
        return total

    def metrics(self) -> Dict[str, int]:
        return {
            "store_db_bytes": self.db_bytes(),
            "store_samples": self.count(),
            "store_evictions_total": self.evictions_total,
        }

    def prune(self, *, max_age_s: float, now: float | None = None) -> int:
        """Delete samples older than max_age_s, then apply the byte quota.

        Returns the number of samples removed.
        """

        cutoff = (time.time() if now is None else float(now)) - float(max_age_s)

        def _op(conn: sqlite3.Connection) -> Tuple[int, int]:
            aged = max(0, conn.execute("DELETE FROM samples WHERE ts < ?", (cutoff,)).rowcount)
            conn.commit()
            return aged, self._shrink_to_quota(conn)

        aged, evicted = self._execute(_op, default=(0, 0))
        self._note_evictions(evicted)
        if aged:
            logger.info("pruned %s samples older than %ss", aged, max_age_s)
        return aged + evicted
