from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from sensorhub.channels import Sample
from sensorhub.errors import SampleStoreError
from sensorhub.store import SqlitePragmas, SqliteSampleStore


def test_store_applies_sqlite_pragmas(tmp_path: Path) -> None:
    store = SqliteSampleStore(
        str(tmp_path / "samples.sqlite"),
        pragmas=SqlitePragmas.coerce(journal_mode="wal", synchronous="normal", temp_store="memory"),
    )

    with store._connect() as conn:  # noqa: SLF001 - test verifies configured pragmas
        (journal_mode,) = conn.execute("PRAGMA journal_mode").fetchone()
        (synchronous,) = conn.execute("PRAGMA synchronous").fetchone()
        (temp_store,) = conn.execute("PRAGMA temp_store").fetchone()

    assert str(journal_mode).lower() == "wal"
    assert int(synchronous) == 1
    assert int(temp_store) == 2


def test_invalid_pragma_falls_back_to_default(caplog: pytest.LogCaptureFixture) -> None:
    pragmas = SqlitePragmas.coerce(journal_mode="bogus", synchronous="full")

    assert pragmas == SqlitePragmas(journal_mode="WAL", synchronous="FULL", temp_store="MEMORY")
    assert "invalid sqlite journal_mode" in caplog.text


def test_query_returns_oldest_sample_newer_than_pointer(tmp_path: Path) -> None:
    store = SqliteSampleStore(str(tmp_path / "samples.sqlite"))
    for ts in (30.0, 10.0, 20.0):
        assert store.append("position", ts, {"lat": ts, "lon": -ts}) is True
    assert store.append("light", 15.0, 900) is True

    assert store.query("position", 0.0) == Sample(value={"lat": 10.0, "lon": -10.0}, timestamp=10.0)
    assert store.query("position", 10.0).timestamp == 20.0
    assert store.query("position", 20.5).timestamp == 30.0
    assert store.query("position", 30.0) is None
    assert store.query("light", 0.0) == Sample(value=900, timestamp=15.0)


def test_store_keeps_newest_samples_per_channel(tmp_path: Path) -> None:
    store = SqliteSampleStore(str(tmp_path / "samples.sqlite"), max_samples_per_channel=3)
    for idx in range(1, 6):
        assert store.append("gyro", float(idx), {"x": idx}) is True
    assert store.append("light", 1.0, 1) is True

    assert store.count("gyro") == 3
    assert store.count("light") == 1
    assert store.query("gyro", 0.0).timestamp == 3.0


def test_unserializable_value_is_rejected(tmp_path: Path) -> None:
    store = SqliteSampleStore(str(tmp_path / "samples.sqlite"))
    assert store.append("light", 1.0, object()) is False
    assert store.count() == 0


def test_query_raises_when_database_unreadable(monkeypatch, tmp_path: Path) -> None:
    store = SqliteSampleStore(str(tmp_path / "samples.sqlite"))
    store.append("light", 1.0, 100)

    def _broken_conn() -> sqlite3.Connection:
        raise sqlite3.OperationalError("unable to open database file")

    monkeypatch.setattr(store, "_connect", _broken_conn)

    with pytest.raises(SampleStoreError):
        store.query("light", 0.0)


def test_append_disk_full_evicts_oldest_and_retries(monkeypatch, tmp_path: Path) -> None:
    store = SqliteSampleStore(str(tmp_path / "samples.sqlite"), eviction_batch_size=1)
    assert store.append("light", 1.0, 100) is True
    assert store.append("light", 2.0, 200) is True

    original_insert = store._write_sample  # noqa: SLF001 - controlled disk-full simulation in test
    attempts = {"n": 0}

    def _flaky_insert(conn: sqlite3.Connection, *, channel_id: str, timestamp: float, payload: str) -> None:
        if attempts["n"] == 0:
            attempts["n"] += 1
            raise sqlite3.OperationalError("database or disk is full")
        original_insert(conn, channel_id=channel_id, timestamp=timestamp, payload=payload)

    monkeypatch.setattr(store, "_write_sample", _flaky_insert)

    assert store.append("light", 3.0, 300) is True
    assert store.query("light", 0.0).timestamp == 2.0
    assert store.count("light") == 2
    assert store.evictions_total == 1


def test_append_disk_full_with_empty_store_drops_sample(monkeypatch, tmp_path: Path) -> None:
    store = SqliteSampleStore(str(tmp_path / "samples.sqlite"), eviction_batch_size=1)

    def _always_fail(conn: sqlite3.Connection, *, channel_id: str, timestamp: float, payload: str) -> None:
        _ = (conn, channel_id, timestamp, payload)
        raise sqlite3.OperationalError("database or disk is full")

    monkeypatch.setattr(store, "_write_sample", _always_fail)

    assert store.append("light", 1.0, 100) is False
    assert store.count() == 0


def test_store_recovers_from_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "samples.sqlite"
    path.write_bytes(b"not-a-sqlite-db")

    store = SqliteSampleStore(str(path), recover_corruption=True)
    assert list(tmp_path.glob("samples.sqlite.corrupt-*"))
    assert path.exists()

    assert store.append("light", 1.0, 100) is True
    assert store.count() == 1


def test_prune_deletes_samples_older_than_max_age(tmp_path: Path) -> None:
    store = SqliteSampleStore(str(tmp_path / "samples.sqlite"))
    for ts in (100.0, 200.0, 300.0):
        store.append("pressure", ts, 101.0)

    deleted = store.prune(max_age_s=150.0, now=360.0)

    assert deleted == 2
    assert store.query("pressure", 0.0).timestamp == 300.0


def test_metrics_report_store_state(tmp_path: Path) -> None:
    store = SqliteSampleStore(str(tmp_path / "samples.sqlite"))
    store.append("light", 1.0, 100)
    store.append("light", 2.0, 200)

    metrics = store.metrics()
    assert metrics["store_samples"] == 2
    assert metrics["store_evictions_total"] == 0
    assert metrics["store_db_bytes"] > 0


def test_byte_quota_evicts_oldest_samples(tmp_path: Path) -> None:
    store = SqliteSampleStore(str(tmp_path / "samples.sqlite"), max_db_bytes=64 * 1024, eviction_batch_size=10)
    blob = "x" * 2_000
    for idx in range(100):
        assert store.append("position", float(idx), {"note": blob}) is True

    assert store.evictions_total > 0
    assert store.count("position") < 100
    assert store.query("position", 98.0).timestamp == 99.0
