import sqlite3
import threading
import time

import pytest

from screening.database import ConnectionPool, Database, WhereClause


def test_schema_creates_tables(db):
    assert "overall_score" in db.columns("candidate_evaluations")
    assert "feedback_score" in db.columns("interview_schedules")
    with pytest.raises(ValueError):
        db.columns("resumes")


def test_insert_returns_stored_row(db):
    row = db.insert("audit_log", {"action": "test", "entity_type": "system", "entity_id": "1"})
    assert row["log_id"] == 1
    assert row["user_id"] == "system"


def test_insert_rejects_unknown_column(db):
    with pytest.raises(ValueError):
        db.insert("audit_log", {"action": "test", "entity_type": "system", "bogus": 1})


def test_upsert_keeps_single_row(db, seed):
    seed.job()
    seed.candidate("c1", "Alice")
    seed.evaluation("REQ-1700000000000-abc123xyz", "c1", 60)
    row = seed.evaluation("REQ-1700000000000-abc123xyz", "c1", 85)

    assert row["overall_score"] == 85
    count = db.fetch_one("SELECT COUNT(*) AS n FROM candidate_evaluations")
    assert count["n"] == 1


def test_upsert_without_update_columns_ignores_conflict(db, seed):
    seed.candidate("c1", "Alice")
    row = db.upsert("candidates", {"candidate_id": "c1", "candidate_name": "Bob"}, ["candidate_id"], [])
    assert row["candidate_name"] == "Alice"


def test_build_where_clause():
    where = Database.build_where_clause({
        "status": "completed",
        "progress": None,
        "overall_score": {"operator": "gte", "value": 80},
        "candidate_id": ["a", "b"],
        "job_id": [],
    })
    assert where.clause == "WHERE status = ? AND overall_score >= ? AND candidate_id IN (?, ?) AND 1 = 0"
    assert where.params == ["completed", 80, "a", "b"]


def test_build_where_clause_operators():
    where = Database.build_where_clause({
        "candidate_name": {"operator": "like", "value": "ali"},
        "evaluated_at": {"operator": "between", "value": ["2026-01-01", "2026-02-01"]},
        "completed_at": {"operator": "is_null"},
    })
    assert where.clause == (
        "WHERE candidate_name LIKE ? AND evaluated_at BETWEEN ? AND ? AND completed_at IS NULL"
    )
    assert where.params == ["%ali%", "2026-01-01", "2026-02-01"]


def test_empty_where_clause():
    assert Database.build_where_clause({}).clause == ""
    assert WhereClause().and_("a = ?", 1).clause == "WHERE a = ?"


def test_rejects_unsafe_identifiers():
    with pytest.raises(ValueError):
        Database.build_where_clause({"status; DROP TABLE analysis_jobs": 1})
    with pytest.raises(ValueError):
        Database.build_where_clause({"status": 1}, allowed=["progress"])
    with pytest.raises(ValueError):
        Database.build_order_by([("overall_score", "sideways")])
    with pytest.raises(ValueError):
        Database.build_order_by("overall_score DESC")
    with pytest.raises(ValueError):
        Database.build_joins([{"type": "OUTER APPLY", "table": "candidates c", "on": "1 = 1"}])


def test_build_order_by():
    assert Database.build_order_by(None) == ""
    assert Database.build_order_by("candidate_name") == "ORDER BY candidate_name ASC"
    assert Database.build_order_by([("ce.overall_score", "desc"), "c.candidate_id"]) == \
        "ORDER BY ce.overall_score DESC, c.candidate_id ASC"


def test_build_pagination():
    assert Database.build_pagination(3, 20) == ("LIMIT ? OFFSET ?", [20, 40])
    assert Database.build_pagination(0, 0) == ("LIMIT ? OFFSET ?", [1, 0])


def test_paginated_query_counts_all_matches(db, seed):
    seed.job()
    for i in range(5):
        seed.candidate(f"c{i}", f"Candidate {i}")
        seed.evaluation("REQ-1700000000000-abc123xyz", f"c{i}", 50 + i)

    page = db.paginated_query(
        "candidate_evaluations",
        conditions={"job_id": "REQ-1700000000000-abc123xyz"},
        sort=[("overall_score", "DESC")],
        page=3,
        limit=2,
    )
    assert [row["candidate_id"] for row in page["data"]] == ["c0"]
    assert page["pagination"] == {
        "page": 3, "limit": 2, "total": 5, "totalPages": 3, "hasNext": False, "hasPrev": True,
    }


def test_update_requires_conditions(db, seed):
    seed.job()
    with pytest.raises(ValueError):
        db.update("analysis_jobs", {"progress": 10}, {})
    assert db.update("analysis_jobs", {"progress": 10}, {"requirement_id": "REQ-1700000000000-abc123xyz"}) == 1


def test_transaction_rolls_back(db, seed):
    seed.job(progress=0)

    def fail(conn):
        db.update("analysis_jobs", {"progress": 50}, {"requirement_id": "REQ-1700000000000-abc123xyz"}, conn)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        db.transaction(fail)

    job = db.fetch_one("SELECT progress FROM analysis_jobs")
    assert job["progress"] == 0
    assert db.pool.idle_count == db.pool.size


def test_batch_insert(db, seed):
    seed.job()
    rows = [("REQ-1700000000000-abc123xyz", f"c{i}@example.com", "queued") for i in range(3)]
    assert db.batch_insert("processing_queue", ["requirement_id", "candidate_email", "status"], rows) == 3
    assert db.batch_insert("processing_queue", ["requirement_id"], []) == 0


def test_bulk_update(db, seed):
    seed.job("REQ-1-aaaaaaaaa", status="processing")
    seed.job("REQ-2-bbbbbbbbb", status="processing")

    rows = db.bulk_update("analysis_jobs", [
        {"conditions": {"requirement_id": "REQ-1-aaaaaaaaa"}, "data": {"progress": 40}},
        {"conditions": {"requirement_id": "REQ-2-bbbbbbbbb"}, "data": {"progress": 80}},
    ])
    assert [(row["requirement_id"], row["progress"]) for row in rows] == [
        ("REQ-1-aaaaaaaaa", 40), ("REQ-2-bbbbbbbbb", 80),
    ]


def test_foreign_keys_enforced(db):
    with pytest.raises(sqlite3.IntegrityError):
        db.insert("candidate_evaluations", {
            "evaluation_id": "e1", "job_id": "missing", "candidate_id": "missing", "overall_score": 10,
        })


def test_ping(db):
    status = db.ping()
    assert status["connected"] is True


def test_watchdog_releases_forgotten_connection(tmp_path):
    pool = ConnectionPool(str(tmp_path / "watchdog.db"), max_size=1, release_timeout=0.1)
    pooled = pool.acquire()

    deadline = time.monotonic() + 3
    while not pooled.released and time.monotonic() < deadline:
        time.sleep(0.05)

    assert pooled.released
    assert pool.idle_count == 1
    pool.acquire().release()
    pool.close()


def test_acquire_times_out_when_pool_exhausted(tmp_path):
    pool = ConnectionPool(str(tmp_path / "busy.db"), max_size=1, release_timeout=30, acquire_timeout=0.1)
    held = pool.acquire()
    with pytest.raises(sqlite3.OperationalError):
        pool.acquire()
    held.release()
    held.release()
    assert pool.idle_count == 1
    pool.close()


def test_watchdog_armed_only_for_held_connections(db, seed, monkeypatch):
    timers = []
    real_timer = threading.Timer

    def counting_timer(*args, **kwargs):
        timer = real_timer(*args, **kwargs)
        timers.append(timer)
        return timer

    monkeypatch.setattr(threading, "Timer", counting_timer)

    seed.job()
    for _ in range(20):
        db.fetch_one("SELECT * FROM analysis_jobs")
    assert timers == []

    db.transaction(lambda conn: conn.execute("SELECT 1"))
    assert len(timers) == 1

    unguarded = db.pool.acquire(watchdog=False)
    assert not unguarded.guarded
    unguarded.release()
