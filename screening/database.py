import logging
import os
import queue
import re
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

# table or alias-qualified column, e.g. "overall_score" or "ce.overall_score"
IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
# table with optional alias, e.g. "candidate_evaluations ce"
TABLE_REF = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*( [A-Za-z_][A-Za-z0-9_]*)?$")

COMPARISONS = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<=", "not": "!="}
JOIN_TYPES = {"INNER", "LEFT", "CROSS"}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS analysis_jobs (
        requirement_id TEXT PRIMARY KEY,
        job_title TEXT NOT NULL,
        job_description TEXT,
        input_type TEXT DEFAULT 'title',
        experience_level TEXT DEFAULT 'mid',
        status TEXT NOT NULL DEFAULT 'submitted',
        progress INTEGER DEFAULT 0,
        current_step TEXT,
        total_candidates INTEGER DEFAULT 0,
        estimated_time TEXT,
        retry_attempts INTEGER DEFAULT 0,
        error_message TEXT,
        last_error_id INTEGER,
        created_by TEXT,
        submitted_at TEXT,
        updated_at TEXT,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS candidates (
        candidate_id TEXT PRIMARY KEY,
        candidate_name TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        current_role TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS candidate_evaluations (
        evaluation_id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES analysis_jobs (requirement_id),
        candidate_id TEXT NOT NULL REFERENCES candidates (candidate_id),
        overall_score REAL,
        technical_score REAL,
        experience_score REAL,
        soft_skills_score REAL,
        cultural_fit_score REAL,
        recommendation TEXT,
        score_justification TEXT,
        strengths TEXT,
        concerns TEXT,
        interview_focus TEXT,
        candidate_persona_analysis TEXT,
        technical_assessment TEXT,
        hr_recommendation TEXT,
        development_potential TEXT,
        evaluated_at TEXT,
        UNIQUE (job_id, candidate_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS interview_schedules (
        interview_id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL REFERENCES analysis_jobs (requirement_id),
        candidate_id TEXT NOT NULL REFERENCES candidates (candidate_id),
        scheduled_at TEXT NOT NULL,
        duration_minutes INTEGER DEFAULT 60,
        interview_type TEXT DEFAULT 'technical',
        interviewer_email TEXT,
        meeting_link TEXT,
        status TEXT NOT NULL DEFAULT 'scheduled',
        notes TEXT,
        feedback_score INTEGER,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS interview_feedback (
        feedback_id INTEGER PRIMARY KEY AUTOINCREMENT,
        interview_id INTEGER NOT NULL REFERENCES interview_schedules (interview_id),
        score INTEGER,
        technical_assessment TEXT,
        communication_rating INTEGER,
        cultural_fit_rating INTEGER,
        strengths TEXT,
        weaknesses TEXT,
        recommendation TEXT,
        notes TEXT,
        interviewer_email TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        log_id INTEGER PRIMARY KEY AUTOINCREMENT,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT,
        job_id TEXT,
        candidate_id TEXT,
        user_id TEXT DEFAULT 'system',
        ip_address TEXT,
        user_agent TEXT,
        details TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS error_logs (
        error_id INTEGER PRIMARY KEY AUTOINCREMENT,
        requirement_id TEXT,
        candidate_id TEXT,
        error_type TEXT NOT NULL,
        error_severity TEXT DEFAULT 'error',
        error_message TEXT,
        error_details TEXT,
        workflow_step TEXT,
        node_name TEXT,
        user_message TEXT,
        resolved INTEGER DEFAULT 0,
        resolved_at TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS analysis_summaries (
        summary_id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL,
        total_candidates INTEGER,
        recommended_candidates INTEGER,
        average_score REAL,
        top_score REAL,
        summary_text TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_requirements (
        requirements_id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL,
        technical_requirements TEXT,
        soft_skills TEXT,
        ideal_candidate_personas TEXT,
        scoring_weights TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processing_queue (
        queue_id INTEGER PRIMARY KEY AUTOINCREMENT,
        requirement_id TEXT NOT NULL,
        candidate_email TEXT,
        evaluation_id TEXT,
        status TEXT DEFAULT 'queued',
        queued_at TEXT,
        processed_at TEXT
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON analysis_jobs(status)",
    "CREATE INDEX IF NOT EXISTS idx_evaluations_job_id ON candidate_evaluations(job_id)",
    "CREATE INDEX IF NOT EXISTS idx_evaluations_score ON candidate_evaluations(overall_score)",
    "CREATE INDEX IF NOT EXISTS idx_evaluations_recommendation ON candidate_evaluations(recommendation)",
    "CREATE INDEX IF NOT EXISTS idx_candidates_name ON candidates(candidate_name)",
    "CREATE INDEX IF NOT EXISTS idx_interviews_job_id ON interview_schedules(job_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_type, entity_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_created ON audit_log(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_errors_requirement ON error_logs(requirement_id)",
    "CREATE INDEX IF NOT EXISTS idx_queue_requirement ON processing_queue(requirement_id)",
]


def check_identifier(name: str, allowed: Optional[Iterable[str]] = None) -> str:
    """Reject column names that are not plain identifiers or not in the allow-list"""
    if not isinstance(name, str) or not IDENTIFIER.match(name):
        raise ValueError(f"Invalid column name: {name!r}")
    if allowed is not None and name not in allowed:
        raise ValueError(f"Column not allowed: {name}")
    return name


def _casefold(value):
    return value.casefold() if isinstance(value, str) else value


def check_table(name: str) -> str:
    if not isinstance(name, str) or not TABLE_REF.match(name):
        raise ValueError(f"Invalid table reference: {name!r}")
    return name


@dataclass
class WhereClause:
    """Parameterized WHERE fragment built up one predicate at a time"""
    conditions: List[str] = field(default_factory=list)
    params: List[Any] = field(default_factory=list)

    def and_(self, fragment: str, *params: Any) -> "WhereClause":
        self.conditions.append(fragment)
        self.params.extend(params)
        return self

    @property
    def clause(self) -> str:
        if not self.conditions:
            return ""
        return "WHERE " + " AND ".join(self.conditions)


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]]
    rowcount: int = -1
    lastrowid: Optional[int] = None


class PooledConnection:
    """A connection on loan from the pool.

    The connection goes back to the pool exactly once: either on an explicit
    ``release()`` or, if the holder forgets, when the watchdog fires after
    ``release_timeout`` seconds. A slow holder that outlives the watchdog
    loses its connection. Without a ``release_timeout`` no watchdog is armed.
    """

    def __init__(self, pool: "ConnectionPool", conn: sqlite3.Connection,
                 release_timeout: Optional[float] = None):
        self._pool = pool
        self.conn = conn
        self._released = False
        self._lock = threading.Lock()
        self._release_timeout = release_timeout
        self._watchdog = None
        if release_timeout is not None:
            self._watchdog = threading.Timer(release_timeout, self._force_release)
            self._watchdog.daemon = True
            self._watchdog.start()

    @property
    def released(self) -> bool:
        return self._released

    @property
    def guarded(self) -> bool:
        return self._watchdog is not None

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        return self.conn.execute(sql, tuple(params))

    def release(self):
        with self._lock:
            if self._released:
                return
            self._released = True
        if self._watchdog is not None:
            self._watchdog.cancel()
        self._pool._return(self.conn)

    def _force_release(self):
        if not self._released:
            logger.warning(
                "Connection was not released after %.1f seconds, releasing automatically",
                self._release_timeout,
            )
            self.release()


class ConnectionPool:
    """Bounded pool of SQLite connections in autocommit mode"""

    def __init__(self, database_path: str, max_size: int = 10,
                 release_timeout: float = 5.0, acquire_timeout: float = 2.0):
        self.database_path = database_path
        self.max_size = max_size
        self.release_timeout = release_timeout
        self.acquire_timeout = acquire_timeout
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._created = 0
        self._lock = threading.Lock()
        self._closed = False

        directory = os.path.dirname(database_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.database_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=self.acquire_timeout,
        )
        conn.execute("PRAGMA foreign_keys = ON")
        # LOWER() only folds ASCII; searches compare casefold() on both sides
        conn.create_function("casefold", 1, _casefold, deterministic=True)
        return conn

    def acquire(self, watchdog: bool = True) -> PooledConnection:
        """Borrow a connection; ``watchdog=False`` for borrows released in a ``finally``"""
        if self._closed:
            raise sqlite3.InterfaceError("Connection pool is closed")

        conn = None
        try:
            conn = self._idle.get_nowait()
        except queue.Empty:
            with self._lock:
                if self._created < self.max_size:
                    self._created += 1
                    conn = self._connect()
            if conn is None:
                try:
                    conn = self._idle.get(timeout=self.acquire_timeout)
                except queue.Empty:
                    raise sqlite3.OperationalError(
                        f"Timed out after {self.acquire_timeout}s waiting for a database connection"
                    )
        return PooledConnection(self, conn, self.release_timeout if watchdog else None)

    def _return(self, conn: sqlite3.Connection):
        if self._closed:
            conn.close()
            return
        if conn.in_transaction:
            conn.rollback()
        self._idle.put(conn)

    @property
    def idle_count(self) -> int:
        return self._idle.qsize()

    @property
    def size(self) -> int:
        return self._created

    def close(self):
        self._closed = True
        while True:
            try:
                self._idle.get_nowait().close()
            except queue.Empty:
                break
        logger.info("Connection pool for %s closed", self.database_path)


class Database:
    """Parameterized query layer over a connection pool"""

    def __init__(self, pool: ConnectionPool, slow_query_ms: int = 1000, log_slow_queries: bool = False):
        self.pool = pool
        self.slow_query_ms = slow_query_ms
        self.log_slow_queries = log_slow_queries
        self._columns: Dict[str, List[str]] = {}

    @classmethod
    def from_settings(cls, settings) -> "Database":
        pool = ConnectionPool(
            settings.database_path,
            max_size=settings.pool_max,
            release_timeout=settings.release_timeout,
        )
        db = cls(pool, slow_query_ms=settings.slow_query_ms, log_slow_queries=not settings.is_production)
        db.init_schema()
        return db

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def init_schema(self):
        """Create tables and indexes, then cache each table's column list"""
        def create(conn):
            for statement in SCHEMA + INDEXES:
                conn.execute(statement)

        self.transaction(create)
        tables = self.fetch_all("SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'")
        for table in tables:
            info = self.fetch_all(f"PRAGMA table_info({table['name']})")
            self._columns[table["name"]] = [col["name"] for col in info]

    def columns(self, table: str) -> List[str]:
        if table not in self._columns:
            raise ValueError(f"Unknown table: {table}")
        return self._columns[table]

    def _check_data(self, table: str, data: Dict[str, Any]):
        allowed = self.columns(table)
        for column in data:
            check_identifier(column, allowed)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: Sequence[Any] = (), conn: Optional[PooledConnection] = None) -> QueryResult:
        """Run one statement, on ``conn`` when inside a transaction"""
        start = time.monotonic()
        pooled = conn or self.pool.acquire(watchdog=False)
        try:
            cursor = pooled.execute(sql, params)
            rows = []
            if cursor.description:
                columns = [desc[0] for desc in cursor.description]
                rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
            result = QueryResult(rows=rows, rowcount=cursor.rowcount, lastrowid=cursor.lastrowid)
        except sqlite3.Error as e:
            logger.error("Database query error: %s | query: %s", e, " ".join(sql.split()))
            raise
        finally:
            if conn is None:
                pooled.release()

        duration_ms = (time.monotonic() - start) * 1000
        if self.log_slow_queries and duration_ms > self.slow_query_ms:
            logger.warning(
                "Slow query detected (%.0fms, %d rows): %s",
                duration_ms, len(result.rows), " ".join(sql.split()),
            )
        return result

    def fetch_all(self, sql: str, params: Sequence[Any] = (), conn: Optional[PooledConnection] = None) -> List[Dict]:
        return self.execute(sql, params, conn).rows

    def fetch_one(self, sql: str, params: Sequence[Any] = (), conn: Optional[PooledConnection] = None) -> Optional[Dict]:
        rows = self.execute(sql, params, conn).rows
        return rows[0] if rows else None

    def transaction(self, fn: Callable[[PooledConnection], Any]) -> Any:
        """Run ``fn(conn)`` between BEGIN and COMMIT, rolling back on any error"""
        pooled = self.pool.acquire()
        try:
            pooled.execute("BEGIN")
            result = fn(pooled)
            pooled.execute("COMMIT")
            return result
        except Exception:
            if pooled.conn.in_transaction:
                try:
                    pooled.execute("ROLLBACK")
                except sqlite3.Error:
                    logger.exception("Rollback failed")
            raise
        finally:
            pooled.release()

    def ping(self) -> Dict[str, Any]:
        try:
            row = self.fetch_one("SELECT datetime('now') AS now")
            return {"connected": True, "timestamp": row["now"]}
        except sqlite3.Error as e:
            return {"connected": False, "error": str(e)}

    def close(self):
        self.pool.close()

    # ------------------------------------------------------------------
    # Query builders
    # ------------------------------------------------------------------

    @staticmethod
    def build_where_clause(conditions: Optional[Dict[str, Any]],
                           allowed: Optional[Iterable[str]] = None) -> WhereClause:
        """Turn ``{field: value}`` / ``{field: {"operator": op, "value": v}}`` into a WhereClause.

        ``None`` values are skipped, lists become ``IN (...)``. Field names are
        checked against ``allowed`` when given.
        """
        where = WhereClause()
        allowed = set(allowed) if allowed is not None else None

        for key, value in (conditions or {}).items():
            if value is None:
                continue
            check_identifier(key, allowed)

            if isinstance(value, (list, tuple, set)):
                values = list(value)
                if not values:
                    where.and_("1 = 0")
                    continue
                placeholders = ", ".join("?" for _ in values)
                where.and_(f"{key} IN ({placeholders})", *values)
            elif isinstance(value, dict) and "operator" in value:
                operator = value["operator"]
                operand = value.get("value")
                if operator == "like":
                    where.and_(f"{key} LIKE ?", f"%{operand}%")
                elif operator in COMPARISONS:
                    where.and_(f"{key} {COMPARISONS[operator]} ?", operand)
                elif operator == "between":
                    low, high = operand
                    where.and_(f"{key} BETWEEN ? AND ?", low, high)
                elif operator == "is_null":
                    where.and_(f"{key} IS NULL")
                elif operator == "is_not_null":
                    where.and_(f"{key} IS NOT NULL")
                else:
                    where.and_(f"{key} = ?", operand)
            else:
                where.and_(f"{key} = ?", value)

        return where

    @staticmethod
    def build_order_by(sort: Union[None, str, tuple, list], allowed: Optional[Iterable[str]] = None) -> str:
        """``"field"``, ``("field", "DESC")`` or a list of either"""
        if not sort:
            return ""
        allowed = set(allowed) if allowed is not None else None
        items = sort if isinstance(sort, list) else [sort]

        clauses = []
        for item in items:
            if isinstance(item, str):
                column, direction = item, "ASC"
            else:
                column, direction = item[0], (item[1] if len(item) > 1 else "ASC")
            direction = direction.upper()
            if direction not in ("ASC", "DESC"):
                raise ValueError(f"Invalid sort direction: {direction}")
            clauses.append(f"{check_identifier(column, allowed)} {direction}")

        return "ORDER BY " + ", ".join(clauses)

    @staticmethod
    def build_pagination(page: int = 1, limit: int = 20):
        page = max(1, int(page))
        limit = max(1, int(limit))
        offset = (page - 1) * limit
        return "LIMIT ? OFFSET ?", [limit, offset]

    @staticmethod
    def build_joins(joins: Optional[List[Union[str, Dict[str, str]]]]) -> str:
        parts = []
        for join in joins or []:
            if isinstance(join, str):
                parts.append(join)
                continue
            join_type = join.get("type", "INNER").upper()
            if join_type not in JOIN_TYPES:
                raise ValueError(f"Invalid join type: {join_type}")
            parts.append(f"{join_type} JOIN {check_table(join['table'])} ON {join['on']}")
        return " ".join(parts)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def paginated_query(self, table: str, columns: str = "*",
                        conditions: Union[None, Dict[str, Any], WhereClause] = None,
                        sort=None, page: int = 1, limit: int = 20, joins=None,
                        allowed: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """SELECT a page of rows plus a COUNT over the same joins and predicate"""
        check_table(table)
        where = conditions if isinstance(conditions, WhereClause) else self.build_where_clause(conditions, allowed)
        order_by = self.build_order_by(sort, allowed)
        limit_clause, limit_params = self.build_pagination(page, limit)
        join_clause = self.build_joins(joins)

        count_row = self.fetch_one(
            f"SELECT COUNT(*) AS total FROM {table} {join_clause} {where.clause}",
            where.params,
        )
        total = int(count_row["total"])

        rows = self.fetch_all(
            f"SELECT {columns} FROM {table} {join_clause} {where.clause} {order_by} {limit_clause}",
            where.params + limit_params,
        )

        page = max(1, int(page))
        limit = max(1, int(limit))
        return {
            "data": rows,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": (total + limit - 1) // limit,
                "hasNext": page * limit < total,
                "hasPrev": page > 1,
            },
        }

    def insert(self, table: str, data: Dict[str, Any], conn: Optional[PooledConnection] = None) -> Dict[str, Any]:
        """INSERT one row and return it as stored"""
        self._check_data(table, data)
        columns = list(data)
        placeholders = ", ".join("?" for _ in columns)
        result = self.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            list(data.values()),
            conn,
        )
        return self.fetch_one(f"SELECT * FROM {table} WHERE rowid = ?", [result.lastrowid], conn)

    def update(self, table: str, data: Dict[str, Any], conditions: Dict[str, Any],
               conn: Optional[PooledConnection] = None) -> int:
        """UPDATE rows matching ``conditions``; returns the number changed"""
        self._check_data(table, data)
        where = self.build_where_clause(conditions, self.columns(table))
        if not where.conditions:
            raise ValueError("Refusing to update without conditions")
        assignments = ", ".join(f"{column} = ?" for column in data)
        result = self.execute(
            f"UPDATE {table} SET {assignments} {where.clause}",
            list(data.values()) + where.params,
            conn,
        )
        return result.rowcount

    def upsert(self, table: str, data: Dict[str, Any], conflict_columns: List[str],
               update_columns: Optional[List[str]] = None,
               conn: Optional[PooledConnection] = None) -> Optional[Dict[str, Any]]:
        """INSERT ... ON CONFLICT DO UPDATE, returning the stored row.

        Without ``update_columns`` every non-conflict column is updated; when
        nothing is left to update the statement becomes insert-or-ignore.
        """
        self._check_data(table, data)
        allowed = self.columns(table)
        for column in conflict_columns + (update_columns or []):
            check_identifier(column, allowed)

        columns = list(data)
        placeholders = ", ".join("?" for _ in columns)
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT ({', '.join(conflict_columns)})"
        )

        targets = update_columns if update_columns is not None else [
            col for col in columns if col not in conflict_columns
        ]
        if targets:
            sql += " DO UPDATE SET " + ", ".join(f"{col} = excluded.{col}" for col in targets)
        else:
            sql += " DO NOTHING"

        self.execute(sql, list(data.values()), conn)

        where = self.build_where_clause({col: data.get(col) for col in conflict_columns}, allowed)
        return self.fetch_one(f"SELECT * FROM {table} {where.clause}", where.params, conn)

    def batch_insert(self, table: str, columns: List[str], values: List[Sequence[Any]],
                     conn: Optional[PooledConnection] = None) -> int:
        """Multi-row INSERT; an empty batch is a no-op"""
        if not values:
            return 0
        allowed = self.columns(table)
        for column in columns:
            check_identifier(column, allowed)

        row_placeholders = "(" + ", ".join("?" for _ in columns) + ")"
        placeholders = ", ".join(row_placeholders for _ in values)
        params = [value for row in values for value in row]
        result = self.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES {placeholders}",
            params,
            conn,
        )
        return result.rowcount

    def bulk_update(self, table: str, updates: List[Dict[str, Dict[str, Any]]]) -> List[Dict[str, Any]]:
        """Apply ``[{"conditions": ..., "data": ...}]`` in one transaction, returning updated rows"""
        allowed = self.columns(table)

        def apply(conn):
            results = []
            for change in updates:
                self.update(table, change["data"], change["conditions"], conn)
                # re-select with the new values layered over the given conditions
                lookup = dict(change["conditions"])
                lookup.update({k: v for k, v in change["data"].items() if k in lookup})
                where = self.build_where_clause(lookup, allowed)
                results.extend(self.fetch_all(f"SELECT * FROM {table} {where.clause}", where.params, conn))
            return results

        return self.transaction(apply)
