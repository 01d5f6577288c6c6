"""
PostgreSQL event store backed by psycopg2.

Schema:
    events(event_id TEXT PRIMARY KEY, user_id, session_id, type,
           payload JSONB, occurred_at TIMESTAMPTZ, received_at TIMESTAMPTZ)
    index (user_id, occurred_at DESC) for the journey read path

Writes go through one multi-row INSERT ... ON CONFLICT (event_id) DO NOTHING
per batch. If the store rejects a record (bad data), the batch is retried
row by row inside savepoints so the remaining records still land.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extras import Json, RealDictCursor, execute_values
from psycopg2.pool import ThreadedConnectionPool

from ingest_sdk.errors import BulkWriteError, StorageError
from ingest_sdk.events import EventType, NormalizedEvent
from ingest_sdk.storage import DEFAULT_QUERY_LIMIT, InsertResult, StorageClient

logger = logging.getLogger(__name__)

_COLUMNS = ("event_id", "user_id", "session_id", "type", "payload", "occurred_at", "received_at")

# Errors that mean "this record is bad", as opposed to "the store is unavailable".
_RECORD_ERRORS = (psycopg2.DataError, psycopg2.IntegrityError)


class PostgresStorage(StorageClient):
    """
    Event store on a shared psycopg2 connection pool.

    The pool is shared by all concurrent flushes and the read path, so it
    should hold at least max_concurrent_flushes connections.

    Example:
        storage = PostgresStorage("postgresql://localhost/events", max_connections=5)
        storage.ensure_schema()
        storage.bulk_insert(batch)
        journey = storage.query_by_user("user-1", limit=50)
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        max_connections: int = 5,
        min_connections: int = 1,
        table: str = "events",
        pool: Optional[ThreadedConnectionPool] = None,
    ):
        """
        Initialize the store.

        Args:
            dsn: Database connection string
            max_connections: Pool ceiling
            min_connections: Connections opened eagerly
            table: Table name
            pool: Existing pool to use instead of opening one from dsn
        """
        if pool is None:
            if not dsn:
                raise ValueError("PostgresStorage requires a dsn or a pool")
            pool = ThreadedConnectionPool(min_connections, max_connections, dsn)
        self._pool = pool
        self._table = sql.Identifier(table)
        self._index = sql.Identifier(f"{table}_user_occurred_idx")

    @contextmanager
    def _connection(self) -> Iterator[PgConnection]:
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn, close=bool(conn.closed))

    def ensure_schema(self) -> None:
        """Create the events table and journey index if missing."""
        statements = [
            sql.SQL(
                "CREATE TABLE IF NOT EXISTS {table} ("
                " event_id TEXT PRIMARY KEY,"
                " user_id TEXT NOT NULL,"
                " session_id TEXT NOT NULL,"
                " type TEXT NOT NULL,"
                " payload JSONB NOT NULL DEFAULT '{{}}'::jsonb,"
                " occurred_at TIMESTAMPTZ NOT NULL,"
                " received_at TIMESTAMPTZ NOT NULL)"
            ).format(table=self._table),
            sql.SQL(
                "CREATE INDEX IF NOT EXISTS {index} ON {table} (user_id, occurred_at DESC)"
            ).format(index=self._index, table=self._table),
        ]
        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    for statement in statements:
                        cur.execute(statement)
                conn.commit()
            except psycopg2.Error as e:
                conn.rollback()
                raise StorageError(f"Failed to create schema: {e}")

    def bulk_insert(self, events: Sequence[NormalizedEvent]) -> InsertResult:
        if not events:
            return InsertResult(inserted_count=0)

        rows = [_to_row(event) for event in events]
        try:
            with self._connection() as conn:
                try:
                    with conn.cursor() as cur:
                        returned = execute_values(
                            cur,
                            self._insert_sql(),
                            rows,
                            page_size=len(rows),
                            fetch=True,
                        )
                    conn.commit()
                except _RECORD_ERRORS as e:
                    conn.rollback()
                    logger.warning(
                        f"Batch of {len(rows)} rejected ({e.__class__.__name__}), retrying row by row"
                    )
                    return self._insert_rows(conn, rows)
                except psycopg2.Error:
                    if not conn.closed:
                        conn.rollback()
                    raise
        except psycopg2.Error as e:
            raise StorageError(f"Bulk insert of {len(rows)} events failed: {e}")

        inserted = len(returned)
        return InsertResult(inserted_count=inserted, duplicate_count=len(rows) - inserted)

    def _insert_rows(self, conn: PgConnection, rows: List[Tuple[Any, ...]]) -> InsertResult:
        """Insert rows one at a time so a bad record does not block the rest."""
        inserted = 0
        duplicates = 0
        rejected: List[str] = []
        statement = sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES ({values}) "
            "ON CONFLICT (event_id) DO NOTHING RETURNING event_id"
        ).format(
            table=self._table,
            columns=sql.SQL(", ").join(map(sql.Identifier, _COLUMNS)),
            values=sql.SQL(", ").join(sql.Placeholder() * len(_COLUMNS)),
        )

        with conn.cursor() as cur:
            for row in rows:
                cur.execute("SAVEPOINT ingest_row")
                try:
                    cur.execute(statement, row)
                    if cur.fetchone() is None:
                        duplicates += 1
                    else:
                        inserted += 1
                    cur.execute("RELEASE SAVEPOINT ingest_row")
                except _RECORD_ERRORS as e:
                    cur.execute("ROLLBACK TO SAVEPOINT ingest_row")
                    rejected.append(row[0])
                    logger.error(f"Store rejected event {row[0]}: {e}")
        conn.commit()

        if rejected:
            raise BulkWriteError(
                f"{len(rejected)} of {len(rows)} events rejected by the store",
                inserted_count=inserted,
                duplicate_count=duplicates,
                rejected_ids=rejected,
            )
        return InsertResult(inserted_count=inserted, duplicate_count=duplicates)

    def _insert_sql(self) -> sql.Composed:
        return sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES %s "
            "ON CONFLICT (event_id) DO NOTHING RETURNING event_id"
        ).format(
            table=self._table,
            columns=sql.SQL(", ").join(map(sql.Identifier, _COLUMNS)),
        )

    def query_by_user(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[NormalizedEvent]:
        clauses = [sql.SQL("user_id = %s")]
        params: List[Any] = [user_id]
        if start is not None:
            clauses.append(sql.SQL("occurred_at >= %s"))
            params.append(start)
        if end is not None:
            clauses.append(sql.SQL("occurred_at <= %s"))
            params.append(end)
        params.append(limit)

        query = sql.SQL(
            "SELECT {columns} FROM {table} WHERE {where} ORDER BY occurred_at DESC LIMIT %s"
        ).format(
            columns=sql.SQL(", ").join(map(sql.Identifier, _COLUMNS)),
            table=self._table,
            where=sql.SQL(" AND ").join(clauses),
        )

        try:
            with self._connection() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, params)
                    rows = [dict(row) for row in cur.fetchall()]
                conn.rollback()
        except psycopg2.Error as e:
            raise StorageError(f"Journey query for user {user_id} failed: {e}")

        return [_from_row(row) for row in rows]

    def count(self) -> int:
        try:
            with self._connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql.SQL("SELECT count(*) FROM {table}").format(table=self._table))
                    (total,) = cur.fetchone()
                conn.rollback()
        except psycopg2.Error as e:
            raise StorageError(f"Count failed: {e}")
        return int(total)

    def close(self) -> None:
        """Close every pooled connection."""
        if not self._pool.closed:
            self._pool.closeall()


def _to_row(event: NormalizedEvent) -> Tuple[Any, ...]:
    return (
        event.event_id,
        event.user_id,
        event.session_id,
        event.type.value,
        Json(dict(event.payload)),
        event.occurred_at,
        event.received_at,
    )


def _from_row(row: Dict[str, Any]) -> NormalizedEvent:
    return NormalizedEvent(
        event_id=row["event_id"],
        user_id=row["user_id"],
        session_id=row["session_id"],
        type=EventType(row["type"]),
        payload=dict(row.get("payload") or {}),
        occurred_at=row["occurred_at"],
        received_at=row["received_at"],
    )
