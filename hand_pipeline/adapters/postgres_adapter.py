"""
Postgres implementation of the pipeline state store.

Streams, analysis jobs and hands live in three tables. Multi-row changes
(dispatch, job finalization, reconciliation, reset, cascade delete) run in
a single transaction; per-stream locking uses session advisory locks.
"""

import logging
from contextlib import contextmanager
from typing import Optional, Dict, Any, List

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .base import StateStore, STREAM_MUTABLE_FIELDS
from ..errors import ConflictError, NotFoundError
from ..logging_setup import log_exception
from ..models import Stream, AnalysisJob, Hand, Segment, JobStatus, PipelineStatus

logger = logging.getLogger("hand_pipeline")

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS streams (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        video_locator TEXT NOT NULL,
        pipeline_status TEXT NOT NULL DEFAULT 'pending',
        pipeline_progress INTEGER NOT NULL DEFAULT 0,
        pipeline_error TEXT,
        current_job_id TEXT,
        analysis_attempts INTEGER NOT NULL DEFAULT 0,
        hand_count INTEGER NOT NULL DEFAULT 0,
        platform TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        pipeline_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS analysis_jobs (
        id TEXT PRIMARY KEY,
        stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
        segments JSONB NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        progress INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        platform TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        completed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS analysis_jobs_one_active_per_stream
        ON analysis_jobs (stream_id) WHERE status IN ('pending', 'executing')
    """,
    """
    CREATE TABLE IF NOT EXISTS hands (
        id TEXT PRIMARY KEY,
        stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
        number INTEGER NOT NULL,
        video_timestamp_start DOUBLE PRECISION NOT NULL,
        video_timestamp_end DOUBLE PRECISION NOT NULL,
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS hands_stream_id_idx ON hands (stream_id)",
]


class PostgresStateStore(StateStore):
    """Postgres implementation of the state store"""

    def __init__(self, database_url: str, pool_size: int = 5, timeout: int = 10,
                 lock_pool_size: Optional[int] = None):
        self.database_url = database_url
        self.pool_size = pool_size
        self.lock_pool_size = lock_pool_size or pool_size
        self.timeout = timeout
        self.pool = None
        # Advisory-lock sessions only; work done under a lock uses self.pool
        self.lock_pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = ConnectionPool(
                self.database_url,
                min_size=1,
                max_size=self.pool_size,
                kwargs={
                    "connect_timeout": self.timeout,
                    "application_name": "hand_pipeline"
                }
            )
            self.lock_pool = ConnectionPool(
                self.database_url,
                min_size=1,
                max_size=self.lock_pool_size,
                kwargs={
                    "connect_timeout": self.timeout,
                    "application_name": "hand_pipeline_locks"
                }
            )
            logger.info("Postgres state store connection pools initialized")
            self._bootstrap_schema()
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres state store: {e}")
            raise

    def _bootstrap_schema(self):
        """Create tables and indexes if they do not exist"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
                conn.commit()
                logger.info("Postgres state store schema validated")

    @contextmanager
    def stream_lock(self, stream_id: str):
        with self.lock_pool.connection() as conn:
            conn.execute("SELECT pg_advisory_lock(hashtext(%s))", (stream_id,))
            conn.commit()
            try:
                yield
            finally:
                conn.execute("SELECT pg_advisory_unlock(hashtext(%s))", (stream_id,))
                conn.commit()

    # Streams

    def create_stream(self, stream: Stream) -> Stream:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                row = self._insert_stream(cur, stream)
                conn.commit()
                logger.info(f"Created stream {stream.id} for {stream.video_locator}")
                return self._row_to_stream(row)

    def get_stream(self, stream_id: str) -> Optional[Stream]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("SELECT * FROM streams WHERE id = %s", (stream_id,))
                row = cur.fetchone()
                return self._row_to_stream(row) if row else None

    def update_stream(self, stream_id: str, changes: Dict[str, Any],
                      expect_job_id: Optional[str] = None) -> Optional[Stream]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                row = self._update_stream(cur, stream_id, changes, expect_job_id)
                conn.commit()
                return self._row_to_stream(row) if row else None

    def delete_stream(self, stream_id: str) -> bool:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM streams WHERE id = %s FOR UPDATE", (stream_id,))
                if not cur.fetchone():
                    return False
                cur.execute("DELETE FROM hands WHERE stream_id = %s", (stream_id,))
                hands_deleted = cur.rowcount
                cur.execute("DELETE FROM analysis_jobs WHERE stream_id = %s", (stream_id,))
                cur.execute("DELETE FROM streams WHERE id = %s", (stream_id,))
                conn.commit()
                logger.info(f"Deleted stream {stream_id} ({hands_deleted} hands)")
                return True

    def list_streams_by_status(self, status: PipelineStatus) -> List[Stream]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT * FROM streams
                    WHERE pipeline_status = %s
                    ORDER BY created_at ASC
                """, (PipelineStatus(status).value,))
                return [self._row_to_stream(row) for row in cur.fetchall()]

    def count_streams_by_status(self) -> Dict[str, int]:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT pipeline_status, COUNT(*) as count
                    FROM streams
                    GROUP BY pipeline_status
                """)
                counts = {status.value: 0 for status in PipelineStatus}
                for status, count in cur.fetchall():
                    counts[status] = count
                return counts

    # Jobs

    def record_dispatch(self, job: AnalysisJob, new_stream: Optional[Stream] = None) -> Stream:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                if new_stream is not None:
                    self._insert_stream(cur, new_stream)

                cur.execute("SELECT id FROM streams WHERE id = %s FOR UPDATE", (job.stream_id,))
                if not cur.fetchone():
                    raise NotFoundError(f"Stream not found: {job.stream_id}")

                cur.execute("""
                    SELECT id FROM analysis_jobs
                    WHERE stream_id = %s AND status IN ('pending', 'executing')
                    LIMIT 1
                """, (job.stream_id,))
                active = cur.fetchone()
                if active:
                    raise ConflictError(
                        f"Stream {job.stream_id} is already analyzing (job {active['id']})",
                        stream_id=job.stream_id, job_id=active['id']
                    )

                try:
                    cur.execute("""
                        INSERT INTO analysis_jobs (id, stream_id, segments, status, progress,
                                                   error_message, platform, created_at, completed_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """, (
                        job.id, job.stream_id, Jsonb([s.to_dict() for s in job.segments]),
                        job.status.value, job.progress, job.error_message, job.platform,
                        job.created_at, job.completed_at
                    ))
                except psycopg.errors.UniqueViolation:
                    raise ConflictError(
                        f"Stream {job.stream_id} is already analyzing",
                        stream_id=job.stream_id
                    )

                cur.execute("""
                    UPDATE streams
                    SET pipeline_status = 'analyzing',
                        pipeline_progress = 0,
                        pipeline_error = NULL,
                        current_job_id = %s,
                        analysis_attempts = COALESCE(analysis_attempts, 0) + 1,
                        pipeline_updated_at = now(),
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                """, (job.id, job.stream_id))
                row = cur.fetchone()
                conn.commit()
                return self._row_to_stream(row)

    def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("SELECT * FROM analysis_jobs WHERE id = %s", (job_id,))
                row = cur.fetchone()
                return self._row_to_job(row) if row else None

    def get_active_job(self, stream_id: str) -> Optional[AnalysisJob]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT * FROM analysis_jobs
                    WHERE stream_id = %s AND status IN ('pending', 'executing')
                    ORDER BY created_at DESC
                    LIMIT 1
                """, (stream_id,))
                row = cur.fetchone()
                return self._row_to_job(row) if row else None

    def list_active_jobs(self) -> List[AnalysisJob]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT * FROM analysis_jobs
                    WHERE status IN ('pending', 'executing')
                    ORDER BY created_at ASC
                """)
                return [self._row_to_job(row) for row in cur.fetchall()]

    def list_jobs(self, stream_id: str) -> List[AnalysisJob]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT * FROM analysis_jobs
                    WHERE stream_id = %s
                    ORDER BY created_at DESC
                """, (stream_id,))
                return [self._row_to_job(row) for row in cur.fetchall()]

    def update_job(self, job_id: str, status: JobStatus, progress: int,
                   error_message: Optional[str] = None, completed_at=None,
                   stream_changes: Optional[Dict[str, Any]] = None) -> Optional[AnalysisJob]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    UPDATE analysis_jobs
                    SET status = %s,
                        progress = %s,
                        error_message = COALESCE(%s, error_message),
                        completed_at = COALESCE(%s, completed_at)
                    WHERE id = %s AND status IN ('pending', 'executing')
                    RETURNING *
                """, (status.value, progress, error_message, completed_at, job_id))
                row = cur.fetchone()
                if not row:
                    return None

                if stream_changes:
                    self._update_stream(cur, row['stream_id'], stream_changes, expect_job_id=job_id)

                conn.commit()
                return self._row_to_job(row)

    # Hands

    def add_hands(self, stream_id: str, hands: List[Hand]) -> List[Hand]:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM streams WHERE id = %s", (stream_id,))
                if not cur.fetchone():
                    raise NotFoundError(f"Stream not found: {stream_id}")

                hand_data = [
                    (h.id, stream_id, h.number, h.video_timestamp_start, h.video_timestamp_end, Jsonb(h.data))
                    for h in hands
                ]
                if hand_data:
                    cur.executemany("""
                        INSERT INTO hands (id, stream_id, number, video_timestamp_start, video_timestamp_end, data)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        ON CONFLICT (id) DO NOTHING
                    """, hand_data)
                conn.commit()
                logger.info(f"Inserted {len(hand_data)} hands for stream {stream_id}")

        return [
            Hand(id=h.id, stream_id=stream_id, number=h.number,
                 video_timestamp_start=h.video_timestamp_start,
                 video_timestamp_end=h.video_timestamp_end, data=h.data)
            for h in hands
        ]

    def list_hands(self, stream_id: str) -> List[Hand]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT id, stream_id, number, video_timestamp_start, video_timestamp_end, data
                    FROM hands WHERE stream_id = %s
                """, (stream_id,))
                return [
                    Hand(
                        id=row['id'],
                        stream_id=row['stream_id'],
                        number=row['number'],
                        video_timestamp_start=row['video_timestamp_start'],
                        video_timestamp_end=row['video_timestamp_end'],
                        data=row['data'] or {}
                    )
                    for row in cur.fetchall()
                ]

    def count_hands(self, stream_id: str) -> int:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM hands WHERE stream_id = %s", (stream_id,))
                return cur.fetchone()[0]

    def apply_reconciliation(self, stream_id: str, renumber: Dict[str, int],
                             remove_ids: List[str], hand_count: int) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM streams WHERE id = %s FOR UPDATE", (stream_id,))
                if not cur.fetchone():
                    raise NotFoundError(f"Stream not found: {stream_id}")

                if renumber:
                    cur.executemany("""
                        UPDATE hands SET number = %s, updated_at = now()
                        WHERE id = %s AND stream_id = %s
                    """, [(number, hand_id, stream_id) for hand_id, number in renumber.items()])

                if remove_ids:
                    cur.execute(
                        "DELETE FROM hands WHERE stream_id = %s AND id = ANY(%s)",
                        (stream_id, list(remove_ids))
                    )

                cur.execute(
                    "UPDATE streams SET hand_count = %s, updated_at = now() WHERE id = %s",
                    (hand_count, stream_id)
                )
                conn.commit()

    def reset_stream(self, stream_id: str, delete_hands: bool = True) -> int:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM streams WHERE id = %s FOR UPDATE", (stream_id,))
                if not cur.fetchone():
                    raise NotFoundError(f"Stream not found: {stream_id}")

                deleted = 0
                if delete_hands:
                    cur.execute("DELETE FROM hands WHERE stream_id = %s", (stream_id,))
                    deleted = cur.rowcount

                cur.execute("""
                    UPDATE streams
                    SET pipeline_status = 'pending',
                        pipeline_progress = 0,
                        pipeline_error = NULL,
                        current_job_id = NULL,
                        hand_count = CASE WHEN %s THEN 0 ELSE hand_count END,
                        pipeline_updated_at = now(),
                        updated_at = now()
                    WHERE id = %s
                """, (delete_hands, stream_id))
                conn.commit()
                return deleted

    def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics for monitoring"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT status, COUNT(*) as count
                    FROM analysis_jobs
                    GROUP BY status
                """)
                job_counts = {status.value: 0 for status in JobStatus}
                for status, count in cur.fetchall():
                    job_counts[status] = count

                cur.execute("SELECT COUNT(*) FROM hands")
                hand_total = cur.fetchone()[0]

        return {
            "streams": self.count_streams_by_status(),
            "jobs": job_counts,
            "hands": hand_total,
        }

    def close(self):
        """Close connection pool"""
        if self.lock_pool:
            self.lock_pool.close()
        if self.pool:
            self.pool.close()
            logger.info("Postgres state store connection pools closed")

    @staticmethod
    def _insert_stream(cur, stream: Stream) -> Dict[str, Any]:
        try:
            cur.execute("""
                INSERT INTO streams (id, name, video_locator, pipeline_status, pipeline_progress,
                                     pipeline_error, current_job_id, analysis_attempts, hand_count,
                                     platform, created_at, updated_at, pipeline_updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
            """, (
                stream.id, stream.name, stream.video_locator, stream.pipeline_status.value,
                stream.pipeline_progress, stream.pipeline_error, stream.current_job_id,
                stream.analysis_attempts, stream.hand_count, stream.platform,
                stream.created_at, stream.updated_at, stream.pipeline_updated_at
            ))
        except psycopg.errors.UniqueViolation:
            raise ConflictError(f"Stream already exists: {stream.id}", stream_id=stream.id)
        return cur.fetchone()

    def _update_stream(self, cur, stream_id: str, changes: Dict[str, Any],
                       expect_job_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        unknown = set(changes) - STREAM_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update stream fields: {sorted(unknown)}")

        assignments = []
        params: List[Any] = []

        if "pipeline_status" in changes:
            # Evaluated against the pre-update row
            assignments.append(sql.SQL(
                "pipeline_updated_at = CASE WHEN pipeline_status IS DISTINCT FROM %s "
                "THEN now() ELSE pipeline_updated_at END"
            ))
            params.append(PipelineStatus(changes["pipeline_status"]).value)

        for key, value in changes.items():
            if key == "pipeline_status":
                value = PipelineStatus(value).value
            assignments.append(sql.SQL("{} = %s").format(sql.Identifier(key)))
            params.append(value)

        assignments.append(sql.SQL("updated_at = now()"))

        query = sql.SQL("UPDATE streams SET {} WHERE id = %s").format(sql.SQL(", ").join(assignments))
        params.append(stream_id)

        if expect_job_id is not None:
            query = query + sql.SQL(" AND pipeline_status = 'analyzing' AND current_job_id = %s")
            params.append(expect_job_id)

        cur.execute(query + sql.SQL(" RETURNING *"), params)
        return cur.fetchone()

    @staticmethod
    def _row_to_stream(row: Dict[str, Any]) -> Stream:
        return Stream(
            id=row['id'],
            name=row['name'],
            video_locator=row['video_locator'],
            pipeline_status=PipelineStatus(row['pipeline_status']),
            pipeline_progress=row['pipeline_progress'] or 0,
            pipeline_error=row['pipeline_error'],
            current_job_id=row['current_job_id'],
            analysis_attempts=row['analysis_attempts'] or 0,
            hand_count=row['hand_count'] or 0,
            platform=row['platform'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            pipeline_updated_at=row['pipeline_updated_at']
        )

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> AnalysisJob:
        return AnalysisJob(
            id=row['id'],
            stream_id=row['stream_id'],
            segments=[Segment(start=s['start'], end=s['end']) for s in (row['segments'] or [])],
            status=JobStatus(row['status']),
            progress=row['progress'] or 0,
            error_message=row['error_message'],
            platform=row['platform'],
            created_at=row['created_at'],
            completed_at=row['completed_at']
        )
