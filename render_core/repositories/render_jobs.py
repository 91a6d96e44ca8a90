from __future__ import annotations

import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from render_core.db.postgres import PostgresTxRunner, as_iso, validate_identifier

ACTIVE_STATUSES = ("queued", "running")
TERMINAL_STATUSES = ("rendered", "failed")

_COLUMNS = (
    "job_id",
    "tenant_id",
    "quote_id",
    "status",
    "prompt",
    "image_url",
    "error",
    "created_at",
    "started_at",
    "completed_at",
)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def _new_job_id() -> str:
    return f"rj_{uuid.uuid4().hex}"


def _check_completion(*, status: str, image_url: str | None, error: str | None) -> tuple[str | None, str | None]:
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"complete requires a terminal status, got: {status}")
    if status == "rendered":
        if not image_url:
            raise ValueError("rendered jobs require image_url")
        return image_url, None
    if not error:
        raise ValueError("failed jobs require error")
    return None, error


class InMemoryRenderJobsRepository:
    """Process-local job store; a single lock stands in for row locking."""

    def __init__(self, jobs: dict[str, dict[str, Any]] | None = None) -> None:
        self._lock = threading.RLock()
        self._jobs: dict[str, dict[str, Any]] = {} if jobs is None else jobs
        self._order: dict[str, int] = {}
        self._seq = 0

    def enqueue(self, *, tenant_id: str, quote_id: str, seed_prompt: str) -> dict[str, Any]:
        job = {
            "job_id": _new_job_id(),
            "tenant_id": tenant_id,
            "quote_id": quote_id,
            "status": "queued",
            "prompt": seed_prompt,
            "image_url": None,
            "error": None,
            "created_at": _utcnow_iso(),
            "started_at": None,
            "completed_at": None,
        }
        with self._lock:
            self._seq += 1
            self._order[job["job_id"]] = self._seq
            self._jobs[job["job_id"]] = job
            return dict(job)

    def enqueue_if_absent(self, *, tenant_id: str, quote_id: str, seed_prompt: str) -> tuple[dict[str, Any], bool]:
        with self._lock:
            existing = self.find_active_for_quote(tenant_id=tenant_id, quote_id=quote_id)
            if existing is not None:
                return existing, False
            return self.enqueue(tenant_id=tenant_id, quote_id=quote_id, seed_prompt=seed_prompt), True

    def claim_up_to(self, *, n: int) -> list[dict[str, Any]]:
        if n <= 0:
            return []
        with self._lock:
            queued = [row for row in self._jobs.values() if row["status"] == "queued"]
            queued.sort(key=lambda row: (row["created_at"], self._order.get(row["job_id"], 0)))
            claimed: list[dict[str, Any]] = []
            now = _utcnow_iso()
            for row in queued[:n]:
                row["status"] = "running"
                row["started_at"] = row["started_at"] or now
                claimed.append(dict(row))
            return claimed

    def complete(
        self,
        *,
        job_id: str,
        status: str,
        image_url: str | None = None,
        error: str | None = None,
    ) -> bool:
        image_url, error = _check_completion(status=status, image_url=image_url, error=error)
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row["status"] not in {"running", status}:
                return False
            row["status"] = status
            row["image_url"] = image_url
            row["error"] = error
            row["completed_at"] = row["completed_at"] or _utcnow_iso()
            return True

    def get(self, *, tenant_id: str, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row["tenant_id"] != tenant_id:
                return None
            return dict(row)

    def find_active_for_quote(self, *, tenant_id: str, quote_id: str) -> dict[str, Any] | None:
        return self._newest_for_quote(tenant_id=tenant_id, quote_id=quote_id, statuses=ACTIVE_STATUSES)

    def latest_for_quote(self, *, tenant_id: str, quote_id: str) -> dict[str, Any] | None:
        return self._newest_for_quote(tenant_id=tenant_id, quote_id=quote_id, statuses=None)

    def count_rendered_since(self, *, tenant_id: str, since: datetime) -> int:
        since_iso = since.astimezone(UTC).isoformat(timespec="microseconds")
        with self._lock:
            return sum(
                1
                for row in self._jobs.values()
                if row["tenant_id"] == tenant_id
                and row["status"] == "rendered"
                and row["completed_at"] is not None
                and row["completed_at"] >= since_iso
            )

    def count_by_status(self, *, status: str) -> int:
        with self._lock:
            return sum(1 for row in self._jobs.values() if row["status"] == status)

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._order.clear()
            self._seq = 0

    def _newest_for_quote(
        self,
        *,
        tenant_id: str,
        quote_id: str,
        statuses: tuple[str, ...] | None,
    ) -> dict[str, Any] | None:
        with self._lock:
            rows = [
                row
                for row in self._jobs.values()
                if row["tenant_id"] == tenant_id
                and row["quote_id"] == quote_id
                and (statuses is None or row["status"] in statuses)
            ]
            if not rows:
                return None
            rows.sort(key=lambda row: (row["created_at"], self._order.get(row["job_id"], 0)))
            return dict(rows[-1])


class SqliteRenderJobsRepository:
    """SQLite-backed job store for single-host deployments and local runs.

    ``BEGIN IMMEDIATE`` takes the database write lock before the claim SELECT,
    so concurrent claimers in other threads or processes serialize instead of
    reading the same queued rows.
    """

    def __init__(self, db_path: str | Path, *, busy_timeout_s: float = 30.0) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout_s = busy_timeout_s
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout_s)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS render_jobs (
                    job_id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    quote_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    prompt TEXT,
                    image_url TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_render_jobs_claim
                ON render_jobs(status, created_at)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_render_jobs_quote
                ON render_jobs(tenant_id, quote_id, status)
                """
            )
            conn.commit()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> dict[str, Any]:
        return {name: row[name] for name in _COLUMNS}

    def enqueue(self, *, tenant_id: str, quote_id: str, seed_prompt: str) -> dict[str, Any]:
        job = {
            "job_id": _new_job_id(),
            "tenant_id": tenant_id,
            "quote_id": quote_id,
            "status": "queued",
            "prompt": seed_prompt,
            "image_url": None,
            "error": None,
            "created_at": _utcnow_iso(),
            "started_at": None,
            "completed_at": None,
        }
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO render_jobs(job_id, tenant_id, quote_id, status, prompt, created_at)
                VALUES (?, ?, ?, 'queued', ?, ?)
                """,
                (job["job_id"], tenant_id, quote_id, seed_prompt, job["created_at"]),
            )
            conn.commit()
        return job

    def enqueue_if_absent(self, *, tenant_id: str, quote_id: str, seed_prompt: str) -> tuple[dict[str, Any], bool]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                f"""
                SELECT {", ".join(_COLUMNS)}
                FROM render_jobs
                WHERE tenant_id = ? AND quote_id = ? AND status IN ('queued', 'running')
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (tenant_id, quote_id),
            ).fetchone()
            if row is not None:
                conn.commit()
                return self._row_to_job(row), False
            job_id = _new_job_id()
            created_at = _utcnow_iso()
            conn.execute(
                """
                INSERT INTO render_jobs(job_id, tenant_id, quote_id, status, prompt, created_at)
                VALUES (?, ?, ?, 'queued', ?, ?)
                """,
                (job_id, tenant_id, quote_id, seed_prompt, created_at),
            )
            conn.commit()
        job = {name: None for name in _COLUMNS}
        job.update(
            job_id=job_id,
            tenant_id=tenant_id,
            quote_id=quote_id,
            status="queued",
            prompt=seed_prompt,
            created_at=created_at,
        )
        return job, True

    def claim_up_to(self, *, n: int) -> list[dict[str, Any]]:
        if n <= 0:
            return []
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(
                """
                SELECT job_id
                FROM render_jobs
                WHERE status = 'queued'
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (int(n),),
            ).fetchall()
            job_ids = [str(row["job_id"]) for row in rows]
            if not job_ids:
                conn.commit()
                return []
            now = _utcnow_iso()
            placeholders = ", ".join("?" for _ in job_ids)
            conn.execute(
                f"""
                UPDATE render_jobs
                SET status = 'running', started_at = COALESCE(started_at, ?)
                WHERE status = 'queued' AND job_id IN ({placeholders})
                """,
                (now, *job_ids),
            )
            claimed = conn.execute(
                f"""
                SELECT {", ".join(_COLUMNS)}
                FROM render_jobs
                WHERE job_id IN ({placeholders})
                ORDER BY created_at ASC, rowid ASC
                """,
                tuple(job_ids),
            ).fetchall()
            conn.commit()
        return [self._row_to_job(row) for row in claimed]

    def complete(
        self,
        *,
        job_id: str,
        status: str,
        image_url: str | None = None,
        error: str | None = None,
    ) -> bool:
        image_url, error = _check_completion(status=status, image_url=image_url, error=error)
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE render_jobs
                SET status = ?, image_url = ?, error = ?, completed_at = COALESCE(completed_at, ?)
                WHERE job_id = ? AND status IN ('running', ?)
                """,
                (status, image_url, error, _utcnow_iso(), job_id, status),
            )
            conn.commit()
            return cur.rowcount > 0

    def get(self, *, tenant_id: str, job_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM render_jobs WHERE tenant_id = ? AND job_id = ? LIMIT 1",
                (tenant_id, job_id),
            ).fetchone()
        return None if row is None else self._row_to_job(row)

    def find_active_for_quote(self, *, tenant_id: str, quote_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {", ".join(_COLUMNS)}
                FROM render_jobs
                WHERE tenant_id = ? AND quote_id = ? AND status IN ('queued', 'running')
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (tenant_id, quote_id),
            ).fetchone()
        return None if row is None else self._row_to_job(row)

    def latest_for_quote(self, *, tenant_id: str, quote_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {", ".join(_COLUMNS)}
                FROM render_jobs
                WHERE tenant_id = ? AND quote_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (tenant_id, quote_id),
            ).fetchone()
        return None if row is None else self._row_to_job(row)

    def count_rendered_since(self, *, tenant_id: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n
                FROM render_jobs
                WHERE tenant_id = ? AND status = 'rendered' AND completed_at >= ?
                """,
                (tenant_id, since.astimezone(UTC).isoformat(timespec="microseconds")),
            ).fetchone()
        return int(row["n"])

    def count_by_status(self, *, status: str) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM render_jobs WHERE status = ?", (status,)).fetchone()
        return int(row["n"])

    def reset(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM render_jobs")
            conn.commit()


class PostgresRenderJobsRepository:
    """Render job store on PostgreSQL.

    The claim is one statement: a CTE selects queued ids oldest-first with
    ``FOR UPDATE SKIP LOCKED`` and the outer UPDATE flips them to running.
    Rows another claimer holds are skipped, never waited on.
    """

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "render_jobs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    @staticmethod
    def _row_to_job(row: tuple[Any, ...]) -> dict[str, Any]:
        return {
            "job_id": str(row[0]),
            "tenant_id": str(row[1]),
            "quote_id": str(row[2]),
            "status": row[3],
            "prompt": row[4],
            "image_url": row[5],
            "error": row[6],
            "created_at": as_iso(row[7]),
            "started_at": as_iso(row[8]),
            "completed_at": as_iso(row[9]),
        }

    def _select_columns(self) -> str:
        return "id, tenant_id, quote_log_id, status, prompt, image_url, error, created_at, started_at, completed_at"

    def enqueue(self, *, tenant_id: str, quote_id: str, seed_prompt: str) -> dict[str, Any]:
        job_id = str(uuid.uuid4())
        sql = f"""
            INSERT INTO {self._table_name} (id, tenant_id, quote_log_id, status, prompt, created_at)
            VALUES (%s, %s, %s, 'queued', %s, now())
            RETURNING {self._select_columns()}
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id, tenant_id, quote_id, seed_prompt))
                row = cur.fetchone()
            if row is None:
                return {
                    "job_id": job_id,
                    "tenant_id": tenant_id,
                    "quote_id": quote_id,
                    "status": "queued",
                    "prompt": seed_prompt,
                    "image_url": None,
                    "error": None,
                    "created_at": None,
                    "started_at": None,
                    "completed_at": None,
                }
            return self._row_to_job(row)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def enqueue_if_absent(self, *, tenant_id: str, quote_id: str, seed_prompt: str) -> tuple[dict[str, Any], bool]:
        """Dedupe and insert in one transaction.

        A transaction-scoped advisory lock keyed on the quote serializes
        concurrent gateway calls for the same quote.
        """
        job_id = str(uuid.uuid4())
        lock_sql = "SELECT pg_advisory_xact_lock(hashtext(%s))"
        find_sql = f"""
            SELECT {self._select_columns()}
            FROM {self._table_name}
            WHERE tenant_id = %s AND quote_log_id = %s AND status IN ('queued', 'running')
            ORDER BY created_at DESC
            LIMIT 1
        """
        insert_sql = f"""
            INSERT INTO {self._table_name} (id, tenant_id, quote_log_id, status, prompt, created_at)
            VALUES (%s, %s, %s, 'queued', %s, now())
            RETURNING {self._select_columns()}
        """

        def _op(conn: Any) -> tuple[dict[str, Any], bool]:
            with conn.cursor() as cur:
                cur.execute(lock_sql, (f"render_jobs:{tenant_id}:{quote_id}",))
                cur.execute(find_sql, (tenant_id, quote_id))
                row = cur.fetchone()
                if row is not None:
                    return self._row_to_job(row), False
                cur.execute(insert_sql, (job_id, tenant_id, quote_id, seed_prompt))
                row = cur.fetchone()
            return self._row_to_job(row), True

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def claim_up_to(self, *, n: int) -> list[dict[str, Any]]:
        if n <= 0:
            return []
        sql = f"""
            WITH c AS (
                SELECT id
                FROM {self._table_name}
                WHERE status = 'queued'
                ORDER BY created_at ASC
                FOR UPDATE SKIP LOCKED
                LIMIT %s
            )
            UPDATE {self._table_name}
            SET status = 'running', started_at = COALESCE(started_at, now())
            WHERE id IN (SELECT id FROM c)
            RETURNING {self._select_columns()}
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (int(n),))
                rows = cur.fetchall()
            jobs = [self._row_to_job(row) for row in rows]
            jobs.sort(key=lambda job: job["created_at"] or "")
            return jobs

        return self._tx_runner.run_in_tx(fn=_op)

    def complete(
        self,
        *,
        job_id: str,
        status: str,
        image_url: str | None = None,
        error: str | None = None,
    ) -> bool:
        image_url, error = _check_completion(status=status, image_url=image_url, error=error)
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s, image_url = %s, error = %s, completed_at = COALESCE(completed_at, now())
            WHERE id = %s AND status IN ('running', %s)
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (status, image_url, error, job_id, status))
                return int(cur.rowcount or 0) > 0

        return bool(self._tx_runner.run_in_tx(fn=_op))

    def get(self, *, tenant_id: str, job_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._select_columns()}
            FROM {self._table_name}
            WHERE tenant_id = %s AND id = %s
            LIMIT 1
        """
        return self._fetch_one(tenant_id=tenant_id, sql=sql, params=(tenant_id, job_id))

    def find_active_for_quote(self, *, tenant_id: str, quote_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._select_columns()}
            FROM {self._table_name}
            WHERE tenant_id = %s AND quote_log_id = %s AND status IN ('queued', 'running')
            ORDER BY created_at DESC
            LIMIT 1
        """
        return self._fetch_one(tenant_id=tenant_id, sql=sql, params=(tenant_id, quote_id))

    def latest_for_quote(self, *, tenant_id: str, quote_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._select_columns()}
            FROM {self._table_name}
            WHERE tenant_id = %s AND quote_log_id = %s
            ORDER BY created_at DESC
            LIMIT 1
        """
        return self._fetch_one(tenant_id=tenant_id, sql=sql, params=(tenant_id, quote_id))

    def count_rendered_since(self, *, tenant_id: str, since: datetime) -> int:
        sql = f"""
            SELECT COUNT(*)
            FROM {self._table_name}
            WHERE tenant_id = %s AND status = 'rendered' AND completed_at >= %s
        """

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, since))
                row = cur.fetchone()
            return int(row[0]) if row else 0

        return int(self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op))

    def count_by_status(self, *, status: str) -> int:
        sql = f"SELECT COUNT(*) FROM {self._table_name} WHERE status = %s"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (status,))
                row = cur.fetchone()
            return int(row[0]) if row else 0

        return int(self._tx_runner.run_in_tx(fn=_op))

    def _fetch_one(self, *, tenant_id: str, sql: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return None if row is None else self._row_to_job(row)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
