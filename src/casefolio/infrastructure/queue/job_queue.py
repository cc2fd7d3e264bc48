from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Iterable

from casefolio.core.errors import ValidationError
from casefolio.core.ids import job_id_for_document
from casefolio.core.time import now_utc, to_utc_iso, utc_iso_after, utc_iso_before
from casefolio.domain.models.job import (
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_DELAYED,
    JOB_FAILED,
    JOB_STALLED,
    JOB_STATES,
    JOB_WAITING,
    OUTSTANDING_JOB_STATES,
    Job,
    JobPayload,
    JobStatus,
)
from casefolio.infrastructure.db.sqlite import get_connection

logger = logging.getLogger(__name__)


class JobQueue:
    """Durable priority queue of document jobs stored in the project database.

    Lower ``priority`` values are dequeued first; jobs of equal priority are
    served in enqueue order. Several worker threads or processes may share one
    queue: every state transition happens inside an immediate write
    transaction.
    """

    _DEFAULT_COMPLETED_RETENTION_SECONDS = 24 * 3600
    _DEFAULT_FAILED_RETENTION_SECONDS = 7 * 24 * 3600
    _STALLED_LIMIT_REASON = "job stalled more than allowable limit"

    def __init__(
        self,
        *,
        db_path: Path,
        queue_name: str = "default",
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
        default_priority: int = 5,
        completed_keep: int = 100,
        failed_keep: int = 500,
        max_stalled: int = 1,
    ) -> None:
        self.db_path = db_path
        self.queue_name = queue_name
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.default_priority = int(default_priority)
        self.completed_keep = max(1, int(completed_keep))
        self.failed_keep = max(1, int(failed_keep))
        self.max_stalled = max(0, int(max_stalled))
        self._wakeup = threading.Event()
        self._closed = threading.Event()
        self._ensure_queue_row()

    # -- producer side -------------------------------------------------

    def enqueue(
        self,
        payload: JobPayload,
        *,
        priority: int | None = None,
        job_id: str | None = None,
    ) -> JobStatus:
        resolved_id = job_id or job_id_for_document(payload.document_id)
        if priority is None:
            priority = payload.priority if payload.priority is not None else self.default_priority
        resolved_priority = int(priority)
        now = to_utc_iso(now_utc())
        payload_json = json.dumps(payload.to_dict(), ensure_ascii=True, sort_keys=True)

        with get_connection(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            existing = conn.execute(
                "SELECT state FROM jobs WHERE id = ? AND queue_name = ?",
                (resolved_id, self.queue_name),
            ).fetchone()
            if existing is not None and existing["state"] in OUTSTANDING_JOB_STATES:
                conn.rollback()
                logger.debug("Job %s already outstanding (%s); not enqueued twice", resolved_id, existing["state"])
                status = self.get_status(resolved_id)
                if status is None:
                    raise ValidationError(f"Job vanished while enqueueing: {resolved_id}")
                return status

            next_seq = self._next_enqueue_seq(conn)
            if existing is None:
                conn.execute(
                    """
                    INSERT INTO jobs (
                        id,
                        queue_name,
                        payload_json,
                        priority,
                        enqueue_seq,
                        state,
                        attempts,
                        max_attempts,
                        backoff_seconds,
                        progress,
                        failure_reason,
                        worker_id,
                        stalled_count,
                        enqueued_at,
                        available_at,
                        started_at,
                        finished_at,
                        heartbeat_at,
                        updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, 0, NULL, NULL, 0, ?, ?, NULL, NULL, NULL, ?)
                    """,
                    (
                        resolved_id,
                        self.queue_name,
                        payload_json,
                        resolved_priority,
                        next_seq,
                        JOB_WAITING,
                        self.max_attempts,
                        self.backoff_seconds,
                        now,
                        now,
                        now,
                    ),
                )
            else:
                conn.execute(
                    """
                    UPDATE jobs
                    SET payload_json = ?,
                        priority = ?,
                        enqueue_seq = ?,
                        state = ?,
                        attempts = 0,
                        max_attempts = ?,
                        backoff_seconds = ?,
                        progress = 0,
                        failure_reason = NULL,
                        worker_id = NULL,
                        stalled_count = 0,
                        enqueued_at = ?,
                        available_at = ?,
                        started_at = NULL,
                        finished_at = NULL,
                        heartbeat_at = NULL,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        payload_json,
                        resolved_priority,
                        next_seq,
                        JOB_WAITING,
                        self.max_attempts,
                        self.backoff_seconds,
                        now,
                        now,
                        now,
                        resolved_id,
                    ),
                )
            conn.commit()

        logger.info("Job %s enqueued - document: %s", resolved_id, payload.display_name)
        self._wakeup.set()
        status = self.get_status(resolved_id)
        if status is None:
            raise ValidationError(f"Job not found after enqueue: {resolved_id}")
        return status

    # -- consumer side -------------------------------------------------

    def claim_next(self, worker_id: str) -> Job | None:
        if self._closed.is_set():
            return None
        now = to_utc_iso(now_utc())
        with get_connection(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            if self._paused(conn):
                conn.rollback()
                return None
            row = conn.execute(
                """
                SELECT id
                FROM jobs
                WHERE queue_name = ?
                  AND (
                    state IN (?, ?)
                    OR (state = ? AND available_at <= ?)
                  )
                ORDER BY priority ASC, enqueue_seq ASC
                LIMIT 1
                """,
                (self.queue_name, JOB_WAITING, JOB_STALLED, JOB_DELAYED, now),
            ).fetchone()
            if row is None:
                conn.rollback()
                return None
            conn.execute(
                """
                UPDATE jobs
                SET state = ?,
                    attempts = attempts + 1,
                    worker_id = ?,
                    started_at = ?,
                    finished_at = NULL,
                    heartbeat_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (JOB_ACTIVE, worker_id, now, now, now, row["id"]),
            )
            conn.commit()
            claimed = conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],)).fetchone()
        job = self._to_job(claimed)
        logger.info(
            "Job %s started - document: %s (attempt %s/%s)",
            job.id,
            job.payload.display_name,
            job.attempts,
            job.max_attempts,
        )
        return job

    def wait_for_work(self, timeout: float) -> None:
        self._wakeup.wait(timeout=timeout)
        self._wakeup.clear()

    def wake(self) -> None:
        self._wakeup.set()

    def update_progress(self, job_id: str, progress: int) -> None:
        safe_progress = max(0, min(100, int(progress)))
        now = to_utc_iso(now_utc())
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE jobs
                SET progress = ?, heartbeat_at = ?, updated_at = ?
                WHERE id = ? AND state = ?
                """,
                (safe_progress, now, now, job_id, JOB_ACTIVE),
            )
            conn.commit()

    def heartbeat(self, job_ids: Iterable[str]) -> None:
        ids = [job_id for job_id in job_ids if job_id]
        if not ids:
            return
        now = to_utc_iso(now_utc())
        with get_connection(self.db_path) as conn:
            conn.executemany(
                "UPDATE jobs SET heartbeat_at = ? WHERE id = ? AND state = ?",
                [(now, job_id, JOB_ACTIVE) for job_id in ids],
            )
            conn.commit()

    def complete(self, job_id: str, *, worker_id: str | None = None) -> bool:
        now = to_utc_iso(now_utc())
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET state = ?,
                    progress = 100,
                    failure_reason = NULL,
                    finished_at = ?,
                    heartbeat_at = NULL,
                    updated_at = ?
                WHERE id = ? AND state = ?{self._owner_clause(worker_id)}
                """,
                (JOB_COMPLETED, now, now, job_id, JOB_ACTIVE, *self._owner_params(worker_id)),
            )
            updated = int(cursor.rowcount or 0) > 0
            if updated:
                self._trim_state(conn, JOB_COMPLETED, self.completed_keep)
            conn.commit()
        if updated:
            logger.info("Job %s completed", job_id)
        else:
            logger.warning("Job %s completion ignored; job is no longer held by this worker", job_id)
        return updated

    def fail(self, job_id: str, reason: str, *, worker_id: str | None = None) -> str | None:
        """Record a failed attempt; returns the resulting queue state."""
        now_dt = now_utc()
        now = to_utc_iso(now_dt)
        with get_connection(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                f"""
                SELECT attempts, max_attempts, backoff_seconds
                FROM jobs
                WHERE id = ? AND state = ?{self._owner_clause(worker_id)}
                """,
                (job_id, JOB_ACTIVE, *self._owner_params(worker_id)),
            ).fetchone()
            if row is None:
                conn.rollback()
                logger.warning("Job %s failure ignored; job is no longer held by this worker", job_id)
                return None
            attempts = int(row["attempts"] or 0)
            max_attempts = int(row["max_attempts"] or self.max_attempts)
            if attempts < max_attempts:
                delay = self.backoff_delay(attempts, base_seconds=float(row["backoff_seconds"] or 0.0))
                conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?,
                        failure_reason = ?,
                        worker_id = NULL,
                        available_at = ?,
                        heartbeat_at = NULL,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (JOB_DELAYED, reason, utc_iso_after(delay, base=now_dt), now, job_id),
                )
                new_state = JOB_DELAYED
            else:
                conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?,
                        failure_reason = ?,
                        finished_at = ?,
                        heartbeat_at = NULL,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (JOB_FAILED, reason, now, now, job_id),
                )
                self._trim_state(conn, JOB_FAILED, self.failed_keep)
                new_state = JOB_FAILED
            conn.commit()

        if new_state == JOB_DELAYED:
            logger.warning(
                "Job %s failed (attempt %s/%s), retrying in %.1fs: %s",
                job_id,
                attempts,
                max_attempts,
                delay,
                reason,
            )
            self._wakeup.set()
        else:
            logger.error("Job %s failed after %s attempts: %s", job_id, attempts, reason)
        return new_state

    @staticmethod
    def backoff_delay(attempts: int, *, base_seconds: float) -> float:
        """Exponential backoff: base, 2*base, 4*base, ... for attempts 1, 2, 3, ..."""
        return float(base_seconds) * (2 ** max(0, int(attempts) - 1))

    def requeue_stalled(self, stall_timeout_seconds: float) -> list[str]:
        cutoff = utc_iso_before(stall_timeout_seconds)
        now = to_utc_iso(now_utc())
        stalled: list[str] = []
        exhausted: list[str] = []
        with get_connection(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(
                """
                SELECT id, stalled_count
                FROM jobs
                WHERE queue_name = ?
                  AND state = ?
                  AND COALESCE(heartbeat_at, started_at, updated_at) < ?
                """,
                (self.queue_name, JOB_ACTIVE, cutoff),
            ).fetchall()
            for row in rows:
                job_id = str(row["id"])
                if int(row["stalled_count"] or 0) >= self.max_stalled:
                    conn.execute(
                        """
                        UPDATE jobs
                        SET state = ?,
                            failure_reason = ?,
                            stalled_count = stalled_count + 1,
                            finished_at = ?,
                            heartbeat_at = NULL,
                            updated_at = ?
                        WHERE id = ?
                        """,
                        (JOB_FAILED, self._STALLED_LIMIT_REASON, now, now, job_id),
                    )
                    exhausted.append(job_id)
                    continue
                conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?,
                        attempts = MAX(attempts - 1, 0),
                        stalled_count = stalled_count + 1,
                        worker_id = NULL,
                        heartbeat_at = NULL,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (JOB_STALLED, now, job_id),
                )
                stalled.append(job_id)
            conn.commit()

        for job_id in stalled:
            logger.warning("Job %s stalled; queued for redelivery", job_id)
        for job_id in exhausted:
            logger.error("Job %s stalled too many times; moved to failed", job_id)
        if stalled:
            self._wakeup.set()
        return stalled

    def close(self) -> None:
        self._closed.set()
        self._wakeup.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    # -- inspection ----------------------------------------------------

    def get_job(self, job_id: str) -> Job | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id = ? AND queue_name = ?",
                (job_id, self.queue_name),
            ).fetchone()
        return self._to_job(row) if row else None

    def get_status(self, job_id: str) -> JobStatus | None:
        job = self.get_job(job_id)
        return self._to_status(job) if job else None

    def list_jobs(self, *, state: str | None = None, limit: int = 50) -> list[JobStatus]:
        safe_limit = max(1, min(int(limit), 50000))
        query = "SELECT * FROM jobs WHERE queue_name = ?"
        params: list[Any] = [self.queue_name]
        if state is not None:
            if state not in JOB_STATES:
                raise ValidationError(f"Unknown job state: {state}")
            query += " AND state = ?"
            params.append(state)
        query += " ORDER BY updated_at DESC, id DESC LIMIT ?"
        params.append(safe_limit)
        with get_connection(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._to_status(self._to_job(row)) for row in rows]

    def counts(self) -> dict[str, int]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT state, COUNT(*) AS total
                FROM jobs
                WHERE queue_name = ?
                GROUP BY state
                """,
                (self.queue_name,),
            ).fetchall()
        out = {state: 0 for state in JOB_STATES}
        for row in rows:
            out[str(row["state"])] = int(row["total"] or 0)
        out["total"] = sum(out[state] for state in JOB_STATES)
        return out

    # -- administration ------------------------------------------------

    def pause(self) -> None:
        self._set_paused(True)
        logger.info("Queue %s paused", self.queue_name)

    def resume(self) -> None:
        self._set_paused(False)
        self._wakeup.set()
        logger.info("Queue %s resumed", self.queue_name)

    def is_paused(self) -> bool:
        with get_connection(self.db_path) as conn:
            return self._paused(conn)

    def cleanup(
        self,
        completed_retention_seconds: float | None = None,
        failed_retention_seconds: float | None = None,
    ) -> dict[str, int]:
        completed_window = (
            self._DEFAULT_COMPLETED_RETENTION_SECONDS
            if completed_retention_seconds is None
            else completed_retention_seconds
        )
        failed_window = (
            self._DEFAULT_FAILED_RETENTION_SECONDS if failed_retention_seconds is None else failed_retention_seconds
        )
        removed: dict[str, int] = {}
        with get_connection(self.db_path) as conn:
            for state, window in ((JOB_COMPLETED, completed_window), (JOB_FAILED, failed_window)):
                cursor = conn.execute(
                    """
                    DELETE FROM jobs
                    WHERE queue_name = ? AND state = ? AND COALESCE(finished_at, updated_at) <= ?
                    """,
                    (self.queue_name, state, utc_iso_before(window)),
                )
                removed[state] = int(cursor.rowcount or 0)
            conn.commit()
        logger.info(
            "Queue %s cleaned: %s completed, %s failed removed",
            self.queue_name,
            removed[JOB_COMPLETED],
            removed[JOB_FAILED],
        )
        return removed

    def retry_all_failed(self) -> int:
        now = to_utc_iso(now_utc())
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id FROM jobs WHERE queue_name = ? AND state = ?",
                (self.queue_name, JOB_FAILED),
            ).fetchall()
            for row in rows:
                logger.info("Retrying failed job: %s", row["id"])
            cursor = conn.execute(
                """
                UPDATE jobs
                SET state = ?,
                    attempts = 0,
                    stalled_count = 0,
                    worker_id = NULL,
                    available_at = ?,
                    finished_at = NULL,
                    heartbeat_at = NULL,
                    updated_at = ?
                WHERE queue_name = ? AND state = ?
                """,
                (JOB_WAITING, now, now, self.queue_name, JOB_FAILED),
            )
            conn.commit()
            retried = int(cursor.rowcount or 0)
        logger.info("Queue %s: %s failed jobs retried", self.queue_name, retried)
        if retried:
            self._wakeup.set()
        return retried

    def remove_jobs(self, states: Iterable[str] | None = None, *, job_ids: Iterable[str] | None = None) -> int:
        """Delete jobs that are not currently executing."""
        requested = set(states) if states is not None else {JOB_WAITING, JOB_DELAYED, JOB_STALLED, JOB_FAILED}
        unknown = requested - set(JOB_STATES)
        if unknown:
            raise ValidationError(f"Unknown job state(s): {', '.join(sorted(unknown))}")
        requested.discard(JOB_ACTIVE)
        if not requested:
            return 0
        state_list = sorted(requested)
        query = f"DELETE FROM jobs WHERE queue_name = ? AND state IN ({', '.join('?' for _ in state_list)})"
        params: list[Any] = [self.queue_name, *state_list]
        if job_ids is not None:
            ids = list(job_ids)
            if not ids:
                return 0
            query += f" AND id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(query, params)
            conn.commit()
            removed = int(cursor.rowcount or 0)
        logger.info("Queue %s: %s jobs removed", self.queue_name, removed)
        return removed

    # -- internals -----------------------------------------------------

    def _ensure_queue_row(self) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO queue_settings (queue_name, paused, updated_at)
                VALUES (?, 0, ?)
                """,
                (self.queue_name, to_utc_iso(now_utc())),
            )
            conn.commit()

    def _set_paused(self, paused: bool) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                "UPDATE queue_settings SET paused = ?, updated_at = ? WHERE queue_name = ?",
                (1 if paused else 0, to_utc_iso(now_utc()), self.queue_name),
            )
            conn.commit()

    def _paused(self, conn) -> bool:
        row = conn.execute(
            "SELECT paused FROM queue_settings WHERE queue_name = ?",
            (self.queue_name,),
        ).fetchone()
        return bool(row and int(row["paused"] or 0))

    def _next_enqueue_seq(self, conn) -> int:
        row = conn.execute(
            "SELECT COALESCE(MAX(enqueue_seq), 0) + 1 AS next_seq FROM jobs WHERE queue_name = ?",
            (self.queue_name,),
        ).fetchone()
        return int(row["next_seq"] or 1)

    def _trim_state(self, conn, state: str, keep: int) -> None:
        conn.execute(
            """
            DELETE FROM jobs
            WHERE queue_name = ?
              AND state = ?
              AND id NOT IN (
                SELECT id FROM jobs
                WHERE queue_name = ? AND state = ?
                ORDER BY finished_at DESC, enqueue_seq DESC
                LIMIT ?
              )
            """,
            (self.queue_name, state, self.queue_name, state, keep),
        )

    @staticmethod
    def _owner_clause(worker_id: str | None) -> str:
        return " AND worker_id = ?" if worker_id is not None else ""

    @staticmethod
    def _owner_params(worker_id: str | None) -> tuple[str, ...]:
        return (worker_id,) if worker_id is not None else ()

    @staticmethod
    def _to_job(row) -> Job:
        payload = JobPayload.from_dict(json.loads(row["payload_json"]))
        return Job(
            id=row["id"],
            payload=payload,
            priority=int(row["priority"]),
            state=row["state"],
            attempts=int(row["attempts"] or 0),
            max_attempts=int(row["max_attempts"] or 0),
            progress=int(row["progress"] or 0),
            failure_reason=row["failure_reason"],
            worker_id=row["worker_id"],
            stalled_count=int(row["stalled_count"] or 0),
            enqueued_at=row["enqueued_at"],
            available_at=row["available_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            heartbeat_at=row["heartbeat_at"],
        )

    @staticmethod
    def _to_status(job: Job) -> JobStatus:
        return JobStatus(
            id=job.id,
            queue_state=job.state,
            progress=job.progress,
            payload=job.payload,
            failure_reason=job.failure_reason,
            attempts=job.attempts,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )
