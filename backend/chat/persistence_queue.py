from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from chat.errors import PersistenceError, QueueUnavailableError, RateLimitExceededError
from chat.event_store import EventLog
from chat.events import MaterializedMessage
from chat.materializer import write_message
from chat.runtime.rate_limit import ConversationRateLimiter, RateLimitStatus
from meta import get_conn, new_id

logger = logging.getLogger(__name__)

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_RUNNING = "running"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"
JOB_STATUS_DEGRADED = "degraded"


@dataclass(frozen=True)
class PersistenceJob:
    id: str
    message: MaterializedMessage

    @property
    def conversation_id(self) -> str:
        return self.message.conversation_id

    @property
    def event_id(self) -> str:
        return self.message.event_id


def _message_from_json(raw: str) -> MaterializedMessage:
    data = json.loads(raw)
    return MaterializedMessage(**data)


class PersistenceQueue:
    """Worker pool that materializes read-model rows from logged events.

    Every job is recorded in ``persistence_jobs`` before it is handed to a
    worker, so jobs survive a restart (``start`` re-queues anything left
    queued or running). A job that exhausts its retries gets one direct write
    through ``direct_writer``; if that lands the job is recorded as
    ``degraded``, otherwise it stays ``failed`` with both causes until someone
    re-drives it.
    """

    def __init__(
        self,
        *,
        event_log: EventLog,
        rate_limiter: ConversationRateLimiter,
        concurrency: int = 10,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        writer: Callable[[MaterializedMessage], None] = write_message,
        direct_writer: Callable[[MaterializedMessage], None] = write_message,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._event_log = event_log
        self._rate_limiter = rate_limiter
        self.concurrency = max(1, int(concurrency))
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_seconds = backoff_base_seconds
        self._writer = writer
        self._direct_writer = direct_writer
        self._sleep = sleep

        self._queue: asyncio.Queue[PersistenceJob] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._accepting = False
        self._start_lock = asyncio.Lock()
        self._failed: dict[str, PersistenceJob] = {}
        self._completed_count = 0
        self._degraded_count = 0

    @property
    def accepting(self) -> bool:
        return self._accepting

    async def start(self) -> None:
        async with self._start_lock:
            if self._accepting:
                return
            self._queue = asyncio.Queue()
            self._workers = [
                asyncio.create_task(self._worker_loop(index))
                for index in range(self.concurrency)
            ]
            self._accepting = True

            recovered = self._recover_pending_jobs()
            for job in recovered:
                self._queue.put_nowait(job)
            logger.info(
                "Persistence queue started (workers=%d, recovered=%d)",
                self.concurrency,
                len(recovered),
            )

    async def shutdown(self, *, drain: bool = True, timeout: float | None = 10.0) -> None:
        async with self._start_lock:
            if self._queue is None:
                return
            self._accepting = False
            queue = self._queue

            if drain:
                try:
                    await asyncio.wait_for(queue.join(), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Persistence queue shutdown timed out with %d jobs pending",
                        queue.qsize(),
                    )

            workers = list(self._workers)
            self._workers.clear()
            for worker in workers:
                worker.cancel()
            for worker in workers:
                try:
                    await worker
                except asyncio.CancelledError:
                    pass
            self._queue = None
            logger.info("Persistence queue stopped")

    async def enqueue(self, message: MaterializedMessage) -> str:
        """Record and schedule one materialization job; returns the job id.

        Raises ``QueueUnavailableError`` when the queue is not running or its
        ledger cannot be written, and ``RateLimitExceededError`` once the
        conversation has used up its window. Neither is retried here.
        """
        if not self._accepting or self._queue is None:
            raise QueueUnavailableError("persistence queue is not running")

        within_limit, count = await self._rate_limiter.hit(message.conversation_id)
        if not within_limit:
            raise RateLimitExceededError(
                message.conversation_id, count, self._rate_limiter.max_jobs
            )

        job = PersistenceJob(id=new_id("job"), message=message)
        try:
            with get_conn() as conn:
                conn.execute(
                    """
                    INSERT INTO persistence_jobs
                    (id, conversation_id, event_id, job_json, status)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.conversation_id,
                        job.event_id,
                        json.dumps(message.to_dict(), ensure_ascii=True, default=str),
                        JOB_STATUS_QUEUED,
                    ),
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise QueueUnavailableError(f"persistence job ledger unavailable: {exc}") from exc

        self._queue.put_nowait(job)
        logger.debug(
            "Queued persistence job %s (conversation=%s, type=%s, seq=%d)",
            job.id,
            job.conversation_id,
            message.message_type,
            message.sequence_number,
        )
        return job.id

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def rate_limit_status(self, conversation_id: str) -> RateLimitStatus:
        return await self._rate_limiter.status(conversation_id)

    def failed_jobs(self) -> list[dict[str, Any]]:
        with get_conn() as conn:
            rows = conn.execute(
                """
                SELECT id, conversation_id, event_id, attempts, error, created_at, finished_at
                FROM persistence_jobs
                WHERE status = ?
                ORDER BY datetime(created_at) ASC, id ASC
                """,
                (JOB_STATUS_FAILED,),
            ).fetchall()
        return [dict(row) for row in rows]

    async def retry_failed(self, job_id: str) -> bool:
        if not self._accepting or self._queue is None:
            raise QueueUnavailableError("persistence queue is not running")

        job = self._failed.pop(job_id, None)
        with get_conn() as conn:
            row = conn.execute(
                "SELECT job_json, status FROM persistence_jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
            if row is None or row["status"] != JOB_STATUS_FAILED:
                return False
            conn.execute(
                """
                UPDATE persistence_jobs
                SET status = ?, attempts = 0, error = NULL, finished_at = NULL
                WHERE id = ?
                """,
                (JOB_STATUS_QUEUED, job_id),
            )
            conn.commit()

        if job is None:
            job = PersistenceJob(id=job_id, message=_message_from_json(row["job_json"]))
        self._queue.put_nowait(job)
        logger.info("Re-queued failed persistence job %s", job_id)
        return True

    def stats(self) -> dict[str, Any]:
        return {
            "accepting": self._accepting,
            "workers": len(self._workers),
            "pending": self._queue.qsize() if self._queue is not None else 0,
            "completed": self._completed_count,
            "failed": len(self._failed),
            "degraded": self._degraded_count,
        }

    # ---- workers -------------------------------------------------------------

    async def _worker_loop(self, index: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            job = await queue.get()
            try:
                await self._process(job)
            except Exception:  # pragma: no cover
                logger.exception("Persistence worker %d crashed on job %s", index, job.id)
            finally:
                queue.task_done()

    async def _process(self, job: PersistenceJob) -> None:
        for attempt in range(1, self.max_attempts + 1):
            self._mark(job.id, JOB_STATUS_RUNNING, attempts=attempt)
            try:
                self._writer(job.message)
                self._event_log.mark_processed(job.event_id)
            except Exception as exc:
                if attempt < self.max_attempts:
                    delay = self.backoff_base_seconds * (2 ** (attempt - 1))
                    logger.warning(
                        "Persistence job %s failed (attempt %d/%d), retrying in %.2fs: %s",
                        job.id,
                        attempt,
                        self.max_attempts,
                        delay,
                        exc,
                    )
                    await self._sleep(delay)
                    continue

                logger.error(
                    "Persistence job %s failed after %d attempts (conversation=%s, event=%s): %s",
                    job.id,
                    attempt,
                    job.conversation_id,
                    job.event_id,
                    exc,
                )
                self._write_directly(job, exc, attempts=attempt)
                return

            self._completed_count += 1
            self._mark(job.id, JOB_STATUS_COMPLETED, attempts=attempt)
            return

    def _write_directly(
        self,
        job: PersistenceJob,
        queue_error: Exception,
        *,
        attempts: int,
    ) -> None:
        try:
            self._direct_writer(job.message)
            self._event_log.mark_processed(job.event_id)
        except Exception as fallback_error:
            error = PersistenceError(
                f"persistence job {job.id} failed: {queue_error}; "
                f"direct write failed: {fallback_error}",
                queue_error=queue_error,
                fallback_error=fallback_error,
            )
            self._failed[job.id] = job
            self._mark(job.id, JOB_STATUS_FAILED, attempts=attempts, error=str(error))
            logger.error(
                "Direct write for persistence job %s also failed (conversation=%s): %s",
                job.id,
                job.conversation_id,
                error,
            )
            return

        self._degraded_count += 1
        self._mark(
            job.id,
            JOB_STATUS_DEGRADED,
            attempts=attempts,
            error=f"queue write failed: {queue_error}",
        )
        logger.warning(
            "Persistence job %s written directly after %d failed attempts (conversation=%s)",
            job.id,
            attempts,
            job.conversation_id,
        )

    def _mark(
        self,
        job_id: str,
        status: str,
        *,
        attempts: int,
        error: str | None = None,
    ) -> None:
        finished = status in {JOB_STATUS_COMPLETED, JOB_STATUS_FAILED, JOB_STATUS_DEGRADED}
        try:
            with get_conn() as conn:
                conn.execute(
                    """
                    UPDATE persistence_jobs
                    SET
                        status = ?,
                        attempts = ?,
                        error = ?,
                        started_at = COALESCE(started_at, CURRENT_TIMESTAMP),
                        finished_at = CASE WHEN ? THEN CURRENT_TIMESTAMP ELSE NULL END
                    WHERE id = ?
                    """,
                    (status, attempts, (error or "")[:4000] or None, finished, job_id),
                )
                conn.commit()
        except sqlite3.Error as exc:
            logger.warning("Failed to update persistence job %s ledger: %s", job_id, exc)

    def _recover_pending_jobs(self) -> list[PersistenceJob]:
        with get_conn() as conn:
            conn.execute(
                """
                UPDATE persistence_jobs
                SET status = ?, started_at = NULL
                WHERE status = ?
                """,
                (JOB_STATUS_QUEUED, JOB_STATUS_RUNNING),
            )
            rows = conn.execute(
                """
                SELECT id, job_json
                FROM persistence_jobs
                WHERE status = ?
                ORDER BY datetime(created_at) ASC, id ASC
                """,
                (JOB_STATUS_QUEUED,),
            ).fetchall()
            conn.commit()

        jobs: list[PersistenceJob] = []
        for row in rows:
            try:
                jobs.append(
                    PersistenceJob(id=row["id"], message=_message_from_json(row["job_json"]))
                )
            except (TypeError, ValueError) as exc:
                logger.error("Skipping unreadable persistence job %s: %s", row["id"], exc)
        return jobs
