"""
Job queue — at-least-once delivery of CrawlJobs across worker threads and
processes, backed by a JSON file + filelock.

The queue file has this structure:
{
  "<job_id>": {
    "username":    "...",
    "status":      "pending" | "held" | "done" | "failed",
    "enqueued_at": <unix timestamp>,
    "holder":      "<worker>",          (held only)
    "claimed_at":  <unix timestamp>,    (held only)
    "deliveries":  <int>,
    "updated_at":  <unix timestamp>,
    "error":       "..."                (failed only)
  },
  ...
}

Redelivery: a "held" job older than stale_timeout seconds is handed out
again by claim().  This recovers cleanly from worker crashes, and is also
why consumers must treat every delivery as an independent execution.

Usage:
    queue = JobQueue("data/jobs.json")
    queue.enqueue("some_user")
    job = queue.claim(worker="worker-1")
    ... process ...
    queue.ack(job)
"""

import json
import logging
import os
import time
import uuid
from dataclasses import dataclass

from filelock import FileLock

logger = logging.getLogger("mapcrawl")

# ── Status constants ──────────────────────────────────────────────────────
STATUS_PENDING = "pending"
STATUS_HELD    = "held"
STATUS_DONE    = "done"
STATUS_FAILED  = "failed"


@dataclass(frozen=True)
class CrawlJob:
    job_id: str
    username: str
    enqueued_at: float
    delivery: int = 1
    holder: str = ""

    @property
    def target_identifier(self) -> str:
        return self.username


class JobQueue:
    """
    Thread/process-safe job queue via a shared JSON file + filelock.

    Acknowledged jobs are removed.  Failed jobs stay in the file (status
    "failed") until requeue_failed() is called.
    """

    def __init__(self, filepath: str, stale_timeout: int = 1800):
        """
        Args:
            filepath: Path to the queue JSON file.
            stale_timeout: Seconds before a "held" job is considered
                           abandoned and redelivered. Default: 1800 (30 min).
        """
        self._filepath = filepath
        self._lockpath = filepath + ".lock"
        self._stale_timeout = stale_timeout
        directory = os.path.dirname(filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._lock = FileLock(self._lockpath, timeout=30)

    # ── Producer API ──────────────────────────────────────────────────────

    def enqueue(self, username: str) -> CrawlJob:
        """Add one job for *username*."""
        return self.enqueue_many([username])[0]

    def enqueue_many(self, usernames) -> list:
        """Add one job per username under a single lock acquisition."""
        jobs = []
        with self._lock:
            data = self._read()
            for username in usernames:
                username = (username or "").strip()
                if not username:
                    continue
                now = time.time()
                job = CrawlJob(job_id=uuid.uuid4().hex, username=username, enqueued_at=now)
                data[job.job_id] = {
                    "username":    username,
                    "status":      STATUS_PENDING,
                    "enqueued_at": now,
                    "deliveries":  0,
                    "updated_at":  now,
                }
                jobs.append(job)
            self._write(data)
        if jobs:
            logger.info(f"Enqueued {len(jobs)} job(s)")
        return jobs

    def cancel(self, job_id: str) -> bool:
        """Remove a job that has not been claimed yet. Returns True if removed."""
        with self._lock:
            data = self._read()
            entry = data.get(job_id)
            if entry is None or entry.get("status") != STATUS_PENDING:
                return False
            del data[job_id]
            self._write(data)
        logger.info(f"Cancelled job {job_id[:8]} ({entry.get('username')})")
        return True

    def clear(self) -> int:
        """Drop every pending job. In-flight (held) jobs are left alone."""
        with self._lock:
            data = self._read()
            pending = [jid for jid, e in data.items() if e.get("status") == STATUS_PENDING]
            for jid in pending:
                del data[jid]
            self._write(data)
        logger.info(f"Queue cleared — {len(pending)} pending job(s) removed")
        return len(pending)

    def requeue_failed(self) -> int:
        """Move every failed job back to pending."""
        with self._lock:
            data = self._read()
            count = 0
            for entry in data.values():
                if entry.get("status") == STATUS_FAILED:
                    entry["status"] = STATUS_PENDING
                    entry["updated_at"] = time.time()
                    entry.pop("error", None)
                    count += 1
            self._write(data)
        return count

    # ── Consumer API ──────────────────────────────────────────────────────

    def claim(self, worker: str) -> CrawlJob | None:
        """
        Atomically take the oldest deliverable job.

        Pending jobs come first; otherwise a stale held job is reclaimed
        (redelivered).  Returns None when nothing is deliverable.
        """
        with self._lock:
            data = self._read()
            now = time.time()

            candidates = [
                (entry.get("enqueued_at", 0), jid)
                for jid, entry in data.items()
                if entry.get("status") == STATUS_PENDING
            ]
            if not candidates:
                for jid, entry in data.items():
                    if entry.get("status") != STATUS_HELD:
                        continue
                    age = now - entry.get("updated_at", 0)
                    if age >= self._stale_timeout:
                        logger.info(
                            f"  [queue] Reclaiming stale job {jid[:8]} "
                            f"(held by '{entry.get('holder')}' for {age:.0f}s)"
                        )
                        candidates.append((entry.get("enqueued_at", 0), jid))
            if not candidates:
                return None

            # ties (same batch) keep file order
            _, job_id = min(candidates, key=lambda c: c[0])
            entry = data[job_id]
            entry["status"] = STATUS_HELD
            entry["holder"] = worker
            entry["claimed_at"] = now
            entry["updated_at"] = now
            entry["deliveries"] = entry.get("deliveries", 0) + 1
            self._write(data)

        logger.debug(f"  [queue] {worker} claimed {job_id[:8]} ({entry['username']})")
        return CrawlJob(
            job_id=job_id,
            username=entry["username"],
            enqueued_at=entry.get("enqueued_at", now),
            delivery=entry["deliveries"],
            holder=worker,
        )

    def ack(self, job: CrawlJob) -> bool:
        """Job finished successfully — remove it."""
        with self._lock:
            data = self._read()
            if job.job_id not in data:
                logger.warning(f"  [queue] ack for unknown job {job.job_id[:8]} (cleared meanwhile?)")
                return False
            del data[job.job_id]
            self._write(data)
        logger.debug(f"  [queue] Done: {job.job_id[:8]}")
        return True

    def touch(self, job: CrawlJob) -> bool:
        """
        Refresh a held job's claim so it is not reclaimed as stale.

        Returns False if the job is gone or now belongs to another worker.
        """
        with self._lock:
            data = self._read()
            entry = data.get(job.job_id)
            if (
                entry is None
                or entry.get("status") != STATUS_HELD
                or entry.get("holder") != job.holder
            ):
                logger.warning(f"  [queue] touch for job {job.job_id[:8]} it no longer holds")
                return False
            entry["updated_at"] = time.time()
            self._write(data)
        return True

    def nack(self, job: CrawlJob) -> bool:
        """Give a held job back for immediate redelivery."""
        return self._set_status(job, STATUS_PENDING)

    def fail(self, job: CrawlJob, error: str = "") -> bool:
        """Mark a job as permanently failed."""
        return self._set_status(job, STATUS_FAILED, error=error[:200])

    # ── Introspection ─────────────────────────────────────────────────────

    def get(self, job_id: str) -> dict | None:
        """Return the full entry for a job, or None if not tracked."""
        with self._lock:
            data = self._read()
        return data.get(job_id)

    def summary(self) -> dict:
        """Return a {status: count} summary of all tracked jobs."""
        with self._lock:
            data = self._read()
        summary: dict[str, int] = {
            STATUS_PENDING: 0, STATUS_HELD: 0, STATUS_FAILED: 0,
        }
        for entry in data.values():
            s = entry.get("status", "unknown")
            summary[s] = summary.get(s, 0) + 1
        return summary

    def __len__(self) -> int:
        """Number of jobs not yet acknowledged or failed."""
        s = self.summary()
        return s[STATUS_PENDING] + s[STATUS_HELD]

    # ── Private helpers ───────────────────────────────────────────────────

    def _set_status(self, job: CrawlJob, status: str, **extra) -> bool:
        with self._lock:
            data = self._read()
            entry = data.get(job.job_id)
            if entry is None:
                logger.warning(
                    f"  [queue] {status} for unknown job {job.job_id[:8]} (cleared meanwhile?)"
                )
                return False
            entry.update(extra)
            entry["status"] = status
            entry["updated_at"] = time.time()
            entry.pop("holder", None)
            self._write(data)
        logger.debug(f"  [queue] {status}: {job.job_id[:8]}")
        return True

    def _read(self) -> dict:
        """Read and return the current queue data. Caller holds lock."""
        if not os.path.exists(self._filepath):
            return {}
        try:
            with open(self._filepath, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            # Keep the damaged file so its jobs can be recovered by hand
            backup = f"{self._filepath}.corrupt-{int(time.time())}"
            os.replace(self._filepath, backup)
            logger.error(f"Queue file corrupt ({e}) — moved to {backup}, starting fresh")
            return {}

    def _write(self, data: dict) -> None:
        """Write queue data atomically. Caller holds lock."""
        tmp = self._filepath + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self._filepath)
