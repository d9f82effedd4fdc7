"""
Job orchestrator: consume queued CrawlJobs and run each one end to end.

Per job:
  claim → gate.acquire → RetryPolicy.run(UserCrawl) → store.save
        → gate.release → queue.ack

  RetriesExhausted  → logged, job marked failed, nothing saved
  store.save raises → job handed back (nack) for redelivery, or marked
                      failed once it has been delivered max_deliveries times

While a job runs its claim is refreshed (queue.touch) after every sequence
item, so a long crawl is not reclaimed as stale by another consumer.

The gate slot is taken before the browser session exists and given back
only after RetryPolicy has closed it, so at most `concurrency` sessions
are ever alive.  N consumer threads (N = gate capacity) pull from the
queue; each thread owns its own sessions.
"""

import logging
import threading
import time

from mapcrawl.errors import RetriesExhausted
from mapcrawl.gate import ConcurrencyGate
from mapcrawl.navigator import LeaderboardCrawl, UserCrawl
from mapcrawl.pacing import build_pacer
from mapcrawl.retry import RetryPolicy
from mapcrawl.session import session_factory as default_session_factory
from mapcrawl.store import UserResult
from mapcrawl.utils import get_worker_id

logger = logging.getLogger("mapcrawl")

IDLE_POLL_INTERVAL = 2   # seconds a consumer sleeps when the queue is empty

# Outcome labels returned by process()
OUTCOME_SAVED  = "saved"
OUTCOME_FAILED = "failed"
OUTCOME_NACKED = "nacked"


class JobOrchestrator:
    """
    Wires queue, gate, retry policy, navigator and store together.

    Args:
        config: Loaded config dict.
        queue: JobQueue (claim / ack / nack / fail).
        store: ResultStore (save).
        gate: ConcurrencyGate; built from config["concurrency"] if omitted.
        session_factory: callable(label=...) -> BrowserSession.
        retry_policy: RetryPolicy; built from config if omitted.
        pacer: Pacer; built from config["jitter"] if omitted.
        sleep: Sleep function handed to the navigator (detail-wait retries).
    """

    def __init__(
        self,
        config: dict,
        queue,
        store,
        *,
        gate: ConcurrencyGate | None = None,
        session_factory=None,
        retry_policy: RetryPolicy | None = None,
        pacer=None,
        sleep=time.sleep,
    ):
        self.config = config
        self.queue = queue
        self.store = store
        self.gate = gate or ConcurrencyGate(config["concurrency"])
        self.session_factory = session_factory or default_session_factory(config)
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)
        self.pacer = pacer if pacer is not None else build_pacer(config)
        self._sleep = sleep
        self._threads: list[threading.Thread] = []
        self.stats = {OUTCOME_SAVED: 0, OUTCOME_FAILED: 0, OUTCOME_NACKED: 0}
        self._stats_lock = threading.Lock()

    # ── One job ─────────────────────────────────────────────────────────

    def crawl_user(self, username: str, heartbeat=None) -> list:
        """
        Run the per-user workflow; returns the record list.

        *heartbeat* (no arguments) is called after every sequence item.
        """
        def _attempt(session):
            # Fresh navigator (and so a fresh dedup set) for every attempt
            crawl = UserCrawl(
                session.page, username, self.config,
                pacer=self.pacer, sleep=self._sleep, on_item=heartbeat,
            )
            return crawl.run().records

        return self.retry_policy.run(_attempt, self.session_factory, label=username)

    def process(self, job) -> str:
        """Execute one delivered job. Returns one of the OUTCOME_* labels."""
        started = time.time()
        if job.delivery > 1:
            logger.info(
                f"Job {job.job_id[:8]} ({job.username}) redelivered "
                f"(delivery #{job.delivery}) — running as an independent attempt"
            )

        with self.gate.slot():
            try:
                records = self.crawl_user(job.username, heartbeat=lambda: self.queue.touch(job))
            except RetriesExhausted as e:
                logger.error(
                    f"Failed to crawl user {job.username} after {e.attempts} attempt(s): "
                    f"{e.last_error}"
                )
                self.queue.fail(job, str(e.last_error))
                return self._count(OUTCOME_FAILED)

            try:
                self.store.save(UserResult(username=job.username, records=records))
            except Exception as e:
                if job.delivery >= self.config["max_deliveries"]:
                    logger.error(
                        f"Could not save results for {job.username} on delivery "
                        f"#{job.delivery}: {e} — giving up"
                    )
                    self.queue.fail(job, f"save failed: {e}")
                    return self._count(OUTCOME_FAILED)
                logger.error(f"Could not save results for {job.username}: {e} — re-queuing")
                self.queue.nack(job)
                return self._count(OUTCOME_NACKED)

        self.queue.ack(job)
        logger.info(
            f"Successfully crawled user {job.username} — {len(records)} image(s) "
            f"in {time.time() - started:.1f}s"
        )
        return self._count(OUTCOME_SAVED)

    def _count(self, outcome: str) -> str:
        with self._stats_lock:
            self.stats[outcome] += 1
        return outcome

    # ── Seeding ─────────────────────────────────────────────────────────

    def seed_usernames(self) -> list:
        """Read the leaderboard (under the gate) and enqueue one job per username."""
        def _attempt(session):
            return LeaderboardCrawl(session.page, self.config, pacer=self.pacer).run()

        with self.gate.slot():
            usernames = self.retry_policy.run(
                _attempt, self.session_factory, label="leaderboard"
            )
        jobs = self.queue.enqueue_many(usernames)
        logger.info(f"Seeded {len(jobs)} job(s) from the leaderboard")
        return jobs

    # ── Consumers ───────────────────────────────────────────────────────

    def run_once(self, worker: str | None = None) -> int:
        """Drain the queue on the calling thread. Returns jobs processed."""
        worker = worker or f"{get_worker_id()}-main"
        processed = 0
        while True:
            job = self.queue.claim(worker)
            if job is None:
                return processed
            self.process(job)
            processed += 1

    def _consume(self, worker: str, stop_event: threading.Event) -> None:
        logger.info(f"Consumer {worker} started")
        while not stop_event.is_set():
            job = self.queue.claim(worker)
            if job is None:
                stop_event.wait(IDLE_POLL_INTERVAL)
                continue
            try:
                self.process(job)
            except Exception as e:
                # Job stays held; the queue redelivers it after stale_timeout
                logger.exception(f"Consumer {worker} crashed on job {job.job_id[:8]}: {e}")
        logger.info(f"Consumer {worker} stopped")

    def start(self, stop_event: threading.Event, consumers: int | None = None) -> list:
        """Start *consumers* daemon threads (default: gate capacity)."""
        count = consumers or self.gate.capacity
        base = get_worker_id()
        for i in range(count):
            name = f"consumer-{i + 1}"
            t = threading.Thread(
                target=self._consume,
                args=(f"{base}-{name}", stop_event),
                daemon=True,
                name=name,
            )
            t.start()
            self._threads.append(t)
        logger.info(f"{count} consumer(s) running, gate capacity {self.gate.capacity}")
        return self._threads

    def join(self, timeout: float | None = None) -> None:
        for t in self._threads:
            t.join(timeout)
