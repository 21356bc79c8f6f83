"""
Durable scan job queue.

Jobs live in the scan_jobs table keyed by owner/repo, so a repository is
never queued twice while a job for it is still waiting, running or delayed.
A single daemon worker thread drains the queue: the RateGovernor's pacing
is process-wide, and parallel workers would only contend for it.

Failed jobs are retried with exponential backoff
(QUEUE_BACKOFF_SECONDS * 2**(attempt-1)) up to QUEUE_MAX_ATTEMPTS, then
reported as failed.
"""
import sqlite3
import threading
import time
from typing import Callable, Optional

from config import Config
from database import (
    enqueue_scan_job,
    claim_next_scan_job,
    complete_scan_job,
    fail_scan_job,
    get_scan_job,
    get_scan_job_counts,
    requeue_active_scan_jobs,
)
from scanner.repo_scanner import RepoScanner
from utils import parse_github_url


class ScanQueue:
    """Priority job queue for single-repository scans, with one worker."""

    def __init__(self, scanner: Optional[RepoScanner] = None,
                 clock: Callable[[], float] = time.time):
        self.scanner = scanner or RepoScanner()
        self._clock = clock
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    # =========================================================================
    # PRODUCERS
    # =========================================================================

    def add_scan_job(self, owner: str, repo: str, priority: int = 0) -> bool:
        """
        Queue a scan of owner/repo. Higher priority runs first.

        Returns:
            True if queued, False if a live job for the repository exists.

        Raises:
            ValueError: If owner or repo is empty.
        """
        owner = (owner or '').strip()
        repo = (repo or '').strip()
        if not owner or not repo:
            raise ValueError("owner and repo are required")

        queued = enqueue_scan_job(owner, repo, priority=priority,
                                  max_attempts=Config.QUEUE_MAX_ATTEMPTS)
        if queued:
            print(f"[QUEUE] Queued {owner}/{repo} (priority {priority})")
        else:
            print(f"[QUEUE] {owner}/{repo} already queued, skipping")
        return queued

    def add_scan_job_from_url(self, repo_url: str, priority: int = 0) -> bool:
        """Queue a scan from a GitHub URL. Raises ValueError for bad URLs."""
        owner, repo = parse_github_url(repo_url)
        return self.add_scan_job(owner, repo, priority)

    def get_queue_stats(self) -> dict:
        """Job counts: waiting, active, delayed, completed, failed."""
        return get_scan_job_counts()

    # =========================================================================
    # WORKER
    # =========================================================================

    def process_next(self, now: Optional[float] = None) -> Optional[dict]:
        """
        Run the next due job, if any.

        Returns:
            The job row after processing, or None when nothing was due.
        """
        now = self._clock() if now is None else now
        job = claim_next_scan_job(now)
        if job is None:
            return None

        job_key = job['job_key']
        print(f"[QUEUE] Processing scan job: {job_key} (attempt {job['attempts']}/{job['max_attempts']})")

        try:
            result = self.scanner.scan_repository(job['owner'], job['repo'])
        except Exception as e:
            if job['attempts'] < job['max_attempts']:
                delay = Config.QUEUE_BACKOFF_SECONDS * (2 ** (job['attempts'] - 1))
                fail_scan_job(job['id'], str(e), retry_at=now + delay)
                print(f"[QUEUE] Job {job_key} failed ({e}), retrying in {delay:.0f}s")
            else:
                fail_scan_job(job['id'], str(e))
                print(f"[QUEUE] Job {job_key} failed permanently: {e}")
            return get_scan_job(job_key)

        complete_scan_job(job['id'], result.to_dict())
        print(f"[QUEUE] Job {job_key} completed: {len(result.matches)} matches")
        return get_scan_job(job_key)

    def _run(self):
        print("[QUEUE] Worker started")
        while not self._stop_event.is_set():
            try:
                processed = self.process_next()
            except sqlite3.Error as e:
                print(f"[QUEUE] Database error in worker: {e}")
                processed = None

            if processed is None:
                self._stop_event.wait(Config.QUEUE_POLL_SECONDS)
        print("[QUEUE] Worker stopped")

    def start(self):
        """Start the single worker thread. Jobs a dead worker left active are requeued."""
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            requeued = requeue_active_scan_jobs()
            if requeued:
                print(f"[QUEUE] Requeued {requeued} interrupted jobs")
            self._stop_event.clear()
            self._worker = threading.Thread(target=self._run, name='scan-queue-worker', daemon=True)
            self._worker.start()

    def stop(self, timeout: Optional[float] = None):
        """Ask the worker to stop after its current job and wait for it."""
        with self._lock:
            self._stop_event.set()
            worker = self._worker
            self._worker = None
        if worker is not None:
            worker.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()
