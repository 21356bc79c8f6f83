"""Tests for the durable scan job queue."""
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from config import Config
from database import enqueue_scan_job, claim_next_scan_job, get_scan_job
from scan_queue import ScanQueue
from scanner.models import RepoScanResult, CandidateMatch


NOW = 1_700_000_000.0


@pytest.fixture
def scanner():
    scanner = MagicMock()
    scanner.scan_repository.side_effect = lambda owner, repo: RepoScanResult(full_name=f'{owner}/{repo}')
    return scanner


@pytest.fixture
def queue(scanner):
    return ScanQueue(scanner=scanner, clock=lambda: NOW)


class TestAddScanJob:
    def test_duplicate_live_job_collapses(self, queue):
        assert queue.add_scan_job('alice', 'tool') is True
        assert queue.add_scan_job('alice', 'tool', priority=100) is False
        assert queue.get_queue_stats()['waiting'] == 1

    def test_blank_input_rejected(self, queue):
        with pytest.raises(ValueError):
            queue.add_scan_job('  ', 'tool')

    def test_input_trimmed(self, queue):
        queue.add_scan_job(' alice ', ' tool ')
        assert get_scan_job('alice/tool') is not None

    def test_from_url(self, queue):
        assert queue.add_scan_job_from_url('https://github.com/alice/tool.git') is True
        assert get_scan_job('alice/tool')['owner'] == 'alice'

    def test_from_bad_url(self, queue):
        with pytest.raises(ValueError):
            queue.add_scan_job_from_url('https://example.com/alice/tool')

    def test_finished_job_rearmed(self, queue):
        queue.add_scan_job('alice', 'tool')
        queue.process_next()
        assert get_scan_job('alice/tool')['status'] == 'completed'

        assert queue.add_scan_job('alice', 'tool') is True
        job = get_scan_job('alice/tool')
        assert job['status'] == 'waiting'
        assert job['attempts'] == 0


class TestProcessNext:
    def test_empty_queue(self, queue):
        assert queue.process_next() is None

    def test_highest_priority_first(self, queue, scanner):
        queue.add_scan_job('alice', 'low', priority=10)
        queue.add_scan_job('alice', 'high', priority=100)
        queue.add_scan_job('alice', 'mid', priority=30)

        order = [queue.process_next()['repo'] for _ in range(3)]
        assert order == ['high', 'mid', 'low']

    def test_same_priority_oldest_first(self, queue):
        queue.add_scan_job('alice', 'first')
        queue.add_scan_job('alice', 'second')
        assert queue.process_next()['repo'] == 'first'

    def test_result_stored(self, queue, scanner):
        scanner.scan_repository.side_effect = None
        scanner.scan_repository.return_value = RepoScanResult(
            full_name='alice/tool',
            matches=[CandidateMatch('mallory/tool', 95, 'VERY_HIGH', 60, match_id=1)],
        )
        queue.add_scan_job('alice', 'tool')

        job = queue.process_next()
        assert job['status'] == 'completed'
        assert '"matchedRepo": "mallory/tool"' in job['result']

    def test_failure_retried_with_backoff(self, queue, scanner):
        scanner.scan_repository.side_effect = requests.ConnectionError('reset')
        queue.add_scan_job('alice', 'tool')

        job = queue.process_next(now=NOW)
        assert job['status'] == 'delayed'
        assert job['next_run_at'] == NOW + Config.QUEUE_BACKOFF_SECONDS
        assert 'reset' in job['last_error']

        # Not due until the backoff elapses
        assert queue.process_next(now=NOW + 1) is None

        job = queue.process_next(now=NOW + Config.QUEUE_BACKOFF_SECONDS)
        assert job['status'] == 'delayed'
        assert job['next_run_at'] == NOW + 3 * Config.QUEUE_BACKOFF_SECONDS

    def test_failed_after_max_attempts(self, queue, scanner):
        scanner.scan_repository.side_effect = requests.ConnectionError('reset')
        queue.add_scan_job('alice', 'tool')

        now = NOW
        job = None
        for _ in range(Config.QUEUE_MAX_ATTEMPTS):
            job = queue.process_next(now=now)
            now += 1000

        assert job['status'] == 'failed'
        assert job['attempts'] == Config.QUEUE_MAX_ATTEMPTS
        assert queue.process_next(now=now) is None
        assert queue.get_queue_stats()['failed'] == 1


class TestWorker:
    def test_start_requeues_interrupted_jobs(self, queue):
        enqueue_scan_job('alice', 'tool')
        claim_next_scan_job(NOW)
        assert get_scan_job('alice/tool')['status'] == 'active'

        with patch('scan_queue.threading.Thread') as thread:
            queue.start()

        assert get_scan_job('alice/tool')['status'] == 'waiting'
        thread.assert_called_once_with(target=queue._run, name='scan-queue-worker', daemon=True)
        thread.return_value.start.assert_called_once()

    def test_worker_drains_queue(self, queue, scanner):
        queue.add_scan_job('alice', 'tool')
        queue.start()
        try:
            for _ in range(200):
                if get_scan_job('alice/tool')['status'] == 'completed':
                    break
                time.sleep(0.05)
        finally:
            queue.stop(timeout=5)

        assert get_scan_job('alice/tool')['status'] == 'completed'
        assert not queue.is_running
