"""Tests for corpus discovery and profile heuristics."""
import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from conftest import BASE_TIME, make_repo, make_commits, copy_commits, distinct_messages
from config import Config
from database import get_repository_by_full_name, upsert_repository, update_scan_status
from discovery.popular_repos import (
    discover_popular_repos,
    discover_trending_repos,
    search_similar_names,
    similar_name_keywords,
    submit_new_repos,
)
from discovery.profile_heuristics import compute_profile_stats, score_profile, scan_suspicious_profile
from discovery.worker import run_discovery, run_continuous_discovery, find_scams
from scanner.commit_indexer import CommitIndexer


@pytest.fixture
def queue():
    queue = MagicMock()
    queue.add_scan_job.return_value = True
    return queue


class TestSubmitNewRepos:
    def test_skips_completed_and_seen(self, queue):
        upsert_repository(make_repo('alice/done'))
        update_scan_status('alice/done', 'completed')
        repos = [make_repo('alice/done'), make_repo('bob/new'), make_repo('bob/new')]

        submitted = submit_new_repos(repos, 10, set(), queue=queue)

        assert submitted == ['bob/new']
        queue.add_scan_job.assert_called_once_with('bob', 'new', 10)

    def test_indexes_directly_without_queue(self, fake_client):
        fake_client.add_repo(make_repo('bob/new'), make_commits(distinct_messages(3)))
        submitted = submit_new_repos([make_repo('bob/new'), make_repo('bob/gone')], 10, set(),
                                     indexer=CommitIndexer(fake_client))
        assert submitted == ['bob/new']
        assert get_repository_by_full_name('bob/new')['scan_status'] == 'completed'


class TestDiscoverySources:
    def test_popular_queries_each_language(self, fake_client, queue):
        fake_client.search_results['language:python stars:>=500'] = [make_repo('psf/requests')]
        fake_client.search_results['language:go stars:>=500'] = [make_repo('golang/go')]

        submitted = discover_popular_repos(min_stars=500, languages=['python', 'go'],
                                           client=fake_client, queue=queue)

        assert submitted == ['psf/requests', 'golang/go']
        queue.add_scan_job.assert_any_call('psf', 'requests', Config.POPULAR_SCAN_PRIORITY)

    def test_trending_uses_creation_date(self, fake_client, queue):
        fake_client.search_results['created:>2024-06-01'] = [make_repo('new/hotness')]
        submitted = discover_trending_repos(created_after='2024-06-01', client=fake_client, queue=queue)
        assert submitted == ['new/hotness']
        queue.add_scan_job.assert_called_once_with('new', 'hotness', Config.TRENDING_SCAN_PRIORITY)

    def test_similar_name_keywords(self):
        assert similar_name_keywords('awesome-chatgpt-prompts') == ['awesome', 'chatgpt', 'prompts']
        assert similar_name_keywords('30-seconds-of-code') == ['seconds', 'code']
        assert similar_name_keywords('a-b') == []

    def test_search_similar_names(self, fake_client, queue):
        fake_client.search_results['awesome chatgpt prompts'] = [make_repo('copycat/awesome-prompts')]
        assert search_similar_names('awesome-chatgpt-prompts', client=fake_client, queue=queue) == [
            'copycat/awesome-prompts'
        ]


class TestProfileHeuristics:
    @pytest.mark.parametrize('recent,count,age,stars,expected', [
        (25, 60, 100, 0.0, 80),
        (12, 35, 300, 5.0, 40),
        (6, 10, 1000, 0.0, 10),
        (0, 5, 1000, 0.0, 0),
    ])
    def test_score_profile(self, recent, count, age, stars, expected):
        assert score_profile(count, age, recent, stars) == expected

    def test_compute_profile_stats(self):
        now = BASE_TIME + timedelta(days=200)
        repos = [make_repo(f'mallory/copy{i}', created_at=now - timedelta(days=2)) for i in range(25)]
        repos += [make_repo(f'mallory/old{i}', created_at=BASE_TIME) for i in range(30)]

        stats = compute_profile_stats('mallory', repos, now=now)

        assert stats.repo_count == 55
        assert stats.repos_created_recently == 25
        assert stats.account_age_days == 200
        # 30 burst + 20 young account + 20 unstarred
        assert stats.suspicious_score == 70
        assert stats.to_dict()['reposCreatedRecently'] == 25

    def test_no_repos(self):
        assert compute_profile_stats('ghost', []) is None

    def test_suspicious_profile_queues_repos(self, fake_client, queue):
        now = BASE_TIME + timedelta(days=100)
        repos = [make_repo(f'mallory/copy{i}', created_at=now - timedelta(days=1)) for i in range(22)]
        fake_client.search_results['user:mallory'] = repos

        stats = scan_suspicious_profile('mallory', client=fake_client, queue=queue, now=now)

        assert stats.suspicious_score >= 30
        assert queue.add_scan_job.call_count == 22
        queue.add_scan_job.assert_any_call('mallory', 'copy0', Config.PROFILE_SCAN_PRIORITY)

    def test_quiet_profile_not_queued(self, fake_client, queue):
        fake_client.search_results['user:alice'] = [make_repo('alice/tool', stars=40)]
        stats = scan_suspicious_profile('alice', client=fake_client, queue=queue,
                                        now=BASE_TIME + timedelta(days=1000))
        assert stats.suspicious_score == 0
        queue.add_scan_job.assert_not_called()


class TestDiscoveryWorker:
    def test_run_discovery_summary(self, fake_client, queue):
        matcher = MagicMock()
        matcher.find_matches_for_all_repos.return_value = 2
        fake_client.search_results['user:alice'] = [make_repo('alice/tool')]

        summary = run_discovery(discover_popular=False, discover_trending=False,
                                suspicious_profiles=['alice'], client=fake_client,
                                matcher=matcher, queue=queue)

        assert summary['matchesCompared'] == 2
        assert summary['popular'] == 0
        assert summary['profiles'][0]['username'] == 'alice'

    def test_continuous_discovery_survives_failed_pass(self, fake_client):
        stop_event = threading.Event()
        passes = []

        def one_pass(**kwargs):
            passes.append(kwargs)
            if len(passes) == 1:
                raise RuntimeError('search API outage')
            stop_event.set()
            return {}

        with patch('discovery.worker.run_discovery', side_effect=one_pass):
            run_continuous_discovery(stop_event, interval_minutes=0.0001, client=fake_client)

        assert len(passes) == 2
        assert passes[0]['client'] is fake_client

    def test_continuous_discovery_not_started_when_stopped(self):
        stop_event = threading.Event()
        stop_event.set()
        with patch('discovery.worker.run_discovery') as one_pass:
            run_continuous_discovery(stop_event, interval_minutes=1)
        one_pass.assert_not_called()

    def test_find_scams_reports_high_confidence(self, fake_client):
        commits = make_commits(distinct_messages(30))
        fake_client.add_repo(make_repo('trekhleb/javascript-algorithms'), commits)
        fake_client.add_repo(
            make_repo('mallory/javascript-algorithms',
                      created_at=BASE_TIME + timedelta(days=300)),
            copy_commits(commits),
        )
        fake_client.search_results['javascript algorithms'] = [
            fake_client.repos['trekhleb/javascript-algorithms'],
            fake_client.repos['mallory/javascript-algorithms'],
        ]

        matches = find_scams(['javascript-algorithms'], client=fake_client)

        assert len(matches) == 1
        assert matches[0]['confidence_score'] >= Config.SUSPICION_THRESHOLD
