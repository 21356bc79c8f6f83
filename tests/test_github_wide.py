"""Tests for GitHub-wide candidate discovery and multi-repo scans."""
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import BASE_TIME, make_repo, make_commits, copy_commits, distinct_messages
from database import get_repository_by_full_name, get_match_between, count_matches
from scanner.github_wide import GitHubWideMatcher, name_search_terms
from utils import CancelToken, ScanCancelled, ScanTimeout


@pytest.fixture
def copied_project(fake_client):
    """alice/tool and a copy, mallory/tool, created 500 days later with 15 of its 20 commits."""
    original_commits = make_commits(distinct_messages(20))
    fake_client.add_repo(make_repo('alice/tool'), original_commits)
    fake_client.add_repo(
        make_repo('mallory/tool', created_at=BASE_TIME + timedelta(days=500)),
        copy_commits(original_commits[:15]),
    )
    fake_client.search_results['tool'] = [
        fake_client.repos['alice/tool'],
        fake_client.repos['mallory/tool'],
    ]
    return fake_client


class TestNameSearchTerms:
    def test_full_name_two_words_first_word(self):
        assert name_search_terms('awesome-tool-kit') == ['awesome tool kit', 'awesome tool', 'awesome']

    def test_single_word_deduplicated(self):
        assert name_search_terms('tool') == ['tool']

    def test_short_words_dropped(self):
        assert name_search_terms('a_b') == []


class TestFindCandidates:
    def test_excludes_owner_and_lists_name_matches_first(self, fake_client):
        fake_client.search_results['tool'] = [
            make_repo('alice/tool'), make_repo('bob/tool'), make_repo('carol/tool'),
        ]
        matcher = GitHubWideMatcher(client=fake_client)
        by_commits = [make_repo('dave/fork'), make_repo('bob/tool')]

        with patch.object(fake_client, 'find_repos_with_matching_commits', return_value=by_commits):
            candidates = matcher.find_candidates('Alice', 'tool', make_commits(distinct_messages(3)))

        assert [c.full_name for c in candidates] == ['bob/tool', 'carol/tool', 'dave/fork']

    def test_capped_at_max_candidates(self, fake_client):
        fake_client.search_results['tool'] = [make_repo(f'user{i}/tool') for i in range(15)]
        matcher = GitHubWideMatcher(client=fake_client)
        candidates = matcher.find_candidates('alice', 'tool', make_commits(distinct_messages(3)))
        assert len(candidates) == 10


class TestFindMatchesAcrossGithub:
    def test_confirms_copy(self, copied_project):
        matcher = GitHubWideMatcher(client=copied_project)
        result = matcher.find_matches_across_github('alice', 'tool')

        assert result.full_name == 'alice/tool'
        assert result.candidates_checked == 1
        assert [m.full_name for m in result.matches] == ['mallory/tool']
        assert result.matches[0].confidence_score >= 50
        assert result.matches[0].matching_commits == 15

        seed = get_repository_by_full_name('alice/tool')
        copy = get_repository_by_full_name('mallory/tool')
        assert seed['scan_status'] == 'completed'
        assert get_match_between(seed['id'], copy['id']) is not None

    def test_candidate_below_min_matches_not_indexed(self, fake_client):
        original_commits = make_commits(distinct_messages(20))
        fake_client.add_repo(make_repo('alice/tool'), original_commits)
        fake_client.add_repo(make_repo('bob/tool'), copy_commits(original_commits[:2]))
        fake_client.search_results['tool'] = [fake_client.repos['bob/tool']]

        result = GitHubWideMatcher(client=fake_client).find_matches_across_github('alice', 'tool')

        assert result.candidates_checked == 1
        assert result.matches == []
        assert get_repository_by_full_name('bob/tool') is None

    def test_slow_check_is_skipped(self, copied_project):
        matcher = GitHubWideMatcher(client=copied_project)
        with patch.object(copied_project, 'check_repo_for_matching_commits',
                          side_effect=ScanTimeout('check mallory/tool timed out')):
            result = matcher.find_matches_across_github('alice', 'tool')

        assert result.candidates_skipped == 1
        assert result.candidates_checked == 0
        assert count_matches() == 0

    def test_parent_cancellation_propagates(self, copied_project):
        token = CancelToken()
        matcher = GitHubWideMatcher(client=copied_project)

        def cancel_then_fail(*args, **kwargs):
            token.cancel()
            raise ScanCancelled('check cancelled')

        with patch.object(copied_project, 'check_repo_for_matching_commits', side_effect=cancel_then_fail):
            with pytest.raises(ScanCancelled):
                matcher.find_matches_across_github('alice', 'tool', token=token)

    def test_seed_without_commits(self, fake_client):
        fake_client.add_repo(make_repo('alice/empty'), [])
        result = GitHubWideMatcher(client=fake_client).find_matches_across_github('alice', 'empty')
        assert result.matches == []
        assert result.candidates_checked == 0

    def test_indexed_seed_not_refetched(self, copied_project):
        matcher = GitHubWideMatcher(client=copied_project)
        matcher.indexer.index_repository('alice', 'tool')
        copied_project.commit_requests.clear()

        matcher.find_matches_across_github('alice', 'tool')
        assert 'alice/tool' not in copied_project.commit_requests


class TestScanRepositories:
    def test_every_repo_completed_even_on_error(self, copied_project):
        copied_project.add_repo(make_repo('alice/broken'), make_commits(distinct_messages(3), prefix='x'))
        copied_project.failing_repos.add('alice/broken')
        done = []

        results = GitHubWideMatcher(client=copied_project).scan_repositories(
            [copied_project.repos['alice/tool'], copied_project.repos['alice/broken']],
            on_repo_done=done.append,
        )

        assert len(results) == 2
        assert results[0].matches
        assert results[1].error
        assert len(done) == 2
        assert get_repository_by_full_name('alice/tool')['scan_status'] == 'completed'
        assert get_repository_by_full_name('alice/broken')['scan_status'] == 'completed'

    def test_profile_scan_enumerates_by_update(self, copied_project):
        copied_project.search_results['user:alice'] = [copied_project.repos['alice/tool']]
        result = GitHubWideMatcher(client=copied_project).scan_profile_across_github('alice')

        assert result.username == 'alice'
        assert result.total_matches == 1
        assert [repo.full_name for repo in result.suspicious_repos] == ['alice/tool']
