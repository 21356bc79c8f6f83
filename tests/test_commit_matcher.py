"""Tests for the in-corpus commit matcher and its side effects."""
from datetime import timedelta

import pytest

from conftest import BASE_TIME, make_repo, make_commits, copy_commits, distinct_messages
from database import (
    upsert_repository,
    replace_commits,
    update_first_commit_date,
    get_repository,
    get_match_between,
    get_matches_for_repo,
    get_blacklist_entry,
    count_matches,
)
from scanner.commit_matcher import CommitMatcher


def _index(full_name, commits, created_at=BASE_TIME, repo_id=0):
    record = upsert_repository(make_repo(full_name, created_at=created_at, repo_id=repo_id))
    replace_commits(record['id'], commits)
    if commits:
        update_first_commit_date(full_name, min(c.timestamp for c in commits))
    return get_repository(record['id'])


@pytest.fixture
def theft_pair():
    """An original with 100 commits and a copy made 500 days later reusing 60 of them."""
    original_commits = make_commits(distinct_messages(100))
    copied = copy_commits(original_commits[:60]) + make_commits(
        distinct_messages(40, 'rebrand'), start=BASE_TIME + timedelta(days=600),
        author='mallory', prefix='own',
    )
    # Index the copy first so it gets the lower id
    thief = _index('mallory/tool', copied, created_at=BASE_TIME + timedelta(days=500))
    original = _index('alice/tool', original_commits)
    return original, thief


class TestCompareRepositories:
    def test_theft_detected_regardless_of_id_order(self, theft_pair):
        original, thief = theft_pair
        statistics = CommitMatcher().compare_repositories(original['id'], thief['id'])

        assert statistics.exact_matches == 60
        assert statistics.commits_predate_repo2 is True
        assert statistics.confidence_score == 95
        assert statistics.confidence_level.value == 'VERY_HIGH'

    def test_match_stored_lower_id_first(self, theft_pair):
        original, thief = theft_pair
        CommitMatcher().compare_repositories(original['id'], thief['id'])

        match = get_match_between(original['id'], thief['id'])
        assert match['repo1_id'] == thief['id']
        assert match['repo2_id'] == original['id']
        assert match['status'] == 'pending'
        assert match['evidence']['repo2']['fullName'] == 'mallory/tool'
        assert len(match['evidence']['sampleMatchingCommits']) == 5

    def test_suspicion_scores_updated(self, theft_pair):
        original, thief = theft_pair
        CommitMatcher().compare_repositories(original['id'], thief['id'])
        assert get_repository(original['id'])['suspicion_score'] == 95
        assert get_repository(thief['id'])['suspicion_score'] == 95

    def test_later_owner_blacklisted(self, theft_pair):
        original, thief = theft_pair
        CommitMatcher().compare_repositories(thief['id'], original['id'])

        entry = get_blacklist_entry('mallory')
        assert entry is not None
        assert entry['total_stolen_repos'] == 1
        assert entry['highest_confidence_score'] == 95
        assert entry['account_status'] == 'unknown'
        assert get_blacklist_entry('alice') is None

    def test_comparison_is_idempotent(self, theft_pair):
        original, thief = theft_pair
        matcher = CommitMatcher()
        matcher.compare_repositories(original['id'], thief['id'])
        matcher.compare_repositories(thief['id'], original['id'])
        assert count_matches() == 1

    def test_no_match_not_stored(self):
        a = _index('alice/one', make_commits(distinct_messages(5)))
        b = _index('bob/two', make_commits(distinct_messages(5, 'unrelated'), prefix='b'))
        assert CommitMatcher().compare_repositories(a['id'], b['id']) is None
        assert count_matches() == 0

    def test_repo_without_commits_skipped(self):
        a = _index('alice/one', make_commits(distinct_messages(5)))
        b = _index('bob/empty', [])
        assert CommitMatcher().compare_repositories(a['id'], b['id']) is None

    def test_missing_repo_skipped(self):
        a = _index('alice/one', make_commits(distinct_messages(5)))
        assert CommitMatcher().compare_repositories(a['id'], 9999) is None

    def test_low_score_match_does_not_blacklist(self):
        original = _index('alice/big', make_commits(distinct_messages(100)))
        small_copy = copy_commits(make_commits(distinct_messages(100))[:2])
        copy = _index('bob/small', small_copy, created_at=BASE_TIME + timedelta(days=5))

        statistics = CommitMatcher().compare_repositories(original['id'], copy['id'])
        assert statistics.confidence_score < 50
        assert get_blacklist_entry('bob') is None
        assert get_repository(copy['id'])['suspicion_score'] == 0


class TestFindMatches:
    def test_find_matches_for_repo(self, theft_pair):
        original, thief = theft_pair
        results = CommitMatcher().find_matches_for_repo(original['id'])
        assert len(results) == 1
        assert len(get_matches_for_repo(thief['id'])) == 1

    def test_find_matches_for_unknown_repo(self):
        with pytest.raises(ValueError):
            CommitMatcher().find_matches_for_repo(12345)

    def test_find_matches_for_all_repos_compares_each_pair_once(self, theft_pair):
        commits = make_commits(distinct_messages(100))
        _index('eve/tool', copy_commits(commits[:10], author='eve'),
               created_at=BASE_TIME + timedelta(days=50))

        matched = CommitMatcher().find_matches_for_all_repos()
        # alice<->mallory, alice<->eve, mallory<->eve
        assert matched == 3
        assert count_matches() == 3


class TestVerifyMatch:
    def test_verify_high_confidence(self, theft_pair):
        original, thief = theft_pair
        CommitMatcher().compare_repositories(original['id'], thief['id'])
        match = get_match_between(original['id'], thief['id'])

        assert CommitMatcher().verify_match(match['id']) is True
        assert get_match_between(original['id'], thief['id'])['status'] == 'verified'

    def test_verify_missing_match(self):
        with pytest.raises(ValueError):
            CommitMatcher().verify_match(42)
