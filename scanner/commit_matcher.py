"""
Commit matcher.

Runs the match scorer over pairs of indexed repositories, persists matches
and applies their side effects (suspicion scores, blacklist registration).
"""
from typing import List, Optional

from config import Config
from database import (
    get_repository,
    get_commits_for_repo,
    find_repos_sharing_commits,
    find_duplicate_commit_groups,
    upsert_match,
    get_match,
    update_match_status,
    update_suspicion_score,
    upsert_blacklist_entry,
    update_blacklist_stats,
    increment_daily_stat,
    MATCH_STATUS_VERIFIED,
)
from scoring.match_scorer import calculate_match_statistics
from scoring.models import CommitSnapshot, MatchStatistics
from utils import CancelToken


def _repo_facts(repo: dict, total_commits: int) -> dict:
    return {
        'fullName': repo['full_name'],
        'createdAt': repo['github_created_at'].isoformat() if repo['github_created_at'] else None,
        'firstCommit': repo['first_commit_date'].isoformat() if repo['first_commit_date'] else None,
        'totalCommits': total_commits,
    }


def _order_by_creation(repo_a: dict, repo_b: dict):
    """(earlier-created, later-created); ties keep the lower id first."""
    key_a = (repo_a['github_created_at'], repo_a['id'])
    key_b = (repo_b['github_created_at'], repo_b['id'])
    return (repo_a, repo_b) if key_a <= key_b else (repo_b, repo_a)


class CommitMatcher:
    """Finds and records theft matches between indexed repositories."""

    def compare_repositories(self, repo_a_id: int, repo_b_id: int) -> Optional[MatchStatistics]:
        """
        Score one pair of indexed repositories and persist the match.

        The earlier-created repository is scored as repo1 (presumed original)
        and the later one as repo2 (suspected copy). Pairs without a single
        exact match are not stored.

        Returns:
            The MatchStatistics, or None when either repository is missing,
            has no commits, or nothing matched.
        """
        if repo_a_id == repo_b_id:
            return None

        repo_a = get_repository(repo_a_id)
        repo_b = get_repository(repo_b_id)
        if not repo_a or not repo_b:
            return None

        repo1, repo2 = _order_by_creation(repo_a, repo_b)
        repo1_commits = [CommitSnapshot.from_row(row) for row in get_commits_for_repo(repo1['id'])]
        repo2_commits = [CommitSnapshot.from_row(row) for row in get_commits_for_repo(repo2['id'])]
        if not repo1_commits or not repo2_commits:
            return None

        statistics = calculate_match_statistics(
            repo1_commits,
            repo2_commits,
            repo1['github_created_at'],
            repo2['github_created_at'],
            repo1['first_commit_date'],
            repo2['first_commit_date'],
        )

        if not statistics.has_matches:
            return None

        evidence = {
            'repo1': _repo_facts(repo1, len(repo1_commits)),
            'repo2': _repo_facts(repo2, len(repo2_commits)),
            'sampleMatchingCommits': [
                sample.to_dict()
                for sample in statistics.sample_matches[:Config.SAMPLE_MATCHES_EVIDENCE]
            ],
        }
        upsert_match(repo1['id'], repo2['id'], statistics.to_dict(), evidence)
        increment_daily_stat('matches_recorded')

        score = statistics.confidence_score
        if score >= Config.SUSPICION_THRESHOLD:
            update_suspicion_score(repo1['full_name'], score)
            update_suspicion_score(repo2['full_name'], score)

        if score >= Config.BLACKLIST_THRESHOLD:
            suspect_owner = repo2['owner']
            upsert_blacklist_entry(suspect_owner)
            update_blacklist_stats(suspect_owner)
            print(f"[BLACKLIST] {suspect_owner} registered for {repo2['full_name']} (score {score})")

        print(
            f"[MATCHER] Match found: {repo1['full_name']} <-> {repo2['full_name']} "
            f"({statistics.exact_matches} matches, {statistics.confidence_level.value}, score: {score})"
        )
        return statistics

    def find_matches_for_repo(self, repo_id: int,
                              token: Optional[CancelToken] = None) -> List[MatchStatistics]:
        """
        Compare a repository with every indexed repository sharing at least
        one (message, minute) commit with it.

        Raises:
            ValueError: If the repository is not indexed.
        """
        repo = get_repository(repo_id)
        if not repo:
            raise ValueError(f"Repository {repo_id} not found")

        results = []
        for other_id in find_repos_sharing_commits(repo_id):
            if token is not None:
                token.check()
            statistics = self.compare_repositories(repo_id, other_id)
            if statistics:
                results.append(statistics)
        return results

    def find_matches_for_all_repos(self, token: Optional[CancelToken] = None) -> int:
        """
        In-corpus pass: compare every pair of repositories that share a
        duplicate commit group, each unordered pair once.

        Returns:
            Number of pairs that produced a match.
        """
        groups = find_duplicate_commit_groups()
        print(f"[MATCHER] Found {len(groups)} duplicate commit patterns")

        processed = set()
        matched = 0
        for group in groups:
            repo_ids = group['repo_ids']
            for i in range(len(repo_ids)):
                for j in range(i + 1, len(repo_ids)):
                    pair = (min(repo_ids[i], repo_ids[j]), max(repo_ids[i], repo_ids[j]))
                    if pair in processed:
                        continue
                    processed.add(pair)
                    if token is not None:
                        token.check()
                    if self.compare_repositories(*pair):
                        matched += 1
        return matched

    def verify_match(self, match_id: int) -> bool:
        """Mark a match verified if it reaches the verification threshold."""
        match = get_match(match_id)
        if not match:
            raise ValueError(f"Match {match_id} not found")
        if match['confidence_score'] < Config.VERIFY_THRESHOLD:
            return False
        return update_match_status(match_id, MATCH_STATUS_VERIFIED)
