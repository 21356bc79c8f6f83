"""
Single-repository scan pipeline: index, then match against the corpus.

This is what the scan queue runs for each job.
"""
from typing import Optional

from database import get_matches_for_repo, get_repository
from scanner.commit_indexer import CommitIndexer
from scanner.commit_matcher import CommitMatcher
from scanner.models import CandidateMatch, RepoScanResult
from utils import CancelToken, parse_github_url


class RepoScanner:
    """Indexes a repository and records its matches with indexed repositories."""

    def __init__(self, indexer: Optional[CommitIndexer] = None,
                 matcher: Optional[CommitMatcher] = None):
        self.indexer = indexer or CommitIndexer()
        self.matcher = matcher or CommitMatcher()

    def scan_repository(self, owner: str, repo: str,
                        token: Optional[CancelToken] = None) -> RepoScanResult:
        """
        Index owner/repo and compare it with every repository sharing commits.

        Indexing errors propagate so the queue can retry the job.
        """
        print(f"[QUEUE] === Scanning {owner}/{repo} ===")
        record = self.indexer.index_repository(owner, repo, token=token)
        compared = self.matcher.find_matches_for_repo(record['id'], token=token)

        result = RepoScanResult(full_name=record['full_name'], candidates_checked=len(compared))
        for match in get_matches_for_repo(record['id']):
            other_id = match['repo2_id'] if match['repo1_id'] == record['id'] else match['repo1_id']
            other = get_repository(other_id)
            result.matches.append(CandidateMatch(
                full_name=other['full_name'] if other else str(other_id),
                confidence_score=match['confidence_score'],
                confidence_level=match['confidence_level'],
                matching_commits=match['matching_commits_count'],
                match_id=match['id'],
            ))
        return result

    def scan_from_url(self, repo_url: str, token: Optional[CancelToken] = None) -> RepoScanResult:
        """Scan a repository given its GitHub URL. Raises ValueError for bad URLs."""
        owner, repo = parse_github_url(repo_url)
        return self.scan_repository(owner, repo, token=token)

    def run_matching(self, token: Optional[CancelToken] = None) -> int:
        """In-corpus matching pass over every indexed repository."""
        print("[MATCHER] === Running matching algorithm ===")
        return self.matcher.find_matches_for_all_repos(token=token)
