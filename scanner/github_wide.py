"""
GitHub-wide candidate discovery.

Matches a repository against all of GitHub, not just what is already
indexed. Candidates come from two searches (similar repository names, and
phrases from the seed's commit messages), are pre-screened with a cheap
message-overlap check, and only the survivors are fully indexed and scored.

Every per-candidate step runs under its own deadline. A slow or broken
candidate is logged and skipped; the scan moves on to the next one.
"""
import re
import sqlite3
from typing import Callable, List, Optional

import requests

from config import Config
from database import (
    get_repository_by_full_name,
    get_commits_for_repo,
    get_match_between,
    upsert_repository,
    update_scan_status,
    SCAN_STATUS_PENDING,
    SCAN_STATUS_PROCESSING,
    SCAN_STATUS_COMPLETED,
)
from scanner.commit_indexer import CommitIndexer
from scanner.commit_matcher import CommitMatcher
from scanner.github_client import GitHubClient
from scanner.models import (
    CandidateMatch,
    GitHubCommit,
    GitHubRepository,
    ProfileScanResult,
    RepoScanResult,
)
from utils import CancelToken, ScanInterrupted, run_with_timeout


def name_search_terms(repo_name: str) -> List[str]:
    """Full name, first two words and first word of a repository name."""
    words = [word for word in re.split(r'[-_\s]+', repo_name.lower()) if len(word) >= 2]
    if not words:
        return []
    terms = []
    for term in (' '.join(words), ' '.join(words[:2]), words[0]):
        if term not in terms:
            terms.append(term)
    return terms


def _check_parent(token: Optional[CancelToken]):
    """Re-raise when the enclosing scan itself was interrupted."""
    if token is not None:
        token.check()


class GitHubWideMatcher:
    """Finds copies of a repository anywhere on GitHub."""

    def __init__(self, client: Optional[GitHubClient] = None,
                 indexer: Optional[CommitIndexer] = None,
                 matcher: Optional[CommitMatcher] = None):
        self.client = client or GitHubClient()
        self.indexer = indexer or CommitIndexer(self.client)
        self.matcher = matcher or CommitMatcher()

    # =========================================================================
    # CANDIDATES
    # =========================================================================

    def _load_seed(self, owner: str, repo: str, token: Optional[CancelToken]):
        """Stored seed record and its commits (newest first), indexing it when needed."""
        record = get_repository_by_full_name(f"{owner}/{repo}")
        rows = get_commits_for_repo(record['id']) if record else []

        if not rows:
            final_status = None if record else SCAN_STATUS_COMPLETED
            record = self.indexer.index_repository(
                owner, repo, token=token,
                final_status=final_status,
                commit_limit=Config.SEED_COMMIT_LIMIT,
            )
            rows = get_commits_for_repo(record['id'])

        commits = [GitHubCommit.from_row(row) for row in reversed(rows)]
        return record, commits

    def find_candidates(self, owner: str, repo: str, seed_commits: List[GitHubCommit],
                        token: Optional[CancelToken] = None) -> List[GitHubRepository]:
        """
        Candidate repositories, name matches first, capped at MAX_CANDIDATES.
        Nothing owned by `owner` is returned.
        """
        owner_key = owner.lower()
        by_name: List[GitHubRepository] = []
        seen = set()

        for term in name_search_terms(repo):
            try:
                results = self.client.search_repositories(term, limit=Config.NAME_SEARCH_LIMIT, token=token)
            except requests.RequestException as e:
                print(f"[DISCOVERY] Error searching for \"{term}\": {e}")
                continue
            for candidate in results:
                if candidate.owner.lower() == owner_key or candidate.full_name in seen:
                    continue
                seen.add(candidate.full_name)
                by_name.append(candidate)

        by_commits = self.client.find_repos_with_matching_commits(
            seed_commits, exclude_owner=owner, limit=Config.COMMIT_SEARCH_LIMIT, token=token
        )

        candidates = list(by_name)
        for candidate in by_commits:
            if candidate.full_name not in seen and candidate.owner.lower() != owner_key:
                seen.add(candidate.full_name)
                candidates.append(candidate)

        print(f"[DISCOVERY] {len(candidates)} candidates for {owner}/{repo} "
              f"({len(by_name)} by name, {len(by_commits)} by commits)")
        return candidates[:Config.MAX_CANDIDATES]

    # =========================================================================
    # SINGLE REPOSITORY
    # =========================================================================

    def _confirm_candidate(self, candidate: GitHubRepository, seed_record: dict,
                           token: Optional[CancelToken]) -> Optional[CandidateMatch]:
        """Index a pre-screened candidate, run the matcher and read back its match with the seed."""
        record = run_with_timeout(
            lambda t: self.indexer.index_repository(candidate.owner, candidate.name, token=t),
            Config.CANDIDATE_INDEX_TIMEOUT, parent=token, label=f"index {candidate.full_name}",
        )
        run_with_timeout(
            lambda t: self.matcher.find_matches_for_repo(record['id'], token=t),
            Config.CANDIDATE_MATCH_TIMEOUT, parent=token, label=f"match {candidate.full_name}",
        )

        match = get_match_between(record['id'], seed_record['id'])
        if not match or match['confidence_score'] < Config.SUSPICION_THRESHOLD:
            return None

        return CandidateMatch(
            full_name=record['full_name'],
            confidence_score=match['confidence_score'],
            confidence_level=match['confidence_level'],
            matching_commits=match['matching_commits_count'],
            match_id=match['id'],
        )

    def find_matches_across_github(self, owner: str, repo: str,
                                   token: Optional[CancelToken] = None) -> RepoScanResult:
        """
        Scan one repository against all of GitHub.

        Returns:
            RepoScanResult listing candidates whose match with the seed
            scored at or above the suspicion threshold.
        """
        print(f"[DISCOVERY] Searching all of GitHub for matches to {owner}/{repo}")
        seed_record, seed_commits = self._load_seed(owner, repo, token)
        result = RepoScanResult(full_name=seed_record['full_name'])

        if not seed_commits:
            print(f"[DISCOVERY] No commits found in {result.full_name}")
            return result

        candidates = self.find_candidates(owner, repo, seed_commits, token=token)

        for i, candidate in enumerate(candidates, 1):
            print(f"[DISCOVERY] [{i}/{len(candidates)}] Checking {candidate.full_name}...")

            try:
                check = run_with_timeout(
                    lambda t: self.client.check_repo_for_matching_commits(
                        candidate.owner, candidate.name, seed_commits,
                        min_matches=Config.MIN_CANDIDATE_MATCHES, token=t,
                    ),
                    Config.CANDIDATE_CHECK_TIMEOUT, parent=token, label=f"check {candidate.full_name}",
                )
            except ScanInterrupted as e:
                _check_parent(token)
                print(f"[DISCOVERY] Skipping {candidate.full_name}: {e}")
                result.candidates_skipped += 1
                continue

            result.candidates_checked += 1
            if not check.meets_threshold:
                print(f"[DISCOVERY] Only {check.matches} matches in {candidate.full_name} "
                      f"(need {Config.MIN_CANDIDATE_MATCHES}+)")
                continue

            print(f"[DISCOVERY] Found {check.matches} matching commits in {candidate.full_name}")
            try:
                confirmed = self._confirm_candidate(candidate, seed_record, token)
            except ScanInterrupted as e:
                _check_parent(token)
                print(f"[DISCOVERY] Skipping {candidate.full_name}: {e}")
                result.candidates_skipped += 1
                continue
            except Exception as e:
                print(f"[DISCOVERY] Error processing {candidate.full_name}: {e}")
                continue

            if confirmed:
                result.matches.append(confirmed)
                print(f"[DISCOVERY] HIGH CONFIDENCE MATCH {candidate.full_name}: "
                      f"{confirmed.confidence_score}/100")

        print(f"[DISCOVERY] {len(result.matches)} high-confidence matches for {result.full_name}")
        return result

    # =========================================================================
    # MANY REPOSITORIES
    # =========================================================================

    def _mark_completed(self, repo: GitHubRepository):
        try:
            if not get_repository_by_full_name(repo.full_name):
                upsert_repository(repo)
            update_scan_status(repo.full_name, SCAN_STATUS_COMPLETED)
        except sqlite3.Error as e:
            print(f"[DISCOVERY] Error marking {repo.full_name} as completed: {e}")

    def _scan_one(self, repo: GitHubRepository, token: Optional[CancelToken]) -> RepoScanResult:
        try:
            return run_with_timeout(
                lambda t: self.find_matches_across_github(repo.owner, repo.name, token=t),
                Config.REPO_SCAN_TIMEOUT, parent=token, label=f"scan {repo.full_name}",
            )
        except ScanInterrupted as e:
            _check_parent(token)
            print(f"[DISCOVERY] Scan of {repo.full_name} abandoned ({e}), continuing to next repo")
            return RepoScanResult(full_name=repo.full_name, error=str(e))
        except Exception as e:
            print(f"[DISCOVERY] Error scanning {repo.full_name}: {e}")
            return RepoScanResult(full_name=repo.full_name, error=str(e))

    def scan_repositories(self, repos: List[GitHubRepository],
                          token: Optional[CancelToken] = None,
                          on_repo_done: Optional[Callable[[RepoScanResult], None]] = None) -> List[RepoScanResult]:
        """
        Run the GitHub-wide scan for each repository in turn.

        Each repository is marked 'completed' when its scan ends, however it
        ended, and a final sweep completes any still pending/processing.
        """
        results = []
        try:
            for i, repo in enumerate(repos, 1):
                _check_parent(token)
                print(f"[DISCOVERY] [{i}/{len(repos)}] Scanning {repo.full_name}...")
                try:
                    result = self._scan_one(repo, token)
                finally:
                    self._mark_completed(repo)

                results.append(result)
                if on_repo_done is not None:
                    on_repo_done(result)
        finally:
            for repo in repos:
                record = get_repository_by_full_name(repo.full_name)
                if record and record['scan_status'] in (SCAN_STATUS_PENDING, SCAN_STATUS_PROCESSING):
                    update_scan_status(repo.full_name, SCAN_STATUS_COMPLETED)

        return results

    def list_user_repositories(self, username: str,
                               token: Optional[CancelToken] = None) -> List[GitHubRepository]:
        """An account's repositories, most recently updated first."""
        return self.client.search_repositories(
            f"user:{username}", limit=Config.PROFILE_REPO_LIMIT, token=token, sort='updated'
        )

    def scan_profile_across_github(self, username: str, token: Optional[CancelToken] = None,
                                   on_repo_done: Optional[Callable[[RepoScanResult], None]] = None) -> ProfileScanResult:
        """Scan every repository of an account against all of GitHub."""
        print(f"[DISCOVERY] Scanning profile {username} across all of GitHub")
        repos = self.list_user_repositories(username, token=token)
        print(f"[DISCOVERY] Found {len(repos)} repos for {username}")

        result = ProfileScanResult(
            username=username,
            repos=self.scan_repositories(repos, token=token, on_repo_done=on_repo_done),
        )
        print(f"[DISCOVERY] Profile scan of {username} complete: {result.total_matches} matches "
              f"in {len(result.suspicious_repos)} repos")
        return result
