"""
Commit indexer.

Pulls a repository's metadata and commit history from GitHub and replaces
its stored commits, tracking scan status on the repository row.
"""
from datetime import datetime
from typing import Optional

import requests

from config import Config
from database import (
    upsert_repository,
    update_scan_status,
    update_first_commit_date,
    replace_commits,
    get_repository_by_full_name,
    increment_daily_stat,
    SCAN_STATUS_PROCESSING,
    SCAN_STATUS_COMPLETED,
    SCAN_STATUS_FAILED,
)
from scanner.github_client import GitHubClient
from utils import CancelToken, parse_github_url


class CommitIndexer:
    """Indexes repositories into the commit store."""

    def __init__(self, client: Optional[GitHubClient] = None):
        self.client = client or GitHubClient()

    def index_repository(self, owner: str, repo: str,
                         token: Optional[CancelToken] = None,
                         final_status: Optional[str] = SCAN_STATUS_COMPLETED,
                         commit_limit: Optional[int] = None) -> dict:
        """
        Fetch and store a repository and its commit history.

        Steps: metadata -> upsert -> status 'processing' -> fetch commits ->
        record the oldest commit as first-commit date -> replace stored
        commits -> status `final_status` (left untouched when None).

        Any failure marks the repository 'failed' and is re-raised.

        Returns:
            The stored repository row.
        """
        full_name = f"{owner}/{repo}"
        limit = commit_limit or Config.COMMIT_FETCH_LIMIT
        print(f"[INDEXER] Indexing repository: {full_name}")

        try:
            github_repo = self.client.get_repository(owner, repo, token=token)
            full_name = github_repo.full_name
            record = upsert_repository(github_repo)
            update_scan_status(full_name, SCAN_STATUS_PROCESSING)

            commits = self.client.get_commits(owner, repo, limit=limit, token=token)
            if commits:
                first_commit = min(commit.timestamp for commit in commits)
                if len(commits) >= limit:
                    first_commit = self._true_first_commit(owner, repo, first_commit, token)
                update_first_commit_date(full_name, first_commit)
            else:
                print(f"[INDEXER] No commits found for {full_name}")

            stored = replace_commits(record['id'], commits)
            if final_status:
                update_scan_status(full_name, final_status)
        except Exception as e:
            print(f"[INDEXER] Error indexing {full_name}: {e}")
            update_scan_status(full_name, SCAN_STATUS_FAILED)
            raise

        increment_daily_stat('repos_indexed')
        print(f"[INDEXER] Indexed {full_name} with {stored} commits")
        return get_repository_by_full_name(full_name)

    def _true_first_commit(self, owner: str, repo: str, oldest_fetched: datetime,
                           token: Optional[CancelToken]) -> datetime:
        # History was cut at the fetch limit, so the oldest fetched commit is not the first
        try:
            first = self.client.get_first_commit(owner, repo, token=token)
        except requests.RequestException as e:
            print(f"[INDEXER] Could not read first commit of {owner}/{repo}: {e}")
            return oldest_fetched
        if first is None:
            return oldest_fetched
        return min(first.timestamp, oldest_fetched)

    def index_from_url(self, repo_url: str, token: Optional[CancelToken] = None) -> dict:
        """Index a repository given its GitHub URL. Raises ValueError for bad URLs."""
        owner, repo = parse_github_url(repo_url)
        return self.index_repository(owner, repo, token=token)
