"""
Shared test fixtures for the detection engine tests.
"""
import os
import tempfile

# Must be set before config is imported anywhere
os.environ['CACHE_ENABLED'] = 'false'
os.environ.setdefault('DATABASE_PATH', os.path.join(tempfile.mkdtemp(), 'import.db'))

import pytest
import requests
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional
from unittest.mock import patch

import utils
from database import init_db
from scanner.github_client import GitHubClient, ACCOUNT_UNKNOWN
from scanner.models import GitHubCommit, GitHubRepository
from utils import RateGovernor


BASE_TIME = datetime(2023, 1, 1, 12, 0, tzinfo=timezone.utc)


def _plenty_of_quota() -> dict:
    reset = int(datetime.now(timezone.utc).timestamp()) + 3600
    return {
        'core': {'remaining': 4999, 'limit': 5000, 'reset': reset},
        'search': {'remaining': 29, 'limit': 30, 'reset': reset},
    }


@pytest.fixture(autouse=True)
def fresh_db(tmp_path):
    """Point the engine at a fresh SQLite database for each test."""
    db_path = str(tmp_path / 'test.db')
    with patch('config.Config.DATABASE_PATH', db_path):
        init_db()
        yield db_path


@pytest.fixture(autouse=True)
def idle_governor(monkeypatch):
    """Rate governor that never sleeps and never calls /rate_limit."""
    governor = RateGovernor(fetch_limits=_plenty_of_quota, sleep=lambda seconds: None)
    monkeypatch.setattr(utils, '_rate_governor', governor)
    return governor


# ============================================================
# FACTORIES
# ============================================================

def make_repo(full_name: str, created_at: datetime = BASE_TIME, repo_id: int = 0,
              stars: int = 0) -> GitHubRepository:
    owner, name = full_name.split('/')
    return GitHubRepository(
        id=repo_id or abs(hash(full_name)) % 10_000_000,
        owner=owner,
        name=name,
        full_name=full_name,
        created_at=created_at,
        stars=stars,
    )


def make_commits(messages: List[str], start: datetime = BASE_TIME, step: timedelta = timedelta(days=1),
                 author: str = 'alice', prefix: str = 'sha') -> List[GitHubCommit]:
    """Commits oldest first: messages[i] is committed at start + i*step."""
    return [
        GitHubCommit(
            sha=f"{prefix}{i:05d}",
            message=message,
            timestamp=start + step * i,
            author_name=author,
            author_email=f"{author}@example.com",
        )
        for i, message in enumerate(messages)
    ]


def copy_commits(commits: List[GitHubCommit], author: str = 'mallory',
                 prefix: str = 'copy') -> List[GitHubCommit]:
    """Same messages and timestamps under a different identity and SHAs."""
    return [
        GitHubCommit(
            sha=f"{prefix}{i:05d}",
            message=commit.message,
            timestamp=commit.timestamp,
            author_name=author,
            author_email=f"{author}@example.com",
        )
        for i, commit in enumerate(commits)
    ]


def distinct_messages(count: int, topic: str = 'feature') -> List[str]:
    return [f"Implement {topic} number {i} with parser changes" for i in range(count)]


class FakeGitHubClient(GitHubClient):
    """
    GitHubClient with the network primitives replaced by in-memory data.

    Higher-level operations (commit search, candidate checks) run the real
    code on top of these primitives.
    """

    def __init__(self):
        super().__init__(api_base='https://api.github.test')
        self.repos: Dict[str, GitHubRepository] = {}
        self.commits: Dict[str, List[GitHubCommit]] = {}
        self.search_results: Dict[str, List[GitHubRepository]] = {}
        self.account_statuses: Dict[str, str] = {}
        self.commit_requests: List[str] = []
        self.first_commit_requests: List[str] = []
        self.failing_repos = set()

    def add_repo(self, repo: GitHubRepository, commits: Optional[List[GitHubCommit]] = None):
        self.repos[repo.full_name] = repo
        # The API lists commits newest first
        self.commits[repo.full_name] = sorted(commits or [], key=lambda c: c.timestamp, reverse=True)
        return repo

    def get_repository(self, owner, repo, token=None):
        full_name = f"{owner}/{repo}"
        if full_name not in self.repos:
            raise requests.HTTPError(f"404 Not Found: {full_name}")
        return self.repos[full_name]

    def iter_commits(self, owner, repo, limit=None, token=None):
        full_name = f"{owner}/{repo}"
        self.commit_requests.append(full_name)
        if token is not None:
            token.check()
        if full_name in self.failing_repos:
            raise requests.ConnectionError(f"connection reset fetching {full_name}")
        commits = self.commits.get(full_name, [])
        yield from commits[:limit] if limit else commits

    def get_first_commit(self, owner, repo, token=None):
        self.first_commit_requests.append(f"{owner}/{repo}")
        commits = self.commits.get(f"{owner}/{repo}", [])
        return commits[-1] if commits else None

    def search_repositories(self, query, limit=100, token=None, sort='stars'):
        if token is not None:
            token.check()
        return list(self.search_results.get(query, []))[:limit]

    def search_code(self, query, per_page=10, token=None):
        return []

    def check_account_status(self, username, token=None):
        return self.account_statuses.get(username, ACCOUNT_UNKNOWN)


@pytest.fixture
def fake_client():
    return FakeGitHubClient()
