"""
Seeds the commit index with repositories people are likely to copy.

Three sources:
- popular repositories per language (stars:>=N)
- trending repositories (recently created, most starred)
- repositories whose names resemble a known popular project

Each repository not already completed is handed to the scan queue, or
indexed directly when no queue is given.
"""
import re
from typing import Iterable, List, Optional, Set

import requests

from config import Config
from database import get_repository_by_full_name, SCAN_STATUS_COMPLETED
from scanner.commit_indexer import CommitIndexer
from scanner.github_client import GitHubClient
from scanner.models import GitHubRepository


def _already_indexed(full_name: str) -> bool:
    existing = get_repository_by_full_name(full_name)
    return existing is not None and existing['scan_status'] == SCAN_STATUS_COMPLETED


def _submit(repo: GitHubRepository, priority: int, queue=None,
            indexer: Optional[CommitIndexer] = None) -> bool:
    """Queue a repository for scanning, or index it now. Returns True on success."""
    if queue is not None:
        return queue.add_scan_job(repo.owner, repo.name, priority)

    indexer = indexer or CommitIndexer()
    try:
        indexer.index_repository(repo.owner, repo.name)
        return True
    except (requests.RequestException, ValueError) as e:
        print(f"[DISCOVERY] Error indexing {repo.full_name}: {e}")
        return False


def submit_new_repos(repos: Iterable[GitHubRepository], priority: int, seen: Set[str],
                     queue=None, indexer: Optional[CommitIndexer] = None) -> List[str]:
    """Submit each repository not seen in this run and not already completed."""
    submitted = []
    for repo in repos:
        if repo.full_name in seen or _already_indexed(repo.full_name):
            continue
        seen.add(repo.full_name)
        print(f"[DISCOVERY] Found: {repo.full_name} ({repo.stars} stars)")
        if _submit(repo, priority, queue=queue, indexer=indexer):
            submitted.append(repo.full_name)
    return submitted


def discover_popular_repos(min_stars: Optional[int] = None,
                           languages: Optional[List[str]] = None,
                           per_language: int = 30,
                           client: Optional[GitHubClient] = None,
                           queue=None,
                           indexer: Optional[CommitIndexer] = None) -> List[str]:
    """
    Find highly starred repositories in each language.

    Returns:
        Full names of the repositories submitted.
    """
    client = client or GitHubClient()
    indexer = indexer or CommitIndexer(client)
    min_stars = Config.DISCOVERY_MIN_STARS if min_stars is None else min_stars
    languages = languages or Config.DISCOVERY_LANGUAGES
    seen: Set[str] = set()
    submitted: List[str] = []

    print(f"[DISCOVERY] Discovering popular repos (min {min_stars} stars)")
    for language in languages:
        try:
            repos = client.search_repositories(
                f"language:{language} stars:>={min_stars}", limit=per_language
            )
        except requests.RequestException as e:
            print(f"[DISCOVERY] Error searching {language}: {e}")
            continue
        submitted.extend(submit_new_repos(repos, Config.POPULAR_SCAN_PRIORITY, seen,
                                         queue=queue, indexer=indexer))

    print(f"[DISCOVERY] Submitted {len(submitted)} popular repos")
    return submitted


def discover_trending_repos(limit: int = 30,
                            created_after: Optional[str] = None,
                            client: Optional[GitHubClient] = None,
                            queue=None,
                            indexer: Optional[CommitIndexer] = None) -> List[str]:
    """Find the most starred repositories created after `created_after` (YYYY-MM-DD)."""
    client = client or GitHubClient()
    indexer = indexer or CommitIndexer(client)
    created_after = created_after or Config.TRENDING_CREATED_AFTER

    print(f"[DISCOVERY] Discovering trending repos (created after {created_after})")
    try:
        repos = client.search_repositories(f"created:>{created_after}", limit=limit)
    except requests.RequestException as e:
        print(f"[DISCOVERY] Error discovering trending repos: {e}")
        return []

    submitted = submit_new_repos(repos, Config.TRENDING_SCAN_PRIORITY, set(),
                                queue=queue, indexer=indexer)
    print(f"[DISCOVERY] Submitted {len(submitted)} trending repos")
    return submitted


def similar_name_keywords(repo_name: str) -> List[str]:
    """Up to three keywords longer than two characters from a repository name."""
    words = [word for word in re.split(r'[-_/]', repo_name) if len(word) > 2]
    return words[:3]


def search_similar_names(repo_name: str, limit: int = 20,
                         client: Optional[GitHubClient] = None,
                         queue=None,
                         indexer: Optional[CommitIndexer] = None) -> List[str]:
    """Index repositories whose names share keywords with `repo_name`."""
    client = client or GitHubClient()
    indexer = indexer or CommitIndexer(client)
    keywords = similar_name_keywords(repo_name)
    if not keywords:
        print(f"[DISCOVERY] Could not extract keywords from {repo_name}")
        return []

    query = ' '.join(keywords)
    print(f"[DISCOVERY] Searching for repos similar to {repo_name}: {query}")
    try:
        repos = client.search_repositories(query, limit=limit)
    except requests.RequestException as e:
        print(f"[DISCOVERY] Search failed for {query}: {e}")
        return []

    return submit_new_repos(repos, Config.POPULAR_SCAN_PRIORITY, set(),
                            queue=queue, indexer=indexer)
