"""
GitHub API gateway.

Typed access to the endpoints the detection engine needs. Every call goes
through utils.make_github_request, so it is paced by the RateGovernor,
retried on transient failures and bounded by the caller's CancelToken.
"""
import re
from typing import Iterator, List, Optional, Dict

import requests

from config import Config
from scanner.models import GitHubCommit, GitHubRepository, CommitCheckResult
from scoring.normalization import normalize_message, is_trivial_message
from utils import CancelToken, QuotaClass, make_github_request


ACCOUNT_ACTIVE = 'active'
ACCOUNT_ELIMINATED = 'eliminated'
ACCOUNT_UNKNOWN = 'unknown'

PHRASE_SOURCE_COMMITS = 30
PHRASE_QUERY_LIMIT = 10
DISTINCTIVE_COMMIT_LIMIT = 10
MAX_SEARCH_QUERIES = 10
CODE_SEARCH_PER_PAGE = 10
FALLBACK_SEARCH_LIMIT = 10


class GitHubClient:
    """GitHub REST client for repositories, commits and search."""

    def __init__(self, api_base: Optional[str] = None):
        self.api_base = (api_base or Config.GITHUB_API_BASE).rstrip('/')

    # =========================================================================
    # REPOSITORIES
    # =========================================================================

    def get_repository(self, owner: str, repo: str,
                       token: Optional[CancelToken] = None) -> GitHubRepository:
        """Fetch repository metadata. Raises requests.HTTPError on 404 etc."""
        response = make_github_request(f"{self.api_base}/repos/{owner}/{repo}", token=token)
        response.raise_for_status()
        return GitHubRepository.from_api(response.json())

    # =========================================================================
    # COMMITS
    # =========================================================================

    def iter_commits(self, owner: str, repo: str, limit: Optional[int] = None,
                     token: Optional[CancelToken] = None) -> Iterator[GitHubCommit]:
        """
        Lazily yield commits newest first, one page of 100 at a time.

        Stops on an empty page, a short page, or once `limit` commits
        have been yielded. An empty repository (409) yields nothing.
        """
        if limit is None:
            limit = Config.COMMIT_FETCH_LIMIT
        per_page = Config.COMMITS_PER_PAGE
        url = f"{self.api_base}/repos/{owner}/{repo}/commits"
        yielded = 0
        page = 1

        while yielded < limit:
            response = make_github_request(
                url, params={'per_page': per_page, 'page': page}, token=token
            )
            if response.status_code == 409:
                # Git Repository is empty
                return
            response.raise_for_status()

            data = response.json()
            if not data:
                return

            for item in data:
                yield GitHubCommit.from_api(item)
                yielded += 1
                if yielded >= limit:
                    return

            if len(data) < per_page:
                return
            page += 1

    def get_commits(self, owner: str, repo: str, limit: Optional[int] = None,
                    token: Optional[CancelToken] = None) -> List[GitHubCommit]:
        """Commits newest first, capped at `limit`."""
        return list(self.iter_commits(owner, repo, limit=limit, token=token))

    def get_first_commit(self, owner: str, repo: str,
                         token: Optional[CancelToken] = None) -> Optional[GitHubCommit]:
        """
        The oldest commit of a repository.

        Requests one commit per page and jumps to the page GitHub reports as
        last, so the cost is two calls regardless of history length.
        """
        url = f"{self.api_base}/repos/{owner}/{repo}/commits"
        response = make_github_request(url, params={'per_page': 1}, token=token)
        if response.status_code == 409:
            return None
        response.raise_for_status()

        data = response.json()
        last_url = (getattr(response, 'links', None) or {}).get('last', {}).get('url')
        if last_url:
            response = make_github_request(last_url, token=token)
            response.raise_for_status()
            data = response.json()

        return GitHubCommit.from_api(data[-1]) if data else None

    # =========================================================================
    # SEARCH
    # =========================================================================

    def search_repositories(self, query: str, limit: int = 100,
                            token: Optional[CancelToken] = None,
                            sort: str = 'stars') -> List[GitHubRepository]:
        """
        Search repositories, most starred first by default.

        Pages until a short page, an empty page or `limit` results.
        """
        per_page = min(100, max(limit, 1))
        url = f"{self.api_base}/search/repositories"
        repos: List[GitHubRepository] = []
        page = 1

        while len(repos) < limit:
            response = make_github_request(
                url,
                params={'q': query, 'sort': sort, 'order': 'desc',
                        'per_page': per_page, 'page': page},
                quota_class=QuotaClass.SEARCH,
                token=token,
            )
            response.raise_for_status()

            items = response.json().get('items', [])
            if not items:
                break

            for item in items:
                repos.append(GitHubRepository.from_api(item))
                if len(repos) >= limit:
                    break

            if len(items) < per_page:
                break
            page += 1

        return repos

    def search_code(self, query: str, per_page: int = CODE_SEARCH_PER_PAGE,
                    token: Optional[CancelToken] = None) -> List[GitHubRepository]:
        """Repositories of the first page of code search hits for `query`."""
        response = make_github_request(
            f"{self.api_base}/search/code",
            params={'q': query, 'per_page': per_page},
            quota_class=QuotaClass.SEARCH,
            token=token,
        )
        response.raise_for_status()
        return [
            GitHubRepository.from_api(item.get('repository') or {})
            for item in response.json().get('items', [])
        ]

    # =========================================================================
    # CANDIDATE SEARCH BY COMMIT CONTENT
    # =========================================================================

    @staticmethod
    def _extract_phrases(commits: List[GitHubCommit]) -> List[str]:
        """3-word phrases (10+ chars) from the first commit messages, in order."""
        phrases: Dict[str, None] = {}
        for commit in commits[:PHRASE_SOURCE_COMMITS]:
            cleaned = re.sub(r'[^\w\s]', ' ', commit.message.lower())
            words = [word for word in cleaned.split() if len(word) >= 2]
            for i in range(len(words) - 2):
                phrase = ' '.join(words[i:i + 3])
                if len(phrase) >= 10:
                    phrases.setdefault(phrase, None)
        return list(phrases)

    @staticmethod
    def _distinctive_terms(commits: List[GitHubCommit]) -> List[str]:
        """First five words of commits that are long and not boilerplate."""
        terms = []
        distinctive = [
            commit for commit in commits
            if len(commit.message) > 20
            and not commit.message.lower().startswith(tuple(Config.GENERIC_COMMIT_PREFIXES))
        ][:DISTINCTIVE_COMMIT_LIMIT]

        for commit in distinctive:
            words = commit.message.lower().split()[:5]
            if len(words) >= 3:
                terms.append(' '.join(words))
        return terms

    def build_commit_search_queries(self, commits: List[GitHubCommit]) -> List[str]:
        queries = [
            f'"{phrase}" language:markdown OR language:text'
            for phrase in self._extract_phrases(commits)[:PHRASE_QUERY_LIMIT]
        ]
        queries.extend(self._distinctive_terms(commits))
        return queries[:MAX_SEARCH_QUERIES]

    def find_repos_with_matching_commits(self, commits: List[GitHubCommit],
                                         exclude_owner: Optional[str] = None,
                                         limit: int = 50,
                                         token: Optional[CancelToken] = None) -> List[GitHubRepository]:
        """
        Find repositories elsewhere on GitHub that may share these commits.

        Issues at most 10 searches built from commit phrases and distinctive
        commit messages. Each query tries code search first and falls back
        to repository search. A failing query is logged and skipped.

        Returns:
            Up to `limit` repositories, deduplicated by full name, none owned
            by `exclude_owner`.
        """
        found: Dict[str, GitHubRepository] = {}
        excluded = exclude_owner.lower() if exclude_owner else None

        def collect(repos: List[GitHubRepository]):
            for repo in repos:
                if len(found) >= limit:
                    return
                if excluded and repo.owner.lower() == excluded:
                    continue
                found.setdefault(repo.full_name, repo)

        for query in self.build_commit_search_queries(commits):
            if len(found) >= limit:
                break
            try:
                try:
                    collect(self.search_code(query, token=token))
                except requests.RequestException as code_error:
                    print(f"[GITHUB] Code search failed for \"{query}\" ({code_error}), trying repository search")
                    collect(self.search_repositories(query, limit=FALLBACK_SEARCH_LIMIT, token=token))
            except requests.RequestException as e:
                print(f"[GITHUB] Error searching for \"{query}\": {e}")

        return list(found.values())[:limit]

    def check_repo_for_matching_commits(self, owner: str, repo: str,
                                        target_commits: List[GitHubCommit],
                                        min_matches: int = 3,
                                        token: Optional[CancelToken] = None) -> CommitCheckResult:
        """
        Count a candidate's commits whose normalized message appears among
        the target commits.

        Timestamps are ignored here because copied histories are often
        re-dated. Trivial messages are left out of the target set. A
        private, deleted or otherwise unreadable candidate yields zero
        matches. Cancellation still propagates.
        """
        target_messages = set()
        for commit in target_commits:
            normalized = normalize_message(commit.message)
            if not is_trivial_message(normalized):
                target_messages.add(normalized)

        try:
            repo_commits = self.get_commits(owner, repo, limit=Config.CANDIDATE_COMMIT_LIMIT, token=token)
        except requests.RequestException as e:
            print(f"[GITHUB] Could not read commits of {owner}/{repo}: {e}")
            return CommitCheckResult(min_matches=min_matches)

        matching = [
            commit for commit in repo_commits
            if normalize_message(commit.message) in target_messages
        ]
        return CommitCheckResult(
            matches=len(matching),
            matching_commits=matching,
            min_matches=min_matches,
        )

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    def check_account_status(self, username: str,
                             token: Optional[CancelToken] = None) -> str:
        """
        Check whether a GitHub account still exists.

        Returns:
            'eliminated' on 404, 'active' on success, 'unknown' otherwise.
        """
        try:
            response = make_github_request(
                f"{self.api_base}/users/{username}", token=token, skip_cache=True
            )
        except requests.RequestException as e:
            print(f"[GITHUB] Account check failed for {username}: {e}")
            return ACCOUNT_UNKNOWN

        if response.status_code == 404:
            return ACCOUNT_ELIMINATED
        if response.ok:
            return ACCOUNT_ACTIVE
        return ACCOUNT_UNKNOWN
