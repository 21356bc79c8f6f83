"""
Cheap account-level heuristics for accounts that mass-publish copies.

No commit data is needed: the score comes from the account's repository
listing alone, so a suspicious account can be flagged before anything is
indexed.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any

import requests

from config import Config
from scanner.commit_indexer import CommitIndexer
from scanner.github_client import GitHubClient
from scanner.models import GitHubRepository
from discovery.popular_repos import submit_new_repos


RECENT_WINDOW_DAYS = 30
SUSPICIOUS_PROFILE_THRESHOLD = 30


@dataclass
class ProfileStats:
    username: str
    account_age_days: int
    repo_count: int
    repos_created_recently: int
    avg_stars_per_repo: float
    suspicious_score: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'username': self.username,
            'accountAge': self.account_age_days,
            'repoCount': self.repo_count,
            'reposCreatedRecently': self.repos_created_recently,
            'avgStarsPerRepo': round(self.avg_stars_per_repo, 2),
            'suspiciousScore': self.suspicious_score,
        }


def score_profile(repo_count: int, account_age_days: int,
                  repos_created_recently: int, avg_stars: float) -> int:
    """
    0-100 score for an account's publishing pattern.

    Bursts of new repositories, many repositories on a young account and
    many repositories nobody stars each add points.
    """
    score = 0

    if repos_created_recently > 20:
        score += 30
    elif repos_created_recently > 10:
        score += 20
    elif repos_created_recently > 5:
        score += 10

    if repo_count > 50 and account_age_days < 180:
        score += 30
    elif repo_count > 30 and account_age_days < 365:
        score += 20

    if repo_count > 20 and avg_stars < 1:
        score += 20

    return min(100, score)


def compute_profile_stats(username: str, repos: List[GitHubRepository],
                          now: Optional[datetime] = None) -> Optional[ProfileStats]:
    """Stats over an account's repository listing. None when it has no repos."""
    if not repos:
        return None

    now = now or datetime.now(timezone.utc)
    recent_cutoff = now - timedelta(days=RECENT_WINDOW_DAYS)
    created = [repo.created_at for repo in repos if repo.created_at is not None]

    recent = sum(1 for created_at in created if created_at > recent_cutoff)
    avg_stars = sum(repo.stars for repo in repos) / len(repos)
    # Account age is estimated from the oldest repository
    account_age = (now - min(created)).days if created else 0

    return ProfileStats(
        username=username,
        account_age_days=account_age,
        repo_count=len(repos),
        repos_created_recently=recent,
        avg_stars_per_repo=avg_stars,
        suspicious_score=score_profile(len(repos), account_age, recent, avg_stars),
    )


def analyze_profile(username: str, client: Optional[GitHubClient] = None,
                    now: Optional[datetime] = None) -> Optional[ProfileStats]:
    """Fetch an account's repositories and score its publishing pattern."""
    client = client or GitHubClient()
    try:
        repos = client.search_repositories(f"user:{username}", limit=Config.PROFILE_REPO_LIMIT,
                                           sort='updated')
    except requests.RequestException as e:
        print(f"[DISCOVERY] Error analyzing profile {username}: {e}")
        return None
    return compute_profile_stats(username, repos, now=now)


def scan_suspicious_profile(username: str, client: Optional[GitHubClient] = None,
                            queue=None, now: Optional[datetime] = None) -> Optional[ProfileStats]:
    """
    Analyze an account and, when it looks suspicious, queue all of its
    repositories for scanning.
    """
    client = client or GitHubClient()
    stats = analyze_profile(username, client=client, now=now)
    if stats is None:
        print(f"[DISCOVERY] Could not analyze profile {username}")
        return None

    print(f"[DISCOVERY] {username}: age {stats.account_age_days}d, {stats.repo_count} repos, "
          f"{stats.repos_created_recently} recent, score {stats.suspicious_score}/100")

    if stats.suspicious_score < SUSPICIOUS_PROFILE_THRESHOLD:
        return stats

    repos = client.search_repositories(f"user:{username}", limit=Config.PROFILE_REPO_LIMIT,
                                       sort='updated')
    submitted = submit_new_repos(repos, Config.PROFILE_SCAN_PRIORITY, set(), queue=queue,
                                 indexer=CommitIndexer(client))
    print(f"[DISCOVERY] Profile {username} flagged, submitted {len(submitted)} repos")
    return stats
