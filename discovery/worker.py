"""
Discovery worker: grows the corpus, then matches everything indexed.

run_discovery() is one pass. run_continuous_discovery() repeats it every
DISCOVERY_INTERVAL_MINUTES until its stop event is set.
"""
import threading
from typing import List, Optional

from config import Config
from database import get_high_confidence_matches, get_repository
from discovery.popular_repos import (
    discover_popular_repos,
    discover_trending_repos,
    search_similar_names,
)
from discovery.profile_heuristics import scan_suspicious_profile
from scanner.commit_matcher import CommitMatcher
from scanner.github_client import GitHubClient


def run_discovery(discover_popular: bool = True,
                  discover_trending: bool = True,
                  run_matching: bool = True,
                  suspicious_profiles: Optional[List[str]] = None,
                  client: Optional[GitHubClient] = None,
                  matcher: Optional[CommitMatcher] = None,
                  queue=None) -> dict:
    """
    Run one discovery pass.

    Returns:
        Summary dict: popular, trending (submitted counts), matchesCompared,
        profiles (stats of each analyzed profile).
    """
    client = client or GitHubClient()
    summary = {'popular': 0, 'trending': 0, 'matchesCompared': 0, 'profiles': []}

    print("[DISCOVERY] " + "=" * 50)
    print("[DISCOVERY] Repository discovery pass starting")

    if discover_popular:
        summary['popular'] = len(discover_popular_repos(client=client, queue=queue))

    if discover_trending:
        summary['trending'] = len(discover_trending_repos(client=client, queue=queue))

    if run_matching:
        matcher = matcher or CommitMatcher()
        summary['matchesCompared'] = matcher.find_matches_for_all_repos()

    for username in suspicious_profiles or []:
        stats = scan_suspicious_profile(username, client=client, queue=queue)
        if stats is not None:
            summary['profiles'].append(stats.to_dict())

    print("[DISCOVERY] Discovery pass complete")
    print("[DISCOVERY] " + "=" * 50)
    return summary


def run_continuous_discovery(stop_event: threading.Event,
                             interval_minutes: Optional[float] = None,
                             client: Optional[GitHubClient] = None,
                             queue=None):
    """Run discovery passes until `stop_event` is set. A failed pass is logged and retried next interval."""
    interval_minutes = interval_minutes or Config.DISCOVERY_INTERVAL_MINUTES
    print(f"[DISCOVERY] Starting continuous discovery (every {interval_minutes} minutes)")

    while not stop_event.is_set():
        try:
            run_discovery(client=client, queue=queue)
        except Exception as e:
            print(f"[DISCOVERY] Error in discovery pass: {e}")
        stop_event.wait(interval_minutes * 60)


def _format_match(match: dict) -> Optional[str]:
    repo1 = get_repository(match['repo1_id'])
    repo2 = get_repository(match['repo2_id'])
    if not repo1 or not repo2:
        return None

    def describe(repo: dict) -> str:
        created = repo['github_created_at'].date().isoformat() if repo['github_created_at'] else 'unknown'
        return f"{repo['full_name']} ({repo['stars']} stars, created {created})"

    return '\n'.join([
        f"  MATCH #{match['id']}",
        f"     Repo 1: {describe(repo1)}",
        f"     Repo 2: {describe(repo2)}",
        f"     Matching commits: {match['matching_commits_count']}",
        f"     Match percentage: {match['match_percentage']:.2f}%",
        f"     Confidence: {match['confidence_score']}/100 ({match['confidence_level']})",
        f"     Commits predate repo: {'YES' if match['commits_predate_repo'] else 'No'}",
    ])


def find_scams(search_terms: Optional[List[str]] = None, per_term: int = 5,
               client: Optional[GitHubClient] = None,
               matcher: Optional[CommitMatcher] = None) -> List[dict]:
    """
    Index look-alikes of frequently copied projects, match the corpus and
    print every high-confidence match.

    Returns:
        The high-confidence match rows.
    """
    client = client or GitHubClient()
    matcher = matcher or CommitMatcher()

    for term in search_terms or Config.SCAM_SEARCH_TERMS:
        search_similar_names(term, limit=per_term, client=client)

    matcher.find_matches_for_all_repos()

    matches = get_high_confidence_matches(limit=100)
    if not matches:
        print("[DISCOVERY] No high-confidence matches found.")
        return matches

    print(f"[DISCOVERY] Found {len(matches)} potential scam repos:")
    for match in matches:
        report = _format_match(match)
        if report:
            print(report)
    return matches
