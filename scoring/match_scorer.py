"""
Pairwise commit matching and theft confidence scoring.

Two repositories are compared on commit metadata only. An exact match is
the same commit message on both sides with the same minute-truncated
timestamp. The confidence score (0-100) adds four weighted factors:

    Message-match volume   0-40   how many exact matches
    Match density          0-25   exact matches / larger repo's commit count
    Temporal anomaly       0-35   history older than the repo, creation order/gap
    Author anomaly         0-10   matches made under a different identity
"""
from collections import defaultdict
from datetime import datetime
from typing import Iterable, List, Optional

from scoring.models import CommitSnapshot, ConfidenceLevel, MatchStatistics, SampleMatch
from scoring.normalization import truncate_to_minute, to_utc


SAMPLE_LIMIT = 10

# (minimum exact matches, points), highest tier first
VOLUME_TIERS = [(50, 40), (30, 35), (20, 30), (10, 25), (5, 20), (3, 15), (1, 10)]

# (minimum percentage, points). The top tier is strictly greater than 90.
DENSITY_TIERS = [(80, 20), (70, 15), (50, 10), (30, 5)]

CONFIDENCE_TIERS = [
    (85, ConfidenceLevel.VERY_HIGH),
    (70, ConfidenceLevel.HIGH),
    (50, ConfidenceLevel.MEDIUM),
    (30, ConfidenceLevel.LOW),
]


def _index_by_message(commits: Iterable[CommitSnapshot]) -> dict:
    index = defaultdict(list)
    for commit in commits:
        index[commit.message].append((truncate_to_minute(commit.timestamp), commit))
    return index


def _volume_points(exact_matches: int) -> int:
    for minimum, points in VOLUME_TIERS:
        if exact_matches >= minimum:
            return points
    return 0


def _density_points(match_percentage: float) -> int:
    if match_percentage > 90:
        return 25
    for minimum, points in DENSITY_TIERS:
        if match_percentage >= minimum:
            return points
    return 0


def _temporal_points(stats: MatchStatistics) -> int:
    points = 0
    repo1_created = stats.repo1_created_at
    repo2_created = stats.repo2_created_at

    if stats.commits_predate_repo2:
        points += 20
    elif repo1_created and repo2_created and repo2_created > repo1_created and stats.exact_matches > 0:
        points += 15

    if repo1_created and repo2_created:
        gap_days = abs((repo2_created - repo1_created).total_seconds()) / 86400
        if gap_days > 30:
            points += 10

    if (stats.repo1_first_commit and stats.repo2_first_commit
            and stats.repo1_first_commit == stats.repo2_first_commit):
        points += 5

    return points


def _author_points(stats: MatchStatistics) -> int:
    if stats.exact_matches > 0 and stats.different_author_matches == stats.exact_matches:
        return 10
    if stats.different_author_matches > stats.exact_matches * 0.8:
        return 8
    if stats.different_author_matches > 0:
        return 5
    return 0


def calculate_suspicion_score(stats: MatchStatistics) -> int:
    """Additive 0-100 confidence score for a pair's statistics."""
    score = (
        _volume_points(stats.exact_matches)
        + _density_points(stats.match_percentage)
        + _temporal_points(stats)
        + _author_points(stats)
    )
    return max(0, min(100, score))


def get_confidence_level(score: int) -> ConfidenceLevel:
    for minimum, level in CONFIDENCE_TIERS:
        if score >= minimum:
            return level
    return ConfidenceLevel.VERY_LOW


def calculate_match_statistics(
    repo1_commits: List[CommitSnapshot],
    repo2_commits: List[CommitSnapshot],
    repo1_created_at: Optional[datetime],
    repo2_created_at: Optional[datetime],
    repo1_first_commit: Optional[datetime] = None,
    repo2_first_commit: Optional[datetime] = None,
) -> MatchStatistics:
    """
    Compare two commit lists and score the pair.

    Every (repo1 commit, repo2 commit) pair with the same message and the
    same minute is an exact match. Same-author matches still count toward
    volume and density; cross-author ones are also tallied separately
    since identical commits under the same identity usually mean a fork.

    Match percentage is exact matches over the larger repository's commit
    count, so a small copied subset of a big history scores low density.

    Args:
        repo1_commits: Commits of the first repository.
        repo2_commits: Commits of the second repository (the suspected copy
                       when the caller knows which one that is).
        repo1_created_at / repo2_created_at: Repository creation times.
        repo1_first_commit / repo2_first_commit: Oldest commit timestamps.

    Returns:
        MatchStatistics with score and tier filled in.
    """
    repo1_index = _index_by_message(repo1_commits)
    repo2_index = _index_by_message(repo2_commits)

    samples: List[SampleMatch] = []
    exact_matches = 0
    different_author_matches = 0
    message_only_matches = 0

    for message, repo1_entries in repo1_index.items():
        repo2_entries = repo2_index.get(message)
        if not repo2_entries:
            continue

        found_for_message = False
        for repo1_minute, repo1_commit in repo1_entries:
            for repo2_minute, repo2_commit in repo2_entries:
                if repo1_minute != repo2_minute:
                    continue
                found_for_message = True
                exact_matches += 1
                if repo1_commit.author_key != repo2_commit.author_key:
                    different_author_matches += 1
                if len(samples) < SAMPLE_LIMIT:
                    samples.append(SampleMatch(
                        message=message,
                        timestamp=repo1_minute,
                        repo1_author=repo1_commit.author_name,
                        repo2_author=repo2_commit.author_name,
                    ))

        if not found_for_message:
            message_only_matches += 1

    total = max(len(repo1_commits), len(repo2_commits))
    match_percentage = (exact_matches / total) * 100 if total > 0 else 0.0

    repo1_authors = {commit.author_key for commit in repo1_commits}
    repo2_authors = {commit.author_key for commit in repo2_commits}

    repo1_created = to_utc(repo1_created_at) if repo1_created_at else None
    repo2_created = to_utc(repo2_created_at) if repo2_created_at else None
    repo1_first = to_utc(repo1_first_commit) if repo1_first_commit else None
    repo2_first = to_utc(repo2_first_commit) if repo2_first_commit else None

    time_gap_days = 0.0
    if repo1_created and repo2_created:
        time_gap_days = abs((repo2_created - repo1_created).total_seconds()) / 86400

    stats = MatchStatistics(
        repo1_total_commits=len(repo1_commits),
        repo2_total_commits=len(repo2_commits),
        matching_commits=exact_matches,
        exact_matches=exact_matches,
        message_only_matches=message_only_matches,
        match_percentage=match_percentage,
        repo1_created_at=repo1_created,
        repo2_created_at=repo2_created,
        repo1_first_commit=repo1_first,
        repo2_first_commit=repo2_first,
        commits_predate_repo2=bool(repo2_first and repo2_created and repo2_first < repo2_created),
        time_gap_days=time_gap_days,
        repo1_unique_authors=len(repo1_authors),
        repo2_unique_authors=len(repo2_authors),
        author_overlap=len(repo1_authors & repo2_authors),
        different_author_matches=different_author_matches,
        sample_matches=samples,
    )

    stats.confidence_score = calculate_suspicion_score(stats)
    stats.confidence_level = get_confidence_level(stats.confidence_score)
    return stats
