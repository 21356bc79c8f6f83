"""
Match Engine Data Models.

Dataclasses and enums shared by the pairwise commit matcher and its callers.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Optional, Any
from datetime import datetime


# ============================================================
# ENUMS
# ============================================================

class ConfidenceLevel(Enum):
    """Discrete theft-likelihood tiers derived from the 0-100 score."""
    VERY_HIGH = "VERY_HIGH"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    VERY_LOW = "VERY_LOW"


# ============================================================
# COMMITS
# ============================================================

@dataclass
class CommitSnapshot:
    """The commit metadata the matcher compares: message, time and author."""
    message: str
    timestamp: datetime
    author_name: str = 'Unknown'
    author_email: str = ''
    sha: str = ''

    @property
    def author_key(self) -> str:
        return f"{self.author_name}<{self.author_email}>"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'CommitSnapshot':
        """Build from a stored commit row (see database.get_commits_for_repo)."""
        return cls(
            message=row['message'],
            timestamp=row['timestamp'],
            author_name=row.get('author_name') or 'Unknown',
            author_email=row.get('author_email') or '',
            sha=row.get('commit_sha') or '',
        )


@dataclass
class SampleMatch:
    """One exact match kept as evidence."""
    message: str
    timestamp: datetime
    repo1_author: str
    repo2_author: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
            'author1': self.repo1_author,
            'author2': self.repo2_author,
        }


# ============================================================
# STATISTICS
# ============================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class MatchStatistics:
    """Everything the matcher learned about a pair of repositories."""
    repo1_total_commits: int = 0
    repo2_total_commits: int = 0
    matching_commits: int = 0
    exact_matches: int = 0
    message_only_matches: int = 0
    match_percentage: float = 0.0
    repo1_created_at: Optional[datetime] = None
    repo2_created_at: Optional[datetime] = None
    repo1_first_commit: Optional[datetime] = None
    repo2_first_commit: Optional[datetime] = None
    commits_predate_repo2: bool = False
    time_gap_days: float = 0.0
    repo1_unique_authors: int = 0
    repo2_unique_authors: int = 0
    author_overlap: int = 0
    different_author_matches: int = 0
    confidence_score: int = 0
    confidence_level: ConfidenceLevel = ConfidenceLevel.VERY_LOW
    sample_matches: List[SampleMatch] = field(default_factory=list)

    @property
    def has_matches(self) -> bool:
        return self.exact_matches > 0

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe dict, stored as the match's statistics blob."""
        return {
            'totalCommitsRepo1': self.repo1_total_commits,
            'totalCommitsRepo2': self.repo2_total_commits,
            'matchingCommits': self.matching_commits,
            'exactMatches': self.exact_matches,
            'messageOnlyMatches': self.message_only_matches,
            'matchPercentage': round(self.match_percentage, 2),
            'repo1CreatedAt': _iso(self.repo1_created_at),
            'repo2CreatedAt': _iso(self.repo2_created_at),
            'repo1FirstCommit': _iso(self.repo1_first_commit),
            'repo2FirstCommit': _iso(self.repo2_first_commit),
            'commitsPredateRepo2': self.commits_predate_repo2,
            'timeGapDays': round(self.time_gap_days, 1),
            'uniqueAuthorsRepo1': self.repo1_unique_authors,
            'uniqueAuthorsRepo2': self.repo2_unique_authors,
            'authorOverlap': self.author_overlap,
            'differentAuthorMatches': self.different_author_matches,
            'confidenceScore': self.confidence_score,
            'confidenceLevel': self.confidence_level.value,
            'sampleMatchingCommits': [sample.to_dict() for sample in self.sample_matches],
        }
