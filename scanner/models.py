"""
Scanner Data Models.

Typed shapes for GitHub payloads and for the results the scanner hands back
to its callers (queue worker, profile orchestrator, Flask layer).
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Dict, Optional, Any


def parse_github_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse GitHub's ISO-8601 timestamps ("2024-01-02T03:04:05Z") as aware UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ============================================================
# GITHUB PAYLOADS
# ============================================================

@dataclass
class GitHubRepository:
    """Repository metadata as returned by the repos and search APIs."""
    id: int
    owner: str
    name: str
    full_name: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None
    stars: int = 0
    forks: int = 0
    description: Optional[str] = None
    topics: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'GitHubRepository':
        owner = (data.get('owner') or {}).get('login') or 'unknown'
        name = data.get('name') or ''
        return cls(
            id=data.get('id') or 0,
            owner=owner,
            name=name,
            full_name=data.get('full_name') or f"{owner}/{name}",
            created_at=parse_github_datetime(data.get('created_at')),
            updated_at=parse_github_datetime(data.get('updated_at')),
            pushed_at=parse_github_datetime(data.get('pushed_at')),
            stars=data.get('stargazers_count') or 0,
            forks=data.get('forks_count') or 0,
            description=data.get('description'),
            topics=data.get('topics') or [],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'owner': self.owner,
            'name': self.name,
            'fullName': self.full_name,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'stars': self.stars,
            'forks': self.forks,
            'description': self.description,
        }


@dataclass
class GitHubCommit:
    """A commit reduced to the metadata the engine compares."""
    sha: str
    message: str
    timestamp: datetime
    author_name: str = 'Unknown'
    author_email: str = ''
    url: str = ''

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'GitHubCommit':
        """
        Build from a /repos/{owner}/{repo}/commits item.

        Only the first line of the message is kept. Author fields fall back
        to the committer when the author block is missing.
        """
        commit = data.get('commit') or {}
        author = commit.get('author') or {}
        committer = commit.get('committer') or {}
        timestamp = parse_github_datetime(author.get('date') or committer.get('date'))
        return cls(
            sha=data['sha'],
            message=(commit.get('message') or '').split('\n', 1)[0],
            timestamp=timestamp or datetime.now(timezone.utc),
            author_name=author.get('name') or committer.get('name') or 'Unknown',
            author_email=author.get('email') or committer.get('email') or '',
            url=data.get('html_url') or '',
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'GitHubCommit':
        """Build from a stored commit row."""
        return cls(
            sha=row['commit_sha'],
            message=row['message'],
            timestamp=row['timestamp'],
            author_name=row.get('author_name') or 'Unknown',
            author_email=row.get('author_email') or '',
            url=row.get('commit_url') or '',
        )


@dataclass
class CommitCheckResult:
    """Outcome of the lightweight message-overlap check against a candidate."""
    matches: int = 0
    matching_commits: List[GitHubCommit] = field(default_factory=list)
    min_matches: int = 3

    @property
    def meets_threshold(self) -> bool:
        return self.matches >= self.min_matches


# ============================================================
# SCAN RESULTS
# ============================================================

@dataclass
class CandidateMatch:
    """A candidate repository confirmed by full matching against the seed."""
    full_name: str
    confidence_score: int
    confidence_level: str
    matching_commits: int
    match_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'matchedRepo': self.full_name,
            'confidence': self.confidence_score,
            'confidenceLevel': self.confidence_level,
            'matchingCommits': self.matching_commits,
            'matchId': self.match_id,
        }


@dataclass
class RepoScanResult:
    """Result of scanning one repository against the whole platform."""
    full_name: str
    candidates_checked: int = 0
    candidates_skipped: int = 0
    matches: List[CandidateMatch] = field(default_factory=list)
    error: Optional[str] = None
    kind: str = 'repo'

    @property
    def highest_confidence(self) -> int:
        return max((match.confidence_score for match in self.matches), default=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'fullName': self.full_name,
            'candidatesChecked': self.candidates_checked,
            'candidatesSkipped': self.candidates_skipped,
            'highestConfidence': self.highest_confidence,
            'matches': [match.to_dict() for match in self.matches],
            'error': self.error,
        }


@dataclass
class ProfileScanResult:
    """Result of scanning every repository of an account."""
    username: str
    repos: List[RepoScanResult] = field(default_factory=list)
    kind: str = 'profile'

    @property
    def total_matches(self) -> int:
        return sum(len(repo.matches) for repo in self.repos)

    @property
    def suspicious_repos(self) -> List[RepoScanResult]:
        return [repo for repo in self.repos if repo.matches]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'username': self.username,
            'totalRepos': len(self.repos),
            'totalMatches': self.total_matches,
            'repos': [repo.to_dict() for repo in self.repos],
        }
