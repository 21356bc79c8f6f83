"""
SQLite database module for the theft detection engine.

Stores indexed repositories, their commit history, pairwise matches,
the blacklist of suspected copiers, community reports and the durable
scan job queue.
"""
import sqlite3
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any, Iterable
from config import Config


SCAN_STATUS_PENDING = 'pending'
SCAN_STATUS_PROCESSING = 'processing'
SCAN_STATUS_COMPLETED = 'completed'
SCAN_STATUS_FAILED = 'failed'

MATCH_STATUS_PENDING = 'pending'
MATCH_STATUS_VERIFIED = 'verified'

ACCOUNT_STATUS_ACTIVE = 'active'
ACCOUNT_STATUS_ELIMINATED = 'eliminated'
ACCOUNT_STATUS_UNKNOWN = 'unknown'

JOB_STATUS_WAITING = 'waiting'
JOB_STATUS_ACTIVE = 'active'
JOB_STATUS_DELAYED = 'delayed'
JOB_STATUS_COMPLETED = 'completed'
JOB_STATUS_FAILED = 'failed'

LIVE_JOB_STATUSES = (JOB_STATUS_WAITING, JOB_STATUS_ACTIVE, JOB_STATUS_DELAYED)


def get_db_connection() -> sqlite3.Connection:
    """Create a database connection with row factory and timeout."""
    db_dir = os.path.dirname(Config.DATABASE_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    # Use a 30-second timeout to handle concurrent access gracefully
    conn = sqlite3.connect(Config.DATABASE_PATH, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def init_db() -> None:
    """Initialize the database schema."""
    conn = get_db_connection()
    cursor = conn.cursor()

    # WAL lets the queue worker and profile scans read while another writes
    cursor.execute('PRAGMA journal_mode=WAL')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS repositories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            github_id INTEGER,
            owner TEXT NOT NULL,
            name TEXT NOT NULL,
            full_name TEXT NOT NULL UNIQUE,
            github_created_at TEXT NOT NULL,
            first_commit_date TEXT,
            updated_at TEXT,
            pushed_at TEXT,
            stars INTEGER DEFAULT 0,
            forks INTEGER DEFAULT 0,
            description TEXT,
            topics JSON,
            scan_status TEXT DEFAULT 'pending',
            suspicion_score INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at_db TEXT
        )
    ''')

    cursor.execute('CREATE INDEX IF NOT EXISTS idx_repos_owner ON repositories(owner)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_repos_github_id ON repositories(github_id)')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS commits (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            repo_id INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
            commit_sha TEXT NOT NULL,
            message TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            timestamp_minute TEXT NOT NULL,
            author_name TEXT NOT NULL,
            author_email TEXT NOT NULL,
            commit_url TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(repo_id, commit_sha)
        )
    ''')

    # Duplicate detection groups on (message, minute)
    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_commit_match
        ON commits(message, timestamp_minute)
    ''')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_commit_repo ON commits(repo_id)')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS blacklist (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            github_username TEXT NOT NULL COLLATE NOCASE UNIQUE,
            github_user_id INTEGER,
            status TEXT DEFAULT 'confirmed',
            account_status TEXT DEFAULT 'unknown',
            total_stolen_repos INTEGER DEFAULT 0,
            total_matches INTEGER DEFAULT 0,
            highest_confidence_score INTEGER DEFAULT 0,
            first_detected_at TEXT,
            last_updated_at TEXT,
            account_checked_at TEXT,
            evidence_summary JSON,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    cursor.execute('CREATE INDEX IF NOT EXISTS idx_blacklist_status ON blacklist(status)')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS matches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            repo1_id INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
            repo2_id INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
            matching_commits_count INTEGER DEFAULT 0,
            match_percentage REAL DEFAULT 0,
            confidence_score INTEGER DEFAULT 0,
            confidence_level TEXT DEFAULT 'VERY_LOW',
            commits_predate_repo INTEGER DEFAULT 0,
            statistics JSON,
            evidence JSON,
            status TEXT DEFAULT 'pending',
            blacklist_id INTEGER REFERENCES blacklist(id) ON DELETE SET NULL,
            created_at TEXT,
            updated_at TEXT,
            UNIQUE(repo1_id, repo2_id)
        )
    ''')

    cursor.execute('CREATE INDEX IF NOT EXISTS idx_matches_repo1 ON matches(repo1_id)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_matches_repo2 ON matches(repo2_id)')
    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_matches_confidence
        ON matches(confidence_score DESC)
    ''')

    # Community reports table
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS reports (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            original_repo_url TEXT NOT NULL,
            suspected_fake_repo_url TEXT NOT NULL,
            reporter_email TEXT,
            reporter_name TEXT,
            evidence TEXT,
            status TEXT DEFAULT 'pending',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    # Durable scan job queue (job_key = owner/repo)
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS scan_jobs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_key TEXT NOT NULL UNIQUE,
            owner TEXT NOT NULL,
            repo TEXT NOT NULL,
            priority INTEGER DEFAULT 0,
            status TEXT DEFAULT 'waiting',
            attempts INTEGER DEFAULT 0,
            max_attempts INTEGER DEFAULT 3,
            next_run_at REAL DEFAULT 0,
            last_error TEXT,
            result TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    cursor.execute('''
        CREATE INDEX IF NOT EXISTS idx_jobs_due
        ON scan_jobs(status, priority DESC, next_run_at)
    ''')

    # System Stats table - daily usage tracking
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS system_stats (
            date TEXT PRIMARY KEY,
            repos_indexed INTEGER DEFAULT 0,
            matches_recorded INTEGER DEFAULT 0,
            profile_scans INTEGER DEFAULT 0,
            api_calls INTEGER DEFAULT 0
        )
    ''')

    conn.commit()
    conn.close()


# =============================================================================
# TIMESTAMP HELPERS
# =============================================================================

def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a UTC ISO-8601 string (naive values are treated as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        normalized = value.replace('Z', '+00:00')
        if ' ' in normalized and 'T' not in normalized:
            # sqlite CURRENT_TIMESTAMP format
            normalized = normalized.replace(' ', 'T')
        parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def minute_key(value: datetime) -> str:
    """Key used for minute-granularity matching: YYYY-MM-DDTHH:MM in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M')


# =============================================================================
# REPOSITORIES
# =============================================================================

def _repo_row_to_dict(row: sqlite3.Row) -> dict:
    """Convert a repositories row to a dict with parsed timestamps."""
    result = dict(row)
    for key in ('github_created_at', 'first_commit_date', 'updated_at', 'pushed_at', 'updated_at_db'):
        result[key] = parse_iso(result.get(key))
    result['topics'] = json.loads(result['topics']) if result.get('topics') else []
    return result


def upsert_repository(repo, first_commit_date: Optional[datetime] = None) -> dict:
    """
    Insert or update a repository keyed by full name.

    Args:
        repo: A GitHubRepository (any object with the same attributes).
        first_commit_date: Optional derived first-commit timestamp (insert only).

    Returns:
        The stored repository row as a dict.
    """
    conn = get_db_connection()
    cursor = conn.cursor()
    now = to_iso(_now())

    cursor.execute('''
        INSERT INTO repositories (
            github_id, owner, name, full_name, github_created_at, first_commit_date,
            updated_at, pushed_at, stars, forks, description, topics, updated_at_db
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(full_name) DO UPDATE SET
            github_id = excluded.github_id,
            stars = excluded.stars,
            forks = excluded.forks,
            updated_at = excluded.updated_at,
            pushed_at = excluded.pushed_at,
            description = excluded.description,
            topics = excluded.topics,
            updated_at_db = excluded.updated_at_db
    ''', (
        repo.id,
        repo.owner,
        repo.name,
        repo.full_name,
        to_iso(repo.created_at or _now()),
        to_iso(first_commit_date),
        to_iso(repo.updated_at),
        to_iso(repo.pushed_at),
        repo.stars,
        repo.forks,
        repo.description,
        json.dumps(list(repo.topics or [])),
        now,
    ))

    cursor.execute('SELECT * FROM repositories WHERE full_name = ?', (repo.full_name,))
    row = cursor.fetchone()
    conn.commit()
    conn.close()

    return _repo_row_to_dict(row)


def get_repository(repo_id: int) -> Optional[dict]:
    """Retrieve a repository by database id."""
    conn = get_db_connection()
    row = conn.execute('SELECT * FROM repositories WHERE id = ?', (repo_id,)).fetchone()
    conn.close()
    return _repo_row_to_dict(row) if row else None


def get_repository_by_full_name(full_name: str) -> Optional[dict]:
    """Retrieve a repository by its owner/name."""
    conn = get_db_connection()
    row = conn.execute('SELECT * FROM repositories WHERE full_name = ?', (full_name,)).fetchone()
    conn.close()
    return _repo_row_to_dict(row) if row else None


def get_repositories_by_owner(owner: str) -> List[dict]:
    """All repositories belonging to an account, newest first."""
    conn = get_db_connection()
    rows = conn.execute(
        'SELECT * FROM repositories WHERE owner = ? COLLATE NOCASE ORDER BY created_at DESC, id DESC',
        (owner,)
    ).fetchall()
    conn.close()
    return [_repo_row_to_dict(row) for row in rows]


def update_scan_status(full_name: str, status: str) -> bool:
    """
    Update the scan status of a repository.

    Args:
        full_name: owner/name of the repository.
        status: One of 'pending', 'processing', 'completed', 'failed'.

    Returns:
        True if a row was updated.
    """
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute(
        'UPDATE repositories SET scan_status = ?, updated_at_db = ? WHERE full_name = ?',
        (status, to_iso(_now()), full_name)
    )
    updated = cursor.rowcount > 0
    conn.commit()
    conn.close()
    return updated


def force_complete_owner_repos(owner: str) -> int:
    """
    Force every pending/processing repository of an account to 'completed'.

    This is the recovery sweep that keeps polling clients from waiting on
    a dead scan.

    Returns:
        Number of repositories changed.
    """
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute('''
        UPDATE repositories
        SET scan_status = ?, updated_at_db = ?
        WHERE owner = ? COLLATE NOCASE AND scan_status IN (?, ?)
    ''', (SCAN_STATUS_COMPLETED, to_iso(_now()), owner,
          SCAN_STATUS_PENDING, SCAN_STATUS_PROCESSING))
    changed = cursor.rowcount
    conn.commit()
    conn.close()
    return changed


def update_suspicion_score(full_name: str, score: int) -> None:
    """Set the suspicion score (0-100) of a repository."""
    conn = get_db_connection()
    conn.execute(
        'UPDATE repositories SET suspicion_score = ?, updated_at_db = ? WHERE full_name = ?',
        (score, to_iso(_now()), full_name)
    )
    conn.commit()
    conn.close()


def update_first_commit_date(full_name: str, first_commit_date: datetime) -> None:
    """Store the derived first-commit timestamp of a repository."""
    conn = get_db_connection()
    conn.execute(
        'UPDATE repositories SET first_commit_date = ?, updated_at_db = ? WHERE full_name = ?',
        (to_iso(first_commit_date), to_iso(_now()), full_name)
    )
    conn.commit()
    conn.close()


# =============================================================================
# COMMITS
# =============================================================================

def _commit_row_to_dict(row: sqlite3.Row) -> dict:
    result = dict(row)
    result['timestamp'] = parse_iso(result['timestamp'])
    return result


def replace_commits(repo_id: int, commits: Iterable) -> int:
    """
    Replace the stored commit history of a repository.

    Runs in a single transaction: all prior commits are deleted, then the
    new set is inserted in batches. Duplicate (repo, sha) pairs are ignored.
    On failure the transaction is rolled back and the error re-raised, since
    a half-replaced history would corrupt later matching.

    Args:
        repo_id: Database id of the repository.
        commits: GitHubCommit objects (sha, message, timestamp, author_name,
                 author_email, url).

    Returns:
        Number of commits inserted.
    """
    commits = list(commits)
    conn = get_db_connection()
    inserted = 0

    try:
        conn.execute('BEGIN')
        conn.execute('DELETE FROM commits WHERE repo_id = ?', (repo_id,))

        batch_size = Config.COMMIT_INSERT_BATCH
        for start in range(0, len(commits), batch_size):
            batch = commits[start:start + batch_size]
            rows = [
                (
                    repo_id,
                    commit.sha,
                    commit.message,
                    to_iso(commit.timestamp),
                    minute_key(commit.timestamp),
                    commit.author_name,
                    commit.author_email,
                    commit.url,
                )
                for commit in batch
            ]
            before = conn.total_changes
            conn.executemany('''
                INSERT OR IGNORE INTO commits (
                    repo_id, commit_sha, message, timestamp, timestamp_minute,
                    author_name, author_email, commit_url
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', rows)
            inserted += conn.total_changes - before

        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    return inserted


def get_commits_for_repo(repo_id: int) -> List[dict]:
    """All stored commits for a repository, oldest first."""
    conn = get_db_connection()
    rows = conn.execute(
        'SELECT * FROM commits WHERE repo_id = ? ORDER BY timestamp ASC, id ASC',
        (repo_id,)
    ).fetchall()
    conn.close()
    return [_commit_row_to_dict(row) for row in rows]


def count_commits(repo_id: Optional[int] = None) -> int:
    """Count stored commits for one repository, or for the whole index."""
    conn = get_db_connection()
    if repo_id is None:
        row = conn.execute('SELECT COUNT(*) AS count FROM commits').fetchone()
    else:
        row = conn.execute(
            'SELECT COUNT(*) AS count FROM commits WHERE repo_id = ?', (repo_id,)
        ).fetchone()
    conn.close()
    return row['count']


def find_matching_commits(message: str, timestamp: datetime,
                          exclude_repo_id: Optional[int] = None) -> List[dict]:
    """Stored commits with the same message and minute as the given commit."""
    conn = get_db_connection()
    query = 'SELECT * FROM commits WHERE message = ? AND timestamp_minute = ?'
    params: list = [message, minute_key(timestamp)]
    if exclude_repo_id is not None:
        query += ' AND repo_id != ?'
        params.append(exclude_repo_id)
    query += ' ORDER BY timestamp DESC'

    rows = conn.execute(query, params).fetchall()
    conn.close()
    return [_commit_row_to_dict(row) for row in rows]


def find_repos_sharing_commits(repo_id: int) -> List[int]:
    """
    Ids of other repositories sharing at least one (message, minute) pair
    with the given repository.
    """
    conn = get_db_connection()
    rows = conn.execute('''
        SELECT DISTINCT other.repo_id AS repo_id
        FROM commits own
        JOIN commits other
          ON other.message = own.message
         AND other.timestamp_minute = own.timestamp_minute
        WHERE own.repo_id = ? AND other.repo_id != ?
        ORDER BY other.repo_id
    ''', (repo_id, repo_id)).fetchall()
    conn.close()
    return [row['repo_id'] for row in rows]


def find_duplicate_commit_groups() -> List[dict]:
    """
    Group the whole commit index by (exact message, minute) and return the
    groups that span more than one repository.

    Returns:
        List of {'message', 'timestamp_minute', 'repo_ids'} dicts, groups
        touching the most repositories first.
    """
    conn = get_db_connection()
    rows = conn.execute('''
        SELECT message, timestamp_minute,
               GROUP_CONCAT(DISTINCT repo_id) AS repo_ids,
               COUNT(DISTINCT repo_id) AS repo_count
        FROM commits
        GROUP BY message, timestamp_minute
        HAVING COUNT(DISTINCT repo_id) > 1
        ORDER BY repo_count DESC
    ''').fetchall()
    conn.close()

    return [
        {
            'message': row['message'],
            'timestamp_minute': row['timestamp_minute'],
            'repo_ids': sorted(int(repo_id) for repo_id in row['repo_ids'].split(',')),
        }
        for row in rows
    ]


# =============================================================================
# MATCHES
# =============================================================================

def _match_row_to_dict(row: sqlite3.Row) -> dict:
    result = dict(row)
    result['commits_predate_repo'] = bool(result['commits_predate_repo'])
    if result.get('statistics'):
        result['statistics'] = json.loads(result['statistics'])
    if result.get('evidence'):
        result['evidence'] = json.loads(result['evidence'])
    return result


def upsert_match(repo1_id: int, repo2_id: int, statistics: Dict[str, Any],
                 evidence: Dict[str, Any]) -> dict:
    """
    Create or refresh the match between two repositories.

    The pair is stored with the lower id first so A<->B and B<->A collapse
    into one record. Workflow status is preserved on update.

    Args:
        statistics: MatchStatistics.to_dict() output.
        evidence: Sample commits and headline facts of both repositories.
    """
    id1, id2 = (repo1_id, repo2_id) if repo1_id < repo2_id else (repo2_id, repo1_id)
    now = to_iso(_now())

    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute('''
        INSERT INTO matches (
            repo1_id, repo2_id, matching_commits_count, match_percentage,
            confidence_score, confidence_level, commits_predate_repo,
            statistics, evidence, status, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(repo1_id, repo2_id) DO UPDATE SET
            matching_commits_count = excluded.matching_commits_count,
            match_percentage = excluded.match_percentage,
            confidence_score = excluded.confidence_score,
            confidence_level = excluded.confidence_level,
            commits_predate_repo = excluded.commits_predate_repo,
            statistics = excluded.statistics,
            evidence = excluded.evidence,
            updated_at = excluded.updated_at
    ''', (
        id1,
        id2,
        statistics['matchingCommits'],
        statistics['matchPercentage'],
        statistics['confidenceScore'],
        statistics['confidenceLevel'],
        1 if statistics['commitsPredateRepo2'] else 0,
        json.dumps(statistics),
        json.dumps(evidence),
        MATCH_STATUS_PENDING,
        now,
        now,
    ))

    cursor.execute('SELECT * FROM matches WHERE repo1_id = ? AND repo2_id = ?', (id1, id2))
    row = cursor.fetchone()
    conn.commit()
    conn.close()

    return _match_row_to_dict(row)


def get_match(match_id: int) -> Optional[dict]:
    """Retrieve a match by id."""
    conn = get_db_connection()
    row = conn.execute('SELECT * FROM matches WHERE id = ?', (match_id,)).fetchone()
    conn.close()
    return _match_row_to_dict(row) if row else None


def get_match_between(repo_a_id: int, repo_b_id: int) -> Optional[dict]:
    """Retrieve the match for an unordered pair of repositories."""
    id1, id2 = (repo_a_id, repo_b_id) if repo_a_id < repo_b_id else (repo_b_id, repo_a_id)
    conn = get_db_connection()
    row = conn.execute(
        'SELECT * FROM matches WHERE repo1_id = ? AND repo2_id = ?', (id1, id2)
    ).fetchone()
    conn.close()
    return _match_row_to_dict(row) if row else None


def get_matches_for_repo(repo_id: int) -> List[dict]:
    """All matches touching a repository, highest confidence first."""
    conn = get_db_connection()
    rows = conn.execute('''
        SELECT * FROM matches
        WHERE repo1_id = ? OR repo2_id = ?
        ORDER BY confidence_score DESC
    ''', (repo_id, repo_id)).fetchall()
    conn.close()
    return [_match_row_to_dict(row) for row in rows]


def get_high_confidence_matches(limit: int = 100, min_score: Optional[int] = None) -> List[dict]:
    """Matches at or above the suspicion threshold, highest confidence first."""
    if min_score is None:
        min_score = Config.SUSPICION_THRESHOLD
    conn = get_db_connection()
    rows = conn.execute('''
        SELECT * FROM matches
        WHERE confidence_score >= ?
        ORDER BY confidence_score DESC
        LIMIT ?
    ''', (min_score, limit)).fetchall()
    conn.close()
    return [_match_row_to_dict(row) for row in rows]


def update_match_status(match_id: int, status: str) -> bool:
    """Set the workflow status of a match ('pending' or 'verified')."""
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute(
        'UPDATE matches SET status = ?, updated_at = ? WHERE id = ?',
        (status, to_iso(_now()), match_id)
    )
    updated = cursor.rowcount > 0
    conn.commit()
    conn.close()
    return updated


def count_matches() -> int:
    conn = get_db_connection()
    row = conn.execute('SELECT COUNT(*) AS count FROM matches').fetchone()
    conn.close()
    return row['count']


# =============================================================================
# BLACKLIST
# =============================================================================

def _blacklist_row_to_dict(row: sqlite3.Row) -> dict:
    result = dict(row)
    if result.get('evidence_summary'):
        result['evidence_summary'] = json.loads(result['evidence_summary'])
    result['account_status'] = result.get('account_status') or ACCOUNT_STATUS_UNKNOWN
    return result


def upsert_blacklist_entry(username: str, github_user_id: Optional[int] = None) -> dict:
    """Register (or touch) a suspected copier account."""
    now = to_iso(_now())
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute('''
        INSERT INTO blacklist (github_username, github_user_id, first_detected_at, last_updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(github_username) DO UPDATE SET
            last_updated_at = excluded.last_updated_at,
            github_user_id = COALESCE(excluded.github_user_id, blacklist.github_user_id)
    ''', (username, github_user_id, now, now))

    cursor.execute('SELECT * FROM blacklist WHERE github_username = ?', (username,))
    row = cursor.fetchone()
    conn.commit()
    conn.close()
    return _blacklist_row_to_dict(row)


def get_blacklist_entry(username: str) -> Optional[dict]:
    conn = get_db_connection()
    row = conn.execute(
        'SELECT * FROM blacklist WHERE github_username = ?', (username,)
    ).fetchone()
    conn.close()
    return _blacklist_row_to_dict(row) if row else None


def update_blacklist_stats(username: str) -> Optional[dict]:
    """
    Recompute an account's aggregates from every qualifying match.

    A match qualifies when it scores at or above the suspicion threshold and
    one of its repositories is owned by the account.

    Returns:
        The refreshed blacklist entry, or None if the account is not listed.
    """
    conn = get_db_connection()
    cursor = conn.cursor()

    cursor.execute('''
        SELECT
            COUNT(DISTINCT CASE WHEN r.owner = ? COLLATE NOCASE THEN r.id END) AS stolen_repos,
            COUNT(DISTINCT m.id) AS total_matches,
            MAX(m.confidence_score) AS max_confidence
        FROM matches m
        JOIN repositories r ON (r.id = m.repo1_id OR r.id = m.repo2_id)
        WHERE m.confidence_score >= ?
          AND EXISTS (
              SELECT 1 FROM repositories r2
              WHERE (r2.id = m.repo1_id OR r2.id = m.repo2_id)
                AND r2.owner = ? COLLATE NOCASE
          )
    ''', (username, Config.SUSPICION_THRESHOLD, username))
    stats = cursor.fetchone()

    cursor.execute('''
        UPDATE blacklist
        SET total_stolen_repos = ?,
            total_matches = ?,
            highest_confidence_score = ?,
            last_updated_at = ?
        WHERE github_username = ?
    ''', (
        stats['stolen_repos'] or 0,
        stats['total_matches'] or 0,
        stats['max_confidence'] or 0,
        to_iso(_now()),
        username,
    ))

    # Link this account's qualifying matches to its entry
    cursor.execute('''
        UPDATE matches
        SET blacklist_id = (SELECT id FROM blacklist WHERE github_username = ?)
        WHERE confidence_score >= ?
          AND EXISTS (
              SELECT 1 FROM repositories r
              WHERE (r.id = matches.repo1_id OR r.id = matches.repo2_id)
                AND r.owner = ? COLLATE NOCASE
          )
    ''', (username, Config.BLACKLIST_THRESHOLD, username))

    cursor.execute('SELECT * FROM blacklist WHERE github_username = ?', (username,))
    row = cursor.fetchone()
    conn.commit()
    conn.close()
    return _blacklist_row_to_dict(row) if row else None


def get_blacklist(page: int = 1, limit: int = 50, search: Optional[str] = None,
                  status: Optional[str] = None) -> dict:
    """
    Paginated blacklist listing.

    Returns:
        Dict with 'scammers' (list of entries) and 'total'.
    """
    page = max(page, 1)
    offset = (page - 1) * limit
    where = 'WHERE 1=1'
    params: list = []

    if search:
        where += ' AND github_username LIKE ?'
        params.append(f'%{search}%')
    if status:
        where += ' AND status = ?'
        params.append(status)

    conn = get_db_connection()
    total = conn.execute(f'SELECT COUNT(*) AS total FROM blacklist {where}', params).fetchone()['total']
    rows = conn.execute(f'''
        SELECT * FROM blacklist {where}
        ORDER BY highest_confidence_score DESC, total_stolen_repos DESC, first_detected_at DESC
        LIMIT ? OFFSET ?
    ''', params + [limit, offset]).fetchall()
    conn.close()

    return {
        'scammers': [_blacklist_row_to_dict(row) for row in rows],
        'total': total,
    }


def get_blacklist_stats() -> dict:
    """Aggregate counters over confirmed blacklist entries."""
    conn = get_db_connection()
    row = conn.execute('''
        SELECT
            COUNT(*) AS total_scammers,
            SUM(total_stolen_repos) AS total_stolen_repos,
            SUM(total_matches) AS total_matches,
            SUM(CASE WHEN account_status = 'eliminated' THEN 1 ELSE 0 END) AS eliminated
        FROM blacklist
        WHERE status = 'confirmed'
    ''').fetchone()
    conn.close()

    return {
        'totalScammers': row['total_scammers'] or 0,
        'totalStolenRepos': row['total_stolen_repos'] or 0,
        'totalMatches': row['total_matches'] or 0,
        'eliminatedAccounts': row['eliminated'] or 0,
    }


def get_scammer_with_repos(username: str) -> Optional[dict]:
    """
    A blacklist entry together with the account's repositories that appear
    in qualifying matches, and what each one matched against.
    """
    entry = get_blacklist_entry(username)
    if not entry:
        return None

    conn = get_db_connection()
    rows = conn.execute('''
        SELECT
            own.full_name, own.stars, own.github_created_at,
            other.full_name AS matched_against,
            m.id AS match_id, m.confidence_score, m.matching_commits_count
        FROM matches m
        JOIN repositories own ON (own.id = m.repo1_id OR own.id = m.repo2_id)
        JOIN repositories other
          ON (other.id = m.repo1_id OR other.id = m.repo2_id) AND other.id != own.id
        WHERE own.owner = ? COLLATE NOCASE AND m.confidence_score >= ?
        ORDER BY m.confidence_score DESC
    ''', (username, Config.SUSPICION_THRESHOLD)).fetchall()
    conn.close()

    entry['stolen_repos'] = [
        {
            'full_name': row['full_name'],
            'stars': row['stars'],
            'created_at': row['github_created_at'],
            'matched_against': row['matched_against'],
            'match_id': row['match_id'],
            'confidence_score': row['confidence_score'],
            'matching_commits': row['matching_commits_count'],
        }
        for row in rows
    ]
    return entry


def update_blacklist_account_status(username: str, account_status: str) -> bool:
    """Record the result of an account-existence check."""
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute('''
        UPDATE blacklist
        SET account_status = ?, account_checked_at = ?
        WHERE github_username = ?
    ''', (account_status, to_iso(_now()), username))
    updated = cursor.rowcount > 0
    conn.commit()
    conn.close()
    return updated


# =============================================================================
# COMMUNITY REPORTS
# =============================================================================

def save_report(original_repo_url: str, suspected_fake_repo_url: str,
                reporter_email: Optional[str] = None, reporter_name: Optional[str] = None,
                evidence: Optional[str] = None) -> int:
    """
    Save a community theft report.

    Returns:
        The ID of the newly created report.
    """
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute('''
        INSERT INTO reports (
            original_repo_url, suspected_fake_repo_url,
            reporter_email, reporter_name, evidence, status
        ) VALUES (?, ?, ?, ?, ?, 'pending')
    ''', (original_repo_url, suspected_fake_repo_url, reporter_email, reporter_name, evidence))
    report_id = cursor.lastrowid
    conn.commit()
    conn.close()
    return report_id


def get_report(report_id: int) -> Optional[dict]:
    conn = get_db_connection()
    row = conn.execute('SELECT * FROM reports WHERE id = ?', (report_id,)).fetchone()
    conn.close()
    return dict(row) if row else None


def get_recent_reports(limit: int = 100) -> list:
    conn = get_db_connection()
    rows = conn.execute(
        'SELECT * FROM reports ORDER BY created_at DESC, id DESC LIMIT ?', (limit,)
    ).fetchall()
    conn.close()
    return [dict(row) for row in rows]


# =============================================================================
# SCAN JOB QUEUE
# =============================================================================

def enqueue_scan_job(owner: str, repo: str, priority: int = 0,
                     max_attempts: Optional[int] = None) -> bool:
    """
    Add a repository scan job keyed by owner/repo.

    A job that is still waiting, active or delayed collapses the new request.
    A finished (completed/failed) job with the same key is re-armed.

    Returns:
        True if a job was queued, False if a live duplicate already exists.
    """
    if max_attempts is None:
        max_attempts = Config.QUEUE_MAX_ATTEMPTS
    job_key = f'{owner}/{repo}'

    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute('''
        INSERT INTO scan_jobs (job_key, owner, repo, priority, status, attempts, max_attempts, next_run_at)
        VALUES (?, ?, ?, ?, ?, 0, ?, 0)
        ON CONFLICT(job_key) DO UPDATE SET
            priority = excluded.priority,
            status = excluded.status,
            attempts = 0,
            max_attempts = excluded.max_attempts,
            next_run_at = 0,
            last_error = NULL,
            result = NULL,
            updated_at = CURRENT_TIMESTAMP
        WHERE scan_jobs.status NOT IN (?, ?, ?)
    ''', (job_key, owner, repo, priority, JOB_STATUS_WAITING, max_attempts, *LIVE_JOB_STATUSES))
    queued = cursor.rowcount > 0
    conn.commit()
    conn.close()
    return queued


def claim_next_scan_job(now: float) -> Optional[dict]:
    """
    Atomically pick the next due job and mark it active.

    Highest priority first, then oldest. Delayed jobs become due once their
    next_run_at has passed.
    """
    conn = get_db_connection()
    try:
        conn.execute('BEGIN IMMEDIATE')
        row = conn.execute('''
            SELECT * FROM scan_jobs
            WHERE status IN (?, ?) AND next_run_at <= ?
            ORDER BY priority DESC, id ASC
            LIMIT 1
        ''', (JOB_STATUS_WAITING, JOB_STATUS_DELAYED, now)).fetchone()

        if row is None:
            conn.commit()
            return None

        conn.execute('''
            UPDATE scan_jobs
            SET status = ?, attempts = attempts + 1, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
        ''', (JOB_STATUS_ACTIVE, row['id']))
        claimed = conn.execute('SELECT * FROM scan_jobs WHERE id = ?', (row['id'],)).fetchone()
        conn.commit()
        return dict(claimed)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def complete_scan_job(job_id: int, result: Optional[dict] = None) -> None:
    conn = get_db_connection()
    conn.execute('''
        UPDATE scan_jobs
        SET status = ?, result = ?, last_error = NULL, updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
    ''', (JOB_STATUS_COMPLETED, json.dumps(result) if result is not None else None, job_id))
    conn.commit()
    conn.close()


def fail_scan_job(job_id: int, error: str, retry_at: Optional[float] = None) -> None:
    """Record a failed attempt; delay it for a retry or mark it failed for good."""
    status = JOB_STATUS_DELAYED if retry_at is not None else JOB_STATUS_FAILED
    conn = get_db_connection()
    conn.execute('''
        UPDATE scan_jobs
        SET status = ?, last_error = ?, next_run_at = ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
    ''', (status, error, retry_at or 0, job_id))
    conn.commit()
    conn.close()


def get_scan_job(job_key: str) -> Optional[dict]:
    conn = get_db_connection()
    row = conn.execute('SELECT * FROM scan_jobs WHERE job_key = ?', (job_key,)).fetchone()
    conn.close()
    return dict(row) if row else None


def get_scan_job_counts() -> dict:
    """Number of jobs in each queue state."""
    counts = {status: 0 for status in (
        JOB_STATUS_WAITING, JOB_STATUS_ACTIVE, JOB_STATUS_DELAYED,
        JOB_STATUS_COMPLETED, JOB_STATUS_FAILED,
    )}
    conn = get_db_connection()
    rows = conn.execute(
        'SELECT status, COUNT(*) AS count FROM scan_jobs GROUP BY status'
    ).fetchall()
    conn.close()
    for row in rows:
        if row['status'] in counts:
            counts[row['status']] = row['count']
    return counts


def requeue_active_scan_jobs() -> int:
    """
    Return jobs left 'active' by a dead worker to 'waiting'. Used on startup.

    Returns:
        Number of jobs requeued.
    """
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute('''
        UPDATE scan_jobs
        SET status = ?, updated_at = CURRENT_TIMESTAMP
        WHERE status = ?
    ''', (JOB_STATUS_WAITING, JOB_STATUS_ACTIVE))
    count = cursor.rowcount
    conn.commit()
    conn.close()
    return count


# =============================================================================
# SYSTEM STATS
# =============================================================================

def increment_daily_stat(stat_name: str, amount: int = 1) -> None:
    """
    Increment a daily counter (repos_indexed, matches_recorded, profile_scans, api_calls).
    """
    allowed = {'repos_indexed', 'matches_recorded', 'profile_scans', 'api_calls'}
    if stat_name not in allowed:
        raise ValueError(f"Unknown stat: {stat_name}")

    today = _now().strftime('%Y-%m-%d')
    conn = get_db_connection()
    conn.execute('INSERT OR IGNORE INTO system_stats (date) VALUES (?)', (today,))
    conn.execute(
        f'UPDATE system_stats SET {stat_name} = {stat_name} + ? WHERE date = ?',
        (amount, today)
    )
    conn.commit()
    conn.close()


def get_stats_last_n_days(days: int = 30) -> list:
    """Daily counters for the last N days, oldest first."""
    since = (_now() - timedelta(days=days)).strftime('%Y-%m-%d')
    conn = get_db_connection()
    rows = conn.execute(
        'SELECT * FROM system_stats WHERE date >= ? ORDER BY date ASC', (since,)
    ).fetchall()
    conn.close()
    return [dict(row) for row in rows]


def get_system_stats() -> dict:
    """Totals across the whole index."""
    conn = get_db_connection()
    repos = conn.execute('SELECT COUNT(*) AS total FROM repositories').fetchone()['total']
    commits = conn.execute('SELECT COUNT(*) AS total FROM commits').fetchone()['total']
    matches = conn.execute('SELECT COUNT(*) AS total FROM matches').fetchone()['total']
    suspicious = conn.execute(
        'SELECT COUNT(*) AS total FROM matches WHERE confidence_score >= ?',
        (Config.SUSPICION_THRESHOLD,)
    ).fetchone()['total']
    conn.close()

    return {
        'totalRepos': repos,
        'totalCommits': commits,
        'totalMatches': matches,
        'suspiciousMatches': suspicious,
    }
