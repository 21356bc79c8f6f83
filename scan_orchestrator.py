"""
Profile scan orchestration.

A profile scan walks every repository of a GitHub account through four
session states:

    indexing  -> each repository pending -> processing, commits indexed
    scanning  -> GitHub-wide candidate discovery per repository; each one
                 is marked completed when its check ends, whatever happened
    matching  -> in-corpus matching pass over the whole index
    completed

Sessions are in-memory only (ScanSessionStore). Progress that polling
clients see comes from the sessions plus the repositories' scan statuses.
A session without progress for SESSION_STUCK_MINUTES, or a repository
left processing for REPO_STUCK_MINUTES, is force-completed on the next poll.
"""
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Any

from config import Config
from database import (
    get_repositories_by_owner,
    get_repository_by_full_name,
    get_matches_for_repo,
    get_repository,
    upsert_repository,
    update_scan_status,
    force_complete_owner_repos,
    increment_daily_stat,
    SCAN_STATUS_PENDING,
    SCAN_STATUS_PROCESSING,
    SCAN_STATUS_COMPLETED,
    SCAN_STATUS_FAILED,
)
from scanner.commit_indexer import CommitIndexer
from scanner.commit_matcher import CommitMatcher
from scanner.github_client import GitHubClient
from scanner.github_wide import GitHubWideMatcher
from scanner.models import GitHubRepository, ProfileScanResult
from utils import CancelToken, ScanCancelled


SESSION_INDEXING = 'indexing'
SESSION_SCANNING = 'scanning'
SESSION_MATCHING = 'matching'
SESSION_COMPLETED = 'completed'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# SESSIONS
# ============================================================

@dataclass
class ScanSession:
    """An active (or just finished) profile scan."""
    username: str
    started_at: datetime
    state: str = SESSION_INDEXING
    last_progress_at: Optional[datetime] = None
    cancel_token: Optional[CancelToken] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self.last_progress_at is None:
            self.last_progress_at = self.started_at


class ScanSessionStore:
    """
    Thread-safe map of username -> ScanSession.

    Lifecycle: start() on scan start (overwrites any previous session),
    set_state()/touch() as the scan advances, delete() when the scan dies.
    A completed session is kept for COMPLETED_SESSION_TTL_MINUTES so polls
    can report it, then dropped by prune().
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, ScanSession] = {}

    @staticmethod
    def _key(username: str) -> str:
        return username.lower()

    def start(self, username: str, now: Optional[datetime] = None,
              cancel_token: Optional[CancelToken] = None) -> ScanSession:
        now = now or _utcnow()
        self.prune(now)
        session = ScanSession(username=username, started_at=now, state=SESSION_INDEXING,
                              last_progress_at=now, cancel_token=cancel_token)
        with self._lock:
            previous = self._sessions.get(self._key(username))
            self._sessions[self._key(username)] = session
        if previous is not None and previous.cancel_token is not None:
            previous.cancel_token.cancel()
        return replace(session)

    def set_state(self, username: str, state: str, now: Optional[datetime] = None):
        with self._lock:
            session = self._sessions.get(self._key(username))
            if session is not None:
                session.state = state
                session.last_progress_at = now or _utcnow()

    def touch(self, username: str, now: Optional[datetime] = None):
        """Record progress without changing state."""
        with self._lock:
            session = self._sessions.get(self._key(username))
            if session is not None:
                session.last_progress_at = now or _utcnow()

    def attach_token(self, username: str, token: CancelToken):
        with self._lock:
            session = self._sessions.get(self._key(username))
            if session is not None:
                session.cancel_token = token

    def get(self, username: str) -> Optional[ScanSession]:
        """A copy of the session, or None."""
        with self._lock:
            session = self._sessions.get(self._key(username))
            return replace(session) if session is not None else None

    def delete(self, username: str):
        with self._lock:
            self._sessions.pop(self._key(username), None)

    def all(self) -> List[ScanSession]:
        with self._lock:
            return [replace(session) for session in self._sessions.values()]

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop completed sessions older than the TTL. Returns how many were dropped."""
        cutoff = (now or _utcnow()) - timedelta(minutes=Config.COMPLETED_SESSION_TTL_MINUTES)
        with self._lock:
            expired = [
                key for key, session in self._sessions.items()
                if session.state == SESSION_COMPLETED and session.last_progress_at < cutoff
            ]
            for key in expired:
                del self._sessions[key]
        return len(expired)


# ============================================================
# STATUS
# ============================================================

@dataclass
class ProfileScanStatus:
    """What a polling client sees for one account."""
    username: str
    status: str
    scan_status: str
    total_repos: int
    scanned_repos: int
    pending_repos: int
    processing_repos: int
    message: str
    results: Optional[Dict[str, Any]] = None

    @property
    def percentage(self) -> int:
        if self.total_repos == 0:
            return 0
        return round(self.scanned_repos / self.total_repos * 100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'username': self.username,
            'status': self.status,
            'scanStatus': self.scan_status,
            'progress': {
                'totalRepos': self.total_repos,
                'scannedRepos': self.scanned_repos,
                'pendingRepos': self.pending_repos,
                'processingRepos': self.processing_repos,
                'percentage': self.percentage,
            },
            'results': self.results,
            'message': self.message,
        }


def _count_statuses(repos: List[dict]) -> Dict[str, int]:
    counts = {SCAN_STATUS_PENDING: 0, SCAN_STATUS_PROCESSING: 0, SCAN_STATUS_COMPLETED: 0}
    for repo in repos:
        if repo['scan_status'] in counts:
            counts[repo['scan_status']] += 1
    return counts


def _build_results(repos: List[dict]) -> Dict[str, Any]:
    """Aggregate match results over an account's repositories."""
    total_matches = 0
    suspicious = []

    for repo in repos:
        matches = get_matches_for_repo(repo['id'])
        if not matches:
            continue
        total_matches += len(matches)

        details = []
        for match in matches:
            other_id = match['repo2_id'] if match['repo1_id'] == repo['id'] else match['repo1_id']
            other = get_repository(other_id)
            details.append({
                'matchedRepo': other['full_name'] if other else 'Unknown',
                'confidence': match['confidence_score'],
            })

        # get_matches_for_repo returns highest confidence first
        highest = details[0]
        if highest['confidence'] >= Config.SUSPICION_THRESHOLD:
            suspicious.append({
                'fullName': repo['full_name'],
                'suspicionScore': repo['suspicion_score'],
                'matches': len(matches),
                'highestConfidence': highest['confidence'],
                'matchedAgainst': highest['matchedRepo'],
                'allMatches': details,
            })

    suspicious.sort(key=lambda entry: entry['highestConfidence'], reverse=True)
    profile_score = 0
    if suspicious:
        mean = sum(entry['highestConfidence'] for entry in suspicious) / len(suspicious)
        profile_score = min(100, round(mean))

    return {
        'totalMatches': total_matches,
        'suspiciousRepos': len(suspicious),
        'profileScore': profile_score,
        'suspiciousReposList': suspicious,
    }


# ============================================================
# ORCHESTRATOR
# ============================================================

class ProfileScanOrchestrator:
    """Runs profile scans in the background and answers status polls."""

    def __init__(self, sessions: Optional[ScanSessionStore] = None,
                 client: Optional[GitHubClient] = None,
                 indexer: Optional[CommitIndexer] = None,
                 matcher: Optional[CommitMatcher] = None,
                 github_wide: Optional[GitHubWideMatcher] = None,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.sessions = sessions or ScanSessionStore()
        self.client = client or GitHubClient()
        self.indexer = indexer or CommitIndexer(self.client)
        self.matcher = matcher or CommitMatcher()
        self.github_wide = github_wide or GitHubWideMatcher(self.client, self.indexer, self.matcher)
        self._executor = executor
        self._executor_lock = threading.Lock()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=Config.PROFILE_SCAN_WORKERS,
                    thread_name_prefix='profile-scan',
                )
            return self._executor

    def start_profile_scan(self, username: str) -> Future:
        """
        Start a profile scan in the background and return immediately.

        The returned Future is a handle only. Progress and outcome are
        observed through get_profile_scan_status().
        """
        token = CancelToken(label=f"profile scan {username}")
        self.sessions.start(username, cancel_token=token)
        print(f"[PROFILE_SCAN] Starting GitHub-wide profile scan for: {username}")
        return self._get_executor().submit(self.run_profile_scan, username, token)

    def _reset_repos(self, repos: List[GitHubRepository]):
        for repo in repos:
            try:
                upsert_repository(repo)
                update_scan_status(repo.full_name, SCAN_STATUS_PENDING)
            except sqlite3.Error as e:
                print(f"[PROFILE_SCAN] Error resetting {repo.full_name}: {e}")

    def _index_repos(self, username: str, repos: List[GitHubRepository],
                     token: Optional[CancelToken]):
        indexed = 0
        for repo in repos:
            if token is not None:
                token.check()
            try:
                update_scan_status(repo.full_name, SCAN_STATUS_PROCESSING)
                # Left processing: the GitHub-wide pass completes it
                self.indexer.index_repository(repo.owner, repo.name, token=token,
                                              final_status=SCAN_STATUS_PROCESSING)
                indexed += 1
                print(f"[PROFILE_SCAN] Indexed {repo.full_name} ({indexed}/{len(repos)})")
            except ScanCancelled:
                raise
            except Exception as e:
                print(f"[PROFILE_SCAN] Error indexing {repo.full_name}: {e}")
                update_scan_status(repo.full_name, SCAN_STATUS_FAILED)
            self.sessions.touch(username)

    @staticmethod
    def _complete_all(username: str, repos: List[GitHubRepository]) -> int:
        changed = 0
        for repo in repos:
            record = get_repository_by_full_name(repo.full_name)
            if record is None:
                upsert_repository(repo)
                record = get_repository_by_full_name(repo.full_name)
            if record['scan_status'] != SCAN_STATUS_COMPLETED:
                update_scan_status(repo.full_name, SCAN_STATUS_COMPLETED)
                changed += 1
        return changed + force_complete_owner_repos(username)

    def run_profile_scan(self, username: str,
                         token: Optional[CancelToken] = None) -> Optional[ProfileScanResult]:
        """
        Execute a full profile scan. Never raises.

        Returns:
            The ProfileScanResult, or None if the scan died. A dead scan
            still leaves every repository of the account completed.
        """
        if self.sessions.get(username) is None:
            self.sessions.start(username, cancel_token=token)
        elif token is not None:
            self.sessions.attach_token(username, token)

        repos: List[GitHubRepository] = []
        try:
            increment_daily_stat('profile_scans')

            # 1. Enumerate and reset
            self.sessions.set_state(username, SESSION_INDEXING)
            repos = self.github_wide.list_user_repositories(username, token=token)
            print(f"[PROFILE_SCAN] Found {len(repos)} repos for {username}")
            self._reset_repos(repos)

            # 2. Index
            self._index_repos(username, repos, token)

            # 3. GitHub-wide discovery, each repo completed as it finishes
            self.sessions.set_state(username, SESSION_SCANNING)
            print(f"[PROFILE_SCAN] Searching all of GitHub for copies of {len(repos)} repos")
            scan_results = self.github_wide.scan_repositories(
                repos, token=token,
                on_repo_done=lambda result: self.sessions.touch(username),
            )
            result = ProfileScanResult(username=username, repos=scan_results)

            # 4. In-corpus matching
            self.sessions.set_state(username, SESSION_MATCHING)
            self.matcher.find_matches_for_all_repos(token=token)

            # 5. Final sweep
            swept = self._complete_all(username, repos)
            if swept:
                print(f"[PROFILE_SCAN] Final sweep marked {swept} repos completed")

            # 6. Done
            self.sessions.set_state(username, SESSION_COMPLETED)
            print(f"[PROFILE_SCAN] Profile scan complete for {username}: "
                  f"{result.total_matches} matches in {len(result.suspicious_repos)} repos")
            return result

        except ScanCancelled:
            print(f"[PROFILE_SCAN] Scan for {username} was cancelled")
            self._recover(username, repos)
            return None
        except Exception as e:
            print(f"[PROFILE_SCAN] Error scanning profile {username}: {e}")
            self._recover(username, repos)
            self.sessions.delete(username)
            return None

    def _recover(self, username: str, repos: List[GitHubRepository]):
        try:
            self._complete_all(username, repos)
        except sqlite3.Error as e:
            print(f"[PROFILE_SCAN] Error completing repos for {username}: {e}")

    # =========================================================================
    # POLLING
    # =========================================================================

    def _find_stuck(self, session: Optional[ScanSession], repos: List[dict], now: datetime):
        session_stuck = (
            session is not None
            and session.state != SESSION_COMPLETED
            and now - session.last_progress_at > timedelta(minutes=Config.SESSION_STUCK_MINUTES)
        )
        repo_cutoff = now - timedelta(minutes=Config.REPO_STUCK_MINUTES)
        stuck_repos = [
            repo for repo in repos
            if repo['scan_status'] == SCAN_STATUS_PROCESSING
            and repo['updated_at_db'] is not None
            and repo['updated_at_db'] < repo_cutoff
        ]
        return session_stuck, stuck_repos

    def get_profile_scan_status(self, username: str, now: Optional[datetime] = None) -> ProfileScanStatus:
        """
        Progress and (when ready) results of an account's profile scan.

        Runs stuck-scan recovery first: a stuck session or repository forces
        all pending/processing repositories to completed and the session to
        completed. A scan still running in the background is left to finish.
        """
        now = now or _utcnow()
        self.sessions.prune(now)
        session = self.sessions.get(username)
        repos = get_repositories_by_owner(username)

        session_stuck, stuck_repos = self._find_stuck(session, repos, now)
        if session_stuck or stuck_repos:
            print(f"[PROFILE_SCAN] Scan for {username} appears stuck, cleaning up...")
            force_complete_owner_repos(username)
            self.sessions.set_state(username, SESSION_COMPLETED, now=now)
            session = self.sessions.get(username)
            repos = get_repositories_by_owner(username)

        counts = _count_statuses(repos)
        total = len(repos)
        scanned = counts[SCAN_STATUS_COMPLETED]
        pending = counts[SCAN_STATUS_PENDING]
        processing = counts[SCAN_STATUS_PROCESSING]
        state = session.state if session else None

        is_scanning = (
            (session is not None and state != SESSION_COMPLETED)
            or processing > 0
            or (pending > 0 and scanned < total)
        )
        is_complete = not is_scanning and pending == 0 and processing == 0 and total > 0
        show_results = is_complete or (state == SESSION_SCANNING and scanned > 0)

        if is_scanning:
            if state == SESSION_INDEXING or (pending > 0 and scanned == 0):
                message = f"Indexing {total} repos... ({scanned}/{total} done)"
            elif state == SESSION_SCANNING or processing > 0 or (pending > 0 and scanned > 0):
                message = (f"Scanning {processing or pending} repos across ALL of GitHub... "
                           f"This will take several minutes. ({scanned}/{total} done)")
            else:
                message = f"Matching repositories... ({scanned}/{total} done)"
        elif is_complete:
            message = 'Scan complete!'
        else:
            message = 'No active scan. Click "Scan Profile" to start.'

        return ProfileScanStatus(
            username=username,
            status='completed' if is_complete else 'processing',
            scan_status=state or 'idle',
            total_repos=total,
            scanned_repos=scanned,
            pending_repos=pending,
            processing_repos=processing,
            message=message,
            results=_build_results(repos) if show_results else None,
        )

    def shutdown(self, wait: bool = False):
        """Cancel running scans and stop the executor."""
        for session in self.sessions.all():
            if session.cancel_token is not None:
                session.cancel_token.cancel()
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None
