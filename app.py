"""
Repo Thief Hunter - HTTP API

A Flask application exposing the theft detection engine: community
reports, single-repository scans via the job queue, GitHub-wide profile
scans, matches and the blacklist.
"""
import threading
from typing import Optional

from flask import Flask, request, jsonify
from pydantic import BaseModel, Field, ConfigDict, ValidationError

from config import Config
from database import (
    init_db,
    get_repository_by_full_name,
    get_repository,
    get_matches_for_repo,
    get_match,
    get_high_confidence_matches,
    get_system_stats,
    get_stats_last_n_days,
)
from blacklist import (
    list_scammers,
    get_stats as get_blacklist_summary,
    get_scammer,
    check_and_update_account_status,
    refresh_all_account_statuses,
)
from cache import get_cache_stats
from reports import create_report, fetch_report, list_reports
from scan_orchestrator import ProfileScanOrchestrator
from scan_queue import ScanQueue
from scanner.commit_matcher import CommitMatcher
from utils import get_rate_governor, parse_github_url


app = Flask(__name__)
app.config.from_object(Config)

init_db()


# =============================================================================
# REQUEST BODIES
# =============================================================================

class ReportInput(BaseModel):
    """Body of POST /api/reports."""
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    original_repo_url: str = Field(..., alias='originalRepoUrl', min_length=1)
    suspected_fake_repo_url: str = Field(..., alias='suspectedFakeRepoUrl', min_length=1)
    reporter_email: Optional[str] = Field(default=None, alias='reporterEmail')
    reporter_name: Optional[str] = Field(default=None, alias='reporterName')
    evidence: Optional[str] = Field(default=None, max_length=10000)


class ScanInput(BaseModel):
    """Body of POST /api/scan: either repoUrl or owner + repo."""
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    repo_url: Optional[str] = Field(default=None, alias='repoUrl')
    owner: Optional[str] = None
    repo: Optional[str] = None
    priority: int = Field(default=0, ge=0, le=1000)


def _error(message: str, status: int):
    return jsonify({'error': message}), status


def _validation_message(e: ValidationError) -> str:
    first = e.errors()[0]
    field_name = '.'.join(str(part) for part in first.get('loc', ())) or 'body'
    return f"Invalid {field_name}: {first.get('msg')}"


# =============================================================================
# SHARED SERVICES - created lazily and reused across requests
# =============================================================================

_scan_queue = None
_orchestrator = None
_services_lock = threading.Lock()


def get_scan_queue() -> ScanQueue:
    """Get or create the scan queue and start its worker."""
    global _scan_queue
    with _services_lock:
        if _scan_queue is None:
            _scan_queue = ScanQueue()
            _scan_queue.start()
            print("[APP] Scan queue worker started")
        return _scan_queue


def get_orchestrator() -> ProfileScanOrchestrator:
    """Get or create the profile scan orchestrator."""
    global _orchestrator
    with _services_lock:
        if _orchestrator is None:
            _orchestrator = ProfileScanOrchestrator()
        return _orchestrator


# =============================================================================
# HEALTH
# =============================================================================

@app.route('/health')
def health():
    return jsonify({'status': 'ok'})


# =============================================================================
# COMMUNITY REPORTS
# =============================================================================

@app.route('/api/reports', methods=['POST'])
def api_create_report():
    """Store a theft report and queue both repositories with high priority."""
    try:
        body = ReportInput.model_validate(request.get_json(silent=True) or {})
    except ValidationError:
        return _error('originalRepoUrl and suspectedFakeRepoUrl are required', 400)

    try:
        report_id = create_report(
            body.original_repo_url,
            body.suspected_fake_repo_url,
            queue=get_scan_queue(),
            reporter_email=body.reporter_email,
            reporter_name=body.reporter_name,
            evidence=body.evidence,
        )
    except ValueError as e:
        return _error(str(e), 400)

    return jsonify({'success': True, 'reportId': report_id})


@app.route('/api/reports/<int:report_id>')
def api_get_report(report_id: int):
    report = fetch_report(report_id)
    if not report:
        return _error('Report not found', 404)
    return jsonify(report)


@app.route('/api/reports')
def api_list_reports():
    limit = request.args.get('limit', 100, type=int)
    return jsonify(list_reports(limit))


# =============================================================================
# REPOSITORIES & MATCHES
# =============================================================================

def _repo_summary(repo: Optional[dict]) -> Optional[dict]:
    if not repo:
        return None
    return {
        'fullName': repo['full_name'],
        'stars': repo['stars'],
        'createdAt': repo['github_created_at'].isoformat() if repo['github_created_at'] else None,
    }


@app.route('/api/repos/<owner>/<repo>')
def api_get_repository(owner: str, repo: str):
    """An indexed repository with every match it takes part in."""
    record = get_repository_by_full_name(f"{owner}/{repo}")
    if not record:
        return _error('Repository not found in database', 404)

    matches = []
    for match in get_matches_for_repo(record['id']):
        other_id = match['repo2_id'] if match['repo1_id'] == record['id'] else match['repo1_id']
        other = get_repository(other_id)
        matches.append({
            'id': match['id'],
            'otherRepo': other['full_name'] if other else other_id,
            'matchingCommits': match['matching_commits_count'],
            'matchPercentage': match['match_percentage'],
            'confidenceScore': match['confidence_score'],
            'confidenceLevel': match['confidence_level'],
            'status': match['status'],
        })

    return jsonify({'repository': record, 'matches': matches})


@app.route('/api/matches')
def api_list_matches():
    limit = request.args.get('limit', 100, type=int)
    min_score = request.args.get('minScore', Config.SUSPICION_THRESHOLD, type=int)

    enriched = []
    for match in get_high_confidence_matches(limit=limit, min_score=min_score):
        match['repo1'] = _repo_summary(get_repository(match['repo1_id']))
        match['repo2'] = _repo_summary(get_repository(match['repo2_id']))
        enriched.append(match)
    return jsonify(enriched)


@app.route('/api/matches/<int:match_id>')
def api_get_match(match_id: int):
    match = get_match(match_id)
    if not match:
        return _error('Match not found', 404)
    return jsonify({
        'match': match,
        'repo1': get_repository(match['repo1_id']),
        'repo2': get_repository(match['repo2_id']),
    })


@app.route('/api/matches/<int:match_id>/verify', methods=['POST'])
def api_verify_match(match_id: int):
    try:
        verified = CommitMatcher().verify_match(match_id)
    except ValueError as e:
        return _error(str(e), 404)
    return jsonify({'matchId': match_id, 'verified': verified})


# =============================================================================
# SCANS
# =============================================================================

@app.route('/api/scan', methods=['POST'])
def api_queue_scan():
    """Queue a single-repository scan (repoUrl, or owner + repo)."""
    try:
        body = ScanInput.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return _error(_validation_message(e), 400)

    queue = get_scan_queue()
    try:
        if body.repo_url:
            owner, repo = parse_github_url(body.repo_url)
        elif body.owner and body.repo:
            owner, repo = body.owner, body.repo
        else:
            return _error('Either repoUrl or owner+repo required', 400)
        queued = queue.add_scan_job(owner, repo, body.priority)
    except ValueError as e:
        return _error(str(e), 400)

    message = f"Queued {owner}/{repo} for scanning" if queued else f"{owner}/{repo} is already queued"
    return jsonify({'success': True, 'queued': queued, 'message': message})


@app.route('/api/queue/stats')
def api_queue_stats():
    return jsonify(get_scan_queue().get_queue_stats())


@app.route('/api/profile/<username>/scan', methods=['POST'])
def api_profile_scan(username: str):
    """Start a GitHub-wide profile scan. Returns immediately."""
    get_orchestrator().start_profile_scan(username)
    return jsonify({
        'success': True,
        'message': f"GitHub-wide profile scan started for {username}. "
                   f"This will search ALL of GitHub for matching repos.",
        'status': 'processing',
    })


@app.route('/api/profile/<username>/status')
def api_profile_status(username: str):
    return jsonify(get_orchestrator().get_profile_scan_status(username).to_dict())


# =============================================================================
# STATS
# =============================================================================

@app.route('/api/stats')
def api_stats():
    """Index totals plus rate-limit, cache and queue state."""
    stats = get_system_stats()
    stats['rateLimits'] = get_rate_governor().get_status()
    stats['cache'] = get_cache_stats()
    stats['queue'] = get_scan_queue().get_queue_stats()
    return jsonify(stats)


@app.route('/api/stats/daily')
def api_daily_stats():
    days = request.args.get('days', 30, type=int)
    return jsonify({'stats': get_stats_last_n_days(days), 'days': days})


# =============================================================================
# BLACKLIST
# =============================================================================

@app.route('/api/blacklist/stats')
def api_blacklist_stats():
    return jsonify(get_blacklist_summary())


@app.route('/api/blacklist')
def api_blacklist():
    return jsonify(list_scammers(
        page=request.args.get('page', 1, type=int),
        limit=request.args.get('limit', 50, type=int),
        search=request.args.get('search') or None,
        status=request.args.get('status') or None,
    ))


@app.route('/api/blacklist/refresh-statuses', methods=['POST'])
def api_blacklist_refresh():
    return jsonify(refresh_all_account_statuses())


@app.route('/api/blacklist/<username>')
def api_blacklist_entry(username: str):
    scammer = get_scammer(username)
    if not scammer:
        return _error('Scammer not found', 404)
    return jsonify(scammer)


@app.route('/api/blacklist/<username>/check-status', methods=['POST'])
def api_blacklist_check(username: str):
    account_status = check_and_update_account_status(username)
    if account_status is None:
        return _error('Scammer not found', 404)
    return jsonify({'username': username, 'accountStatus': account_status})


@app.errorhandler(404)
def page_not_found(e):
    return _error('Not found', 404)


@app.errorhandler(500)
def internal_error(e):
    error_msg = str(e.original_exception) if hasattr(e, 'original_exception') else str(e)
    return _error(f'Internal server error: {error_msg}', 500)


if __name__ == '__main__':
    print("[APP] Starting application...")
    get_scan_queue()
    app.run(debug=Config.DEBUG, host='0.0.0.0', port=Config.PORT, threaded=True)
