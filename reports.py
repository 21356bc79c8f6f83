"""
Community theft reports.

A report names an original repository and a suspected copy. Both are
queued for scanning ahead of everything discovery found on its own.
"""
from typing import Optional

from config import Config
from database import save_report, get_report, get_recent_reports
from utils import parse_github_url


def create_report(original_repo_url: str, suspected_fake_repo_url: str,
                  queue=None,
                  reporter_email: Optional[str] = None,
                  reporter_name: Optional[str] = None,
                  evidence: Optional[str] = None) -> int:
    """
    Store a report and queue both repositories.

    Raises:
        ValueError: If either URL is not a GitHub repository URL.

    Returns:
        The new report ID.
    """
    # Validate both before storing anything
    original_owner, original_repo = parse_github_url(original_repo_url)
    suspect_owner, suspect_repo = parse_github_url(suspected_fake_repo_url)

    report_id = save_report(original_repo_url, suspected_fake_repo_url,
                            reporter_email=reporter_email, reporter_name=reporter_name,
                            evidence=evidence)
    print(f"[APP] Report #{report_id}: {suspect_owner}/{suspect_repo} copies {original_owner}/{original_repo}")

    if queue is not None:
        queue.add_scan_job(original_owner, original_repo, Config.REPORT_SCAN_PRIORITY)
        queue.add_scan_job(suspect_owner, suspect_repo, Config.REPORT_SCAN_PRIORITY)

    return report_id


def fetch_report(report_id: int) -> Optional[dict]:
    return get_report(report_id)


def list_reports(limit: int = 100) -> list:
    return get_recent_reports(limit)
