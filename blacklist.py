"""
Blacklist of accounts found republishing copied repositories.

Entries are created by the matcher when a match reaches BLACKLIST_THRESHOLD.
This module adds account-existence checks on top of the stored entries:
GitHub removes many of these accounts, and an eliminated account is
reported as such.
"""
import time
from typing import Optional

from database import (
    get_blacklist,
    get_blacklist_entry,
    get_blacklist_stats,
    get_scammer_with_repos,
    update_blacklist_account_status,
)
from scanner.github_client import GitHubClient


ACCOUNT_CHECK_DELAY_SECONDS = 0.1


def list_scammers(page: int = 1, limit: int = 50, search: Optional[str] = None,
                  status: Optional[str] = None) -> dict:
    """Paginated blacklist with the pagination envelope the API returns."""
    limit = max(1, min(limit, 100))
    page = max(1, page)
    result = get_blacklist(page=page, limit=limit, search=search, status=status)
    total = result['total']
    return {
        'scammers': result['scammers'],
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'totalPages': (total + limit - 1) // limit,
        },
    }


def get_stats() -> dict:
    return get_blacklist_stats()


def get_scammer(username: str) -> Optional[dict]:
    """A blacklist entry with the repositories that got it listed."""
    return get_scammer_with_repos(username)


def check_and_update_account_status(username: str,
                                    client: Optional[GitHubClient] = None) -> Optional[str]:
    """
    Check whether a listed account still exists on GitHub and record it.

    Returns:
        'active', 'eliminated' or 'unknown'; None if the account is not listed.
    """
    if get_blacklist_entry(username) is None:
        return None

    client = client or GitHubClient()
    account_status = client.check_account_status(username)
    update_blacklist_account_status(username, account_status)
    print(f"[BLACKLIST] {username}: {account_status}")
    return account_status


def refresh_all_account_statuses(client: Optional[GitHubClient] = None,
                                 sleep=time.sleep) -> dict:
    """
    Re-check every listed account, pausing briefly between calls.

    Returns:
        Dict with 'checked' and 'eliminated' counts.
    """
    client = client or GitHubClient()
    checked = 0
    eliminated = 0
    page = 1

    usernames = []
    while True:
        batch = get_blacklist(page=page, limit=100)
        usernames.extend(entry['github_username'] for entry in batch['scammers'])
        if len(usernames) >= batch['total'] or not batch['scammers']:
            break
        page += 1

    print(f"[BLACKLIST] Refreshing account status for {len(usernames)} accounts")
    for username in usernames:
        account_status = client.check_account_status(username)
        update_blacklist_account_status(username, account_status)
        checked += 1
        if account_status == 'eliminated':
            eliminated += 1
        sleep(ACCOUNT_CHECK_DELAY_SECONDS)

    print(f"[BLACKLIST] Checked {checked} accounts, {eliminated} eliminated")
    return {'checked': checked, 'eliminated': eliminated}
