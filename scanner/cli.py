"""
Command-line entry point for one-off scans.

    thief-scanner scan <owner> <repo>    Index a repository and match it
    thief-scanner scan-url <repo-url>    Same, from a GitHub URL
    thief-scanner match                  Matching pass over every indexed repository
    thief-scanner clear-cache            Drop cached GitHub responses
"""
import argparse
import sys
from typing import List, Optional

import requests

from cache import clear_cache
from database import init_db
from scanner.models import RepoScanResult
from scanner.repo_scanner import RepoScanner


def _print_result(result: RepoScanResult) -> None:
    print(f"[SCANNER] {result.full_name}: {len(result.matches)} matches "
          f"({result.candidates_checked} repositories compared)")
    for match in result.matches:
        print(f"[SCANNER]   {match.full_name}: {match.confidence_score}/100 "
              f"({match.confidence_level}), {match.matching_commits} matching commits")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='thief-scanner',
        description='Index GitHub repositories and match copied commit histories',
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    scan = subparsers.add_parser('scan', help='Scan a specific repository')
    scan.add_argument('owner')
    scan.add_argument('repo')

    scan_url = subparsers.add_parser('scan-url', help='Scan a repository from its GitHub URL')
    scan_url.add_argument('url')

    subparsers.add_parser('match', help='Run the matching pass over all indexed repositories')
    subparsers.add_parser('clear-cache', help='Drop cached GitHub responses')
    return parser


def main(argv: Optional[List[str]] = None, scanner: Optional[RepoScanner] = None) -> int:
    args = build_parser().parse_args(argv)
    init_db()

    if args.command == 'clear-cache':
        print(f"[CACHE] Cleared {clear_cache()} cached responses")
        return 0

    scanner = scanner or RepoScanner()

    if args.command == 'match':
        matched = scanner.run_matching()
        print(f"[SCANNER] Matching pass recorded {matched} matches")
        return 0

    try:
        if args.command == 'scan':
            result = scanner.scan_repository(args.owner, args.repo)
        else:
            result = scanner.scan_from_url(args.url)
    except ValueError as e:
        print(f"[SCANNER] {e}")
        return 1
    except requests.RequestException as e:
        print(f"[SCANNER] Scan failed: {e}")
        return 1

    _print_result(result)
    return 0


if __name__ == '__main__':
    sys.exit(main())
