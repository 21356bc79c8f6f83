"""
Command-line entry point for corpus discovery.

    thief-discovery run                   All discovery methods, then matching
    thief-discovery popular               Popular repositories only
    thief-discovery trending              Recently created repositories only
    thief-discovery match                 Matching pass only
    thief-discovery profile <username>    Analyze one account's publishing pattern
    thief-discovery continuous [minutes]  Repeat `run` every N minutes
    thief-discovery find-scams [name...]  Index look-alikes and report copies
"""
import argparse
import json
import sys
import threading
from typing import List, Optional

from database import init_db
from discovery.worker import find_scams, run_continuous_discovery, run_discovery
from scanner.github_client import GitHubClient


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='thief-discovery',
        description='Grow the commit index and look for copied repositories',
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('run', help='Run all discovery methods')
    subparsers.add_parser('popular', help='Discover popular repositories only')
    subparsers.add_parser('trending', help='Discover trending repositories only')
    subparsers.add_parser('match', help='Run the matching pass only')

    profile = subparsers.add_parser('profile', help='Scan a specific profile')
    profile.add_argument('username')

    continuous = subparsers.add_parser('continuous', help='Run discovery repeatedly')
    continuous.add_argument('minutes', nargs='?', type=float, default=60,
                            help='Minutes between passes (default: 60)')

    scams = subparsers.add_parser('find-scams', help='Report copies of frequently cloned projects')
    scams.add_argument('names', nargs='*', help='Repository names to search for look-alikes of')
    return parser


# command -> run_discovery() switches
PASS_OPTIONS = {
    'run': {},
    'popular': {'discover_popular': True, 'discover_trending': False, 'run_matching': False},
    'trending': {'discover_popular': False, 'discover_trending': True, 'run_matching': False},
    'match': {'discover_popular': False, 'discover_trending': False, 'run_matching': True},
}


def main(argv: Optional[List[str]] = None, client: Optional[GitHubClient] = None) -> int:
    args = build_parser().parse_args(argv)
    init_db()

    if args.command == 'continuous':
        stop_event = threading.Event()
        try:
            run_continuous_discovery(stop_event, interval_minutes=args.minutes, client=client)
        except KeyboardInterrupt:
            stop_event.set()
            print("[DISCOVERY] Continuous discovery stopped")
        return 0

    if args.command == 'find-scams':
        find_scams(args.names or None, client=client)
        return 0

    if args.command == 'profile':
        summary = run_discovery(discover_popular=False, discover_trending=False, run_matching=False,
                                suspicious_profiles=[args.username], client=client)
    else:
        summary = run_discovery(client=client, **PASS_OPTIONS[args.command])

    print(json.dumps(summary, indent=2, default=str))
    return 0


if __name__ == '__main__':
    sys.exit(main())
