"""
Configuration settings for the Repo Thief Hunter detection engine.

Detects repositories whose commit history was copied from another project
and republished as original work.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, default))


class Config:
    """Application configuration for the theft detection engine."""

    # Flask
    SECRET_KEY = os.getenv('FLASK_SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
    PORT = _env_int('PORT', 4000)

    # ============================================================
    # GITHUB ACCESS
    # ============================================================
    #
    # A single token gives 5,000 core requests/hour and 30 search
    # requests/minute. Search is the bottleneck for GitHub-wide
    # candidate discovery, so every outbound call is paced by the
    # RateGovernor in utils.py regardless of how many tokens exist.
    #
    # Token Requirements (minimum permissions):
    #   - public_repo (read public repositories)
    #
    # ============================================================

    GITHUB_TOKEN = os.getenv('GITHUB_TOKEN')
    GITHUB_API_BASE = os.getenv('GITHUB_API_BASE', 'https://api.github.com')
    USER_AGENT = 'RepoThief-Hunter/1.0'
    REQUEST_TIMEOUT = 30

    @staticmethod
    def get_github_tokens() -> list:
        """
        Load GitHub tokens from environment variables.

        Picks up, in order:
        1. GITHUB_TOKENS (comma-separated list)
        2. GITHUB_TOKEN (single token)
        3. GITHUB_TOKEN_* (e.g., GITHUB_TOKEN_2)

        Returns:
            List of unique tokens, or empty list if none configured.
        """
        tokens = []
        seen = set()

        def add_token(token):
            if token and token.strip() and token.strip() not in seen:
                seen.add(token.strip())
                tokens.append(token.strip())

        tokens_str = os.getenv('GITHUB_TOKENS', '')
        if tokens_str:
            for t in tokens_str.split(','):
                add_token(t)

        add_token(os.getenv('GITHUB_TOKEN'))

        for key, value in os.environ.items():
            if key.upper().startswith('GITHUB_TOKEN_'):
                add_token(value)

        return tokens

    GITHUB_TOKENS = get_github_tokens.__func__()  # Initialize at class load time

    # Database
    DATABASE_PATH = os.getenv(
        'DATABASE_PATH',
        os.path.join(os.path.dirname(__file__), 'data', 'repo_thief.db'),
    )

    # ============================================================
    # RATE GOVERNOR
    # ============================================================
    # Search API: 30 requests/minute -> one call every 2.1s (safe margin)
    # Core API: spaced 100ms apart to avoid bursts
    # ============================================================

    SEARCH_THROTTLE_SECONDS = _env_float('SEARCH_THROTTLE_SECONDS', 2.1)
    CORE_THROTTLE_SECONDS = _env_float('CORE_THROTTLE_SECONDS', 0.1)
    RATE_LIMIT_LOW_THRESHOLD = 10     # Slow down when remaining drops below this
    RATE_LIMIT_LOW_COOLDOWN = 5       # Seconds to pause when running low
    RATE_LIMIT_RESET_BUFFER = 1       # Seconds added to the reported reset time
    RATE_LIMIT_CHECK_FALLBACK = 1     # Seconds to pause when the quota check fails

    # ============================================================
    # COMMIT INDEX / MATCHING
    # ============================================================

    COMMIT_FETCH_LIMIT = _env_int('COMMIT_FETCH_LIMIT', 10000)
    COMMITS_PER_PAGE = 100
    COMMIT_INSERT_BATCH = 1000
    MESSAGE_MAX_LENGTH = 100
    SAMPLE_MATCHES_EVIDENCE = 5

    SUSPICION_THRESHOLD = 50   # Score that marks both repos suspicious
    BLACKLIST_THRESHOLD = 70   # Score that auto-registers the copier
    VERIFY_THRESHOLD = 70      # Score required to mark a match verified

    # ============================================================
    # GITHUB-WIDE CANDIDATE DISCOVERY
    # ============================================================
    # Each step is time-bounded; a slow candidate is abandoned and the
    # scan moves on to the next one.
    # ============================================================

    MAX_CANDIDATES = 10
    NAME_SEARCH_LIMIT = 30
    COMMIT_SEARCH_LIMIT = 30
    CANDIDATE_COMMIT_LIMIT = 1000
    SEED_COMMIT_LIMIT = 1000
    MIN_CANDIDATE_MATCHES = 3
    PROFILE_REPO_LIMIT = 100

    CANDIDATE_CHECK_TIMEOUT = _env_float('CANDIDATE_CHECK_TIMEOUT', 15)
    CANDIDATE_INDEX_TIMEOUT = _env_float('CANDIDATE_INDEX_TIMEOUT', 60)
    CANDIDATE_MATCH_TIMEOUT = _env_float('CANDIDATE_MATCH_TIMEOUT', 30)
    REPO_SCAN_TIMEOUT = _env_float('REPO_SCAN_TIMEOUT', 120)

    # Commits too generic to be worth searching for verbatim
    GENERIC_COMMIT_PREFIXES = ['update', 'fix', 'merge', 'initial']
    TRIVIAL_MESSAGE_PREFIXES = ['update readme', 'initial commit', 'first commit']

    # ============================================================
    # PROFILE SCANS
    # ============================================================

    PROFILE_SCAN_WORKERS = _env_int('PROFILE_SCAN_WORKERS', 2)
    SESSION_STUCK_MINUTES = 5
    REPO_STUCK_MINUTES = 10
    COMPLETED_SESSION_TTL_MINUTES = _env_int('COMPLETED_SESSION_TTL_MINUTES', 30)

    # ============================================================
    # SCAN QUEUE
    # ============================================================
    # One worker only: pacing state in the RateGovernor is process-wide.
    # ============================================================

    QUEUE_MAX_ATTEMPTS = 3
    QUEUE_BACKOFF_SECONDS = _env_float('QUEUE_BACKOFF_SECONDS', 5)
    QUEUE_POLL_SECONDS = _env_float('QUEUE_POLL_SECONDS', 2)
    REPORT_SCAN_PRIORITY = 100
    PROFILE_SCAN_PRIORITY = 30
    TRENDING_SCAN_PRIORITY = 20
    POPULAR_SCAN_PRIORITY = 10

    # ============================================================
    # RESPONSE CACHING
    # ============================================================
    # Only repository metadata and search results are cached. Commit
    # lists are always fetched fresh since history can be rewritten.
    # ============================================================

    REDIS_URL = os.getenv('REDIS_URL')  # e.g., redis://localhost:6379/0
    CACHE_ENABLED = os.getenv('CACHE_ENABLED', 'true').lower() == 'true'
    CACHE_TTL_REPO_METADATA = _env_int('CACHE_TTL_REPO_METADATA', 3600)   # 1 hour
    CACHE_TTL_SEARCH = _env_int('CACHE_TTL_SEARCH', 1800)                 # 30 minutes
    CACHE_FALLBACK_DIR = os.getenv(
        'CACHE_FALLBACK_DIR',
        os.path.join(os.path.dirname(__file__), 'data', 'cache'),
    )

    # ============================================================
    # CORPUS DISCOVERY
    # ============================================================

    DISCOVERY_LANGUAGES = ['javascript', 'typescript', 'python', 'go', 'rust', 'java']
    DISCOVERY_MIN_STARS = 100
    DISCOVERY_INTERVAL_MINUTES = 60
    TRENDING_CREATED_AFTER = os.getenv('TRENDING_CREATED_AFTER', '2024-01-01')
    SCAM_SEARCH_TERMS = [
        'javascript-algorithms',
        'awesome-chatgpt-prompts',
        '30-seconds-of-code',
    ]
