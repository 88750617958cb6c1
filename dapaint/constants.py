"""
Engine-wide constants for the DaPaint match engine.

This module contains the fixed product rules used throughout the codebase.
Deployment knobs (windows, retries, TTLs) live in Config instead.
"""

class MatchConstants:
    """Constants related to match shapes and creation rules."""

    # Pairwise matches always seat exactly the host and one foe
    PAIRWISE_MAX_PARTICIPANTS = 2

    # Team rosters, both sides combined
    TEAM_MIN_PARTICIPANTS = 4
    TEAM_MAX_PARTICIPANTS = 20

    # Text limits for creation/edit params
    MAX_TITLE_LENGTH = 200
    MAX_POSTAL_CODE_LENGTH = 20

class DisplayConstants:
    """Fallback names used in user-facing messages."""

    DEFAULT_FOE_NAME = "Foe"
    DEFAULT_HOST_NAME = "Host"
    HOST_TEAM_NAME = "Host team"
    FOE_TEAM_NAME = "Foe team"

class CacheConstants:
    """Constants for caching behavior."""

    # Maximum cache size (number of entries)
    DEFAULT_MAX_CACHE_SIZE = 1000

class LeaderboardConstants:
    """Constants for leaderboard queries."""

    DEFAULT_LIMIT = 10
    MAX_LIMIT = 100
