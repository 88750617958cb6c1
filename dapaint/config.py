import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Engine configuration settings"""

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///dapaint.db')

    # Logging settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    LOG_TO_FILE = os.getenv('LOG_TO_FILE', 'True').lower() == 'true'

    # Match lifecycle settings
    FORFEIT_WINDOW_HOURS = int(os.getenv('FORFEIT_WINDOW_HOURS', 48))  # Leaving this close to start = forfeit
    RESULT_WINDOW_HOURS = int(os.getenv('RESULT_WINDOW_HOURS', 24))    # Result submissions allowed after start

    # Score consistency settings
    SCORE_UPDATE_MAX_RETRIES = int(os.getenv('SCORE_UPDATE_MAX_RETRIES', 3))

    # Feed settings
    FEED_CACHE_TTL_SECONDS = int(os.getenv('FEED_CACHE_TTL_SECONDS', 300))
    FEED_PAGE_SIZE = int(os.getenv('FEED_PAGE_SIZE', 20))

    @classmethod
    def validate(cls):
        """Validate that configuration values are usable"""
        if not cls.DATABASE_URL:
            raise ValueError("DATABASE_URL is required")
        if cls.FORFEIT_WINDOW_HOURS <= 0:
            raise ValueError("FORFEIT_WINDOW_HOURS must be positive")
        if cls.RESULT_WINDOW_HOURS <= 0:
            raise ValueError("RESULT_WINDOW_HOURS must be positive")
        if cls.SCORE_UPDATE_MAX_RETRIES <= 0:
            raise ValueError("SCORE_UPDATE_MAX_RETRIES must be positive")
        if cls.FEED_PAGE_SIZE <= 0:
            raise ValueError("FEED_PAGE_SIZE must be positive")
