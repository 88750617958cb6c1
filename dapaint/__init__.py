"""DaPaint match lifecycle and matchmaking engine."""

__version__ = "0.1.0"
