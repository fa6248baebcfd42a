"""
markovbot - a Matrix chat bot that learns how its rooms talk.

This package provides:
- A reconnecting Matrix session that joins the configured rooms
- A per-scope token-chain language model persisted in SQLite
- A response policy deciding when the bot speaks up
"""

__version__ = "0.1.0"
__author__ = "markovbot contributors"
