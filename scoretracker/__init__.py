"""
Score Tracker - team standings for activity-based events.

This package provides:
- SQLite store with declarative score, name and uniqueness constraints
- Session authentication behind a single shared admin password
- Expiring, use-limited QR code login tokens
- Web pages and a JSON API for activities, teams, scores and standings
"""

from .config import TrackerConfig
from .database import DatabaseManager
from .auth import InMemorySessionStore, Session, SessionAuthenticator, SessionStore
from .qr_tokens import IssuedToken, QRToken, QRTokenService
from .web_handlers import WebHandlers
from .tracker import ScoreTrackerSystem

__version__ = "1.0.0"
__author__ = "Score Tracker Contributors"

__all__ = [
    "TrackerConfig",
    "DatabaseManager",
    "Session",
    "SessionStore",
    "InMemorySessionStore",
    "SessionAuthenticator",
    "IssuedToken",
    "QRToken",
    "QRTokenService",
    "WebHandlers",
    "ScoreTrackerSystem",
]
