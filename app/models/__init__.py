"""
Tablemate — ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from app.models.user import User, UserPreferences
from app.models.match import MatchScore
from app.models.meetup import Meetup, MeetupParticipant

__all__ = [
    "User",
    "UserPreferences",
    "MatchScore",
    "Meetup",
    "MeetupParticipant",
]
