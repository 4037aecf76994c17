"""Expose ORM models."""
from .candidate import Candidate
from .room import Room

__all__ = [
    "Candidate",
    "Room",
]
