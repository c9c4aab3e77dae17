"""Rounds domain exports."""

from .driver import TransitionDriver
from .service import RoundService

__all__ = ["RoundService", "TransitionDriver"]
