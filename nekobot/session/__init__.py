"""Session management module."""

from nekobot.session.manager import Session, SessionManager

__all__ = ["Session", "SessionManager"]
