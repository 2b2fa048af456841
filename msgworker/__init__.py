"""Multi-account messaging session microservice."""

from .api import create_app
from .manager import SessionManager
from .registry import SessionRegistry

__all__ = ["create_app", "SessionManager", "SessionRegistry"]
