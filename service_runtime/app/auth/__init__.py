"""
Authentication helpers for the Runtime Service.
"""

from .dispatcher import AuthDispatcher, AuthOutcome
from .identifier import IdentifierExtractor, PresentedCredential
from .login import LoginGuard

__all__ = [
    "AuthDispatcher",
    "AuthOutcome",
    "IdentifierExtractor",
    "LoginGuard",
    "PresentedCredential",
]
