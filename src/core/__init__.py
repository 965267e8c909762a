"""
Chat Relay Core Package

Store access, batch lifecycle and outbox delivery.
"""

from . import database

__all__ = ["database"]
