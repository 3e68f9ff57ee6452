"""
SQLAlchemy models for the account database.

All models inherit from db.engine.Base.
"""

from db.models.account import Account

__all__ = ["Account"]
