"""
Database module for the account store.

Provides the SQLAlchemy engine, session factory and declarative base.
"""

from db.engine import Base, SessionLocal, build_engine

__all__ = ["build_engine", "SessionLocal", "Base"]
