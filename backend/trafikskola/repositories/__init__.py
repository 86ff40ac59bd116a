# backend/trafikskola/repositories/__init__.py
"""
Repository layer: data access separated from business logic.

Repositories flush but never commit; services own the transaction.
"""

from .base_repository import BaseRepository
from .factory import RepositoryFactory

__all__ = ["BaseRepository", "RepositoryFactory"]
