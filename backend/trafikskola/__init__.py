# backend/trafikskola/__init__.py
"""Trafikskola booking backend."""

__version__ = "1.0.0"
