# backend/trafikskola/routes/v1/__init__.py
"""Versioned (v1) API routers, mounted under /api/v1 in main.py."""

from . import bookings, payments

__all__ = ["bookings", "payments"]
