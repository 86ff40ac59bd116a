# backend/trafikskola/tasks/__init__.py
"""Celery tasks. Import ``celery_app`` from ``trafikskola.tasks.celery_app``."""
