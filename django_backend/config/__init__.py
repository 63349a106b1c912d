"""
Project package for the case workflow backend.

The Celery app is imported here so that ``shared_task`` decorated
functions bind to it when Django starts.
"""

from .celery import app as celery_app

__all__ = ('celery_app',)
