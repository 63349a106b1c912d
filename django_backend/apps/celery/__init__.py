"""
Periodic Celery tasks of the case workflow backend.

The Celery application itself lives in ``config.celery``; this package holds
the task functions and the Beat schedule built from the CASE_WORKFLOW
settings.
"""
