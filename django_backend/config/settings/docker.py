"""
Settings used inside the docker-compose stack.
"""

import os

from .base import *  # noqa: F401,F403

CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://redis:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://redis:6379/0')

ENVIRONMENT = os.environ.get('ENVIRONMENT', 'production')

# Web and worker containers share engine state through Redis.
CASE_WORKFLOW = {  # noqa: F405
    **CASE_WORKFLOW,  # noqa: F405
    'STATE_BACKEND': os.environ.get('CASE_WORKFLOW_STATE_BACKEND', 'redis'),
}
